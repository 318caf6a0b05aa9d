"""
Metrics collection for the image crawler.
"""

import time
import logging
from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class MetricsCollector:
    """Owns a Prometheus registry and the crawler's metric objects."""

    def __init__(self, enable_server: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()

        self.counters = {
            'pages_fetched_total': Counter(
                'crawler_pages_fetched_total',
                'Pages fetched successfully',
                registry=self.registry
            ),
            'images_indexed_total': Counter(
                'crawler_images_indexed_total',
                'Images downloaded and indexed',
                registry=self.registry
            ),
            'jobs_enqueued_total': Counter(
                'crawler_jobs_enqueued_total',
                'Jobs accepted into the queue',
                registry=self.registry
            ),
            'jobs_dropped_total': Counter(
                'crawler_jobs_dropped_total',
                'Jobs dropped because the queue was full',
                registry=self.registry
            ),
            'errors_total': Counter(
                'crawler_errors_total',
                'Crawl errors by type',
                ['error_type'],
                registry=self.registry
            ),
        }
        self.gauges = {
            'queue_size': Gauge(
                'crawler_queue_size',
                'Jobs waiting in the queue',
                registry=self.registry
            ),
            'active_workers': Gauge(
                'crawler_active_workers',
                'Workers currently processing a job',
                registry=self.registry
            ),
        }

        # Plain counts mirror the registry for summaries and tests
        self.values: Dict[str, float] = {}

    def start_server(self):
        """Start the Prometheus HTTP exporter if enabled."""
        if not self.enable_server:
            return

        start_http_server(self.prometheus_port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def increment(self, name: str, labels: Optional[Dict[str, str]] = None, amount: float = 1):
        """Increment a counter metric."""
        counter = self.counters[name]
        if labels:
            counter.labels(**labels).inc(amount)
            key = f"{name}:{','.join(labels.values())}"
        else:
            counter.inc(amount)
            key = name
        self.values[key] = self.values.get(key, 0) + amount

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric value."""
        self.gauges[name].set(value)
        self.values[name] = value

    def get_value(self, name: str) -> float:
        return self.values.get(name, 0)


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_page_fetched(self, url: str):
        self.metrics.increment('pages_fetched_total')

    def record_image_indexed(self, url: str):
        self.metrics.increment('images_indexed_total')

    def record_job_enqueued(self, url: str):
        self.metrics.increment('jobs_enqueued_total')

    def record_job_dropped(self, url: str):
        self.metrics.increment('jobs_dropped_total')

    def record_error(self, error_type: str):
        """Record an error event (fetch, parse, image)."""
        self.metrics.increment('errors_total', {'error_type': error_type})

    def update_queue_size(self, size: int):
        self.metrics.set_gauge('queue_size', size)

    def update_active_workers(self, count: int):
        self.metrics.set_gauge('active_workers', count)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        runtime = time.time() - self.start_time
        values = dict(self.metrics.values)
        pages = values.get('pages_fetched_total', 0)

        return {
            'runtime_seconds': runtime,
            'metrics': values,
            'pages_per_minute': pages / (runtime / 60) if runtime > 0 else 0,
        }


def initialize_monitoring(enable_server: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor and start its exporter when enabled."""
    metrics_collector = MetricsCollector(enable_server, prometheus_port)
    metrics_collector.start_server()
    return CrawlerMonitor(metrics_collector)
