"""
Crawler scheduler that wires the components together and runs one crawl.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import redis.asyncio as redis

from ..storage.database import DatabaseManager
from ..utils.config import Config
from ..utils.monitoring import CrawlerMonitor, initialize_monitoring
from .dispatcher import Dispatcher
from .fetcher import PageFetcher
from .images import ImageProcessor
from .parser import PageExtractor
from .url_frontier import Job, MemoryVisitedSet, RedisVisitedSet, VisitedSet
from .urls import SameSitePolicy


STATS_INTERVAL = 30


@dataclass
class CrawlStats:
    """Timing for a crawl run."""
    start_time: float

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time


class CrawlerScheduler:
    """
    Builds the fetcher, extractor, image processor, metadata store and
    dispatcher from configuration, and runs a crawl from seed URLs.
    """

    def __init__(self, config: Config):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.redis_client: Optional[redis.Redis] = None
        self.visited: Optional[VisitedSet] = None
        self.monitor: Optional[CrawlerMonitor] = None
        self.database: Optional[DatabaseManager] = None
        self.fetcher: Optional[PageFetcher] = None
        self.image_processor: Optional[ImageProcessor] = None
        self.dispatcher: Optional[Dispatcher] = None

        self.stats = CrawlStats(start_time=time.time())
        self.is_running = False

    async def initialize(self):
        """Initialize all crawler components."""
        crawler_config = self.config.crawler

        try:
            if self.config.redis.enabled:
                self.redis_client = redis.Redis(
                    host=self.config.redis.host,
                    port=self.config.redis.port,
                    db=self.config.redis.db,
                    password=self.config.redis.password,
                    decode_responses=False
                )
                await self.redis_client.ping()
                self.visited = RedisVisitedSet(self.redis_client, self.config.redis.visited_key)
                self.logger.info("Redis connection established, using Redis visited set")
            else:
                self.visited = MemoryVisitedSet()

            self.monitor = initialize_monitoring(
                self.config.monitoring.metrics_enabled,
                self.config.monitoring.prometheus_port
            )

            self.database = DatabaseManager(self.config.database)
            await self.database.initialize()

            self.fetcher = PageFetcher(
                user_agent=crawler_config.user_agent,
                request_timeout=crawler_config.request_timeout,
                render_js=crawler_config.render_js,
                render_timeout=crawler_config.render_timeout,
                render_settle_delay=crawler_config.render_settle_delay,
                max_connections=crawler_config.max_concurrent_operations
            )
            await self.fetcher.start()

            self.image_processor = ImageProcessor(
                fetcher=self.fetcher,
                store=self.database,
                image_dir=self.config.images.directory,
                max_thumbnail_width=self.config.images.max_thumbnail_width,
                download_timeout=self.config.images.download_timeout,
                rasterizer_command=self.config.images.rasterizer_command,
                rasterizer_timeout=self.config.images.rasterizer_timeout
            )
            self.image_processor.ensure_directory()

            self.dispatcher = Dispatcher(
                fetcher=self.fetcher,
                extractor=PageExtractor(),
                image_processor=self.image_processor,
                same_site=SameSitePolicy(crawler_config.public_suffix_urls),
                visited=self.visited,
                workers=crawler_config.workers,
                max_concurrent_operations=crawler_config.max_concurrent_operations,
                follow_external=crawler_config.follow_external,
                queue_size=crawler_config.queue_size,
                max_depth=crawler_config.max_depth,
                monitor=self.monitor
            )

            self.logger.info("Crawler scheduler initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawler scheduler: {e}")
            raise

    async def start_crawling(self, seed_urls: Optional[List[str]] = None):
        """
        Seed the dispatcher and run until the configured crawl timeout or stop.

        Args:
            seed_urls: Starting URLs (scheme optional); defaults to the configured seeds
        """
        if self.is_running:
            self.logger.warning("Crawler is already running")
            return

        seeds = seed_urls if seed_urls is not None else self.config.crawler.seed_urls
        self.is_running = True
        self.stats = CrawlStats(start_time=time.time())
        stats_task = asyncio.create_task(self._stats_reporter())

        try:
            await self.visited.reset()
            for url in seeds:
                await self.dispatcher.add(Job(url=url, depth=0))
            self.logger.info(f"Added {self.dispatcher.queue_size} seed URLs to the queue")

            await self.dispatcher.run(self.config.crawler.crawl_timeout)
            await self._log_final_stats()

        finally:
            stats_task.cancel()
            try:
                await stats_task
            except asyncio.CancelledError:
                pass
            self.is_running = False

    async def stop_crawling(self):
        """Stop the crawl gracefully; in-flight jobs finish or unwind."""
        self.logger.info("Stopping crawler...")
        if self.dispatcher:
            self.dispatcher.stop()

    async def _stats_reporter(self):
        """Periodically log crawl progress."""
        while True:
            await asyncio.sleep(STATS_INTERVAL)
            self._log_current_stats()

    def _log_current_stats(self):
        stats = self.dispatcher.get_stats()
        pages_per_minute = stats['pages_fetched'] / (self.stats.elapsed_time / 60) if self.stats.elapsed_time > 0 else 0
        self.logger.info(
            f"Crawl Progress: "
            f"Pages={stats['pages_fetched']}, "
            f"Images={stats['images_indexed']}, "
            f"Queued={stats['queued']}, "
            f"Dropped={stats['jobs_dropped']}, "
            f"FetchErrors={stats['fetch_errors']}, "
            f"ImageErrors={stats['image_errors']}, "
            f"Rate={pages_per_minute:.1f} pages/min"
        )

    async def _log_final_stats(self):
        """Log final crawl statistics."""
        stats = self.dispatcher.get_stats()
        db_stats = await self.database.get_stats()

        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Pages fetched: {stats['pages_fetched']}")
        self.logger.info(f"Images indexed: {stats['images_indexed']}")
        self.logger.info(f"Jobs enqueued: {stats['jobs_enqueued']} (dropped: {stats['jobs_dropped']})")
        self.logger.info(f"Fetch errors: {stats['fetch_errors']}, image errors: {stats['image_errors']}")
        self.logger.info(f"URLs visited: {await self.visited.size()}")
        self.logger.info(f"Total time: {self.stats.elapsed_time:.2f} seconds")
        self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")
        self.logger.info(f"Image stats: {self.image_processor.stats}")
        self.logger.info(f"Database stats: {db_stats}")
        if self.monitor:
            self.logger.info(f"Metrics summary: {self.monitor.get_summary()}")

    async def close(self):
        """Close all connections and cleanup resources."""
        try:
            if self.fetcher:
                await self.fetcher.close()

            if self.database:
                await self.database.close()

            if self.redis_client:
                await self.redis_client.aclose()

            self.logger.info("Crawler scheduler closed")

        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")

    def get_stats(self) -> Dict:
        """Get current crawl statistics."""
        stats = self.dispatcher.get_stats() if self.dispatcher else {}
        stats['elapsed_time'] = self.stats.elapsed_time
        stats['is_running'] = self.is_running
        return stats
