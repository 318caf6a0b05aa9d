"""
Logging setup for crawl runs: console plus rotating crawl and error logs,
optionally as one JSON object per line, with worker context on every message.
"""

import logging
import logging.handlers
import json
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from .config import LoggingConfig


CRAWL_LOG_MAX_BYTES = 50 * 1024 * 1024
CRAWL_LOG_BACKUPS = 5
ERROR_LOG_MAX_BYTES = 10 * 1024 * 1024
ERROR_LOG_BACKUPS = 3

# Per-request and per-chunk chatter from the fetch and decode libraries
NOISY_LOGGERS = (
    'aiohttp.access',
    'PIL.PngImagePlugin',
    'PIL.TiffImagePlugin',
    'PIL.Image',
)

LIBRARY_LOG_LEVELS = {
    'aiohttp': logging.WARNING,
    'asyncio': logging.WARNING,
    'redis': logging.WARNING,
    'cassandra': logging.WARNING,
    'PIL': logging.WARNING,
    'filelock': logging.WARNING,
    'tldextract': logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; worker context from CrawlerLogAdapter becomes top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        entry.update(getattr(record, 'extra_fields', {}))
        return json.dumps(entry, ensure_ascii=False)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Tags every message from a worker with fields such as `worker=3`."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.setdefault('extra', {})
        fields = dict(self.extra)
        fields.update(extra.get('extra_fields', {}))
        extra['extra_fields'] = fields

        if self.extra:
            prefix = ' '.join(f"{key}={value}" for key, value in self.extra.items())
            msg = f"[{prefix}] {msg}"
        return msg, kwargs


class PerformanceFilter(logging.Filter):
    """Drops per-request access lines, image plugin chunk logs and pool debug spam."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = tuple(suppress_modules or NOISY_LOGGERS)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(self.suppress_modules):
            return False
        if record.levelno == logging.DEBUG and 'connection pool' in record.getMessage().lower():
            return False
        return True


def _rotating_handler(path: Path, level: int, max_bytes: int, backups: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backups,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig,
                  enable_json: Optional[bool] = None,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Route crawl logs to stdout (INFO and up), the configured crawl log
    (everything) and `errors.log` beside it (ERROR and up).

    Any handlers already on the root logger are replaced.

    Args:
        config: `logging` section of the crawler config
        enable_json: overrides `config.json` when given
        enable_performance_filtering: attach PerformanceFilter to the
            console and crawl log handlers

    Returns:
        The root logger
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_log_file = log_file.parent / 'errors.log'

    if enable_json is None:
        enable_json = config.json
    formatter = JSONFormatter() if enable_json else logging.Formatter(config.format)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    crawl_handler = _rotating_handler(log_file, logging.DEBUG, CRAWL_LOG_MAX_BYTES, CRAWL_LOG_BACKUPS, formatter)
    error_handler = _rotating_handler(error_log_file, logging.ERROR, ERROR_LOG_MAX_BYTES, ERROR_LOG_BACKUPS,
                                      formatter)

    if enable_performance_filtering:
        console_handler.addFilter(PerformanceFilter())
        crawl_handler.addFilter(PerformanceFilter())

    for handler in (console_handler, crawl_handler, error_handler):
        root_logger.addHandler(handler)

    for logger_name, level in LIBRARY_LOG_LEVELS.items():
        logging.getLogger(logger_name).setLevel(level)

    root_logger.info(f"Logging to {log_file} (errors: {error_log_file}) at level {config.level}")
    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """Logger for one worker or component, e.g. `get_crawler_logger(__name__, worker=2)`."""
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)


def log_system_info():
    """Log the host details that bound a crawl: platform, interpreter, cores and memory."""
    import platform
    import psutil

    logger = logging.getLogger(__name__)

    logger.info("=== HOST ===")
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python: {sys.version.split()[0]}")
    logger.info(f"CPU cores: {psutil.cpu_count()}")
    logger.info(f"Memory: {psutil.virtual_memory().total / 1024**3:.1f} GB")
