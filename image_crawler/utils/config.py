"""
Configuration management for the image crawler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field


DEFAULT_USER_AGENT = "ImageCrawler/1.0"


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str] = field(default_factory=list)
    workers: int = 10
    max_concurrent_operations: int = 200
    follow_external: bool = False
    render_js: bool = True
    crawl_timeout: Optional[float] = 120.0
    max_depth: Optional[int] = None
    queue_size: int = 1000
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 15.0
    render_timeout: float = 30.0
    render_settle_delay: float = 0.5
    public_suffix_urls: List[str] = field(default_factory=list)


@dataclass
class ImageConfig:
    """Configuration for image download and thumbnailing."""
    directory: str = "images"
    max_thumbnail_width: int = 200
    download_timeout: float = 20.0
    rasterizer_command: Optional[str] = None
    rasterizer_timeout: Optional[float] = None


@dataclass
class DatabaseConfig:
    """Configuration for the image metadata store."""
    type: str = "file"
    cassandra: Dict[str, Any] = field(default_factory=dict)
    file: Dict[str, Any] = field(default_factory=lambda: {'data_directory': 'data'})


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    visited_key: str = "image_crawler:visited_urls"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    images: ImageConfig = field(default_factory=ImageConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        self._config = self.from_dict(config_data)
        self._validate_config()
        return self._config

    @staticmethod
    def from_dict(config_data: Dict[str, Any]) -> Config:
        """Build a Config from parsed YAML, falling back to defaults per section."""
        return Config(
            crawler=CrawlerConfig(**(config_data.get('crawler') or {})),
            images=ImageConfig(**(config_data.get('images') or {})),
            database=DatabaseConfig(**(config_data.get('database') or {})),
            redis=RedisConfig(**(config_data.get('redis') or {})),
            logging=LoggingConfig(**(config_data.get('logging') or {})),
            monitoring=MonitoringConfig(**(config_data.get('monitoring') or {}))
        )

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")
        validate_config(self._config)

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Validate configuration values, raising ValueError on the first problem."""
    crawler = config.crawler

    if crawler.workers < 1:
        raise ValueError("workers must be at least 1")

    if crawler.max_concurrent_operations < 1:
        raise ValueError("max_concurrent_operations must be at least 1")

    if crawler.queue_size < 1:
        raise ValueError("queue_size must be at least 1")

    if crawler.max_depth is not None and crawler.max_depth < 0:
        raise ValueError("max_depth must be non-negative")

    if crawler.request_timeout <= 0 or crawler.render_timeout <= 0:
        raise ValueError("request_timeout and render_timeout must be positive")

    if crawler.render_settle_delay < 0:
        raise ValueError("render_settle_delay must be non-negative")

    if config.images.max_thumbnail_width < 1:
        raise ValueError("max_thumbnail_width must be at least 1")

    if config.images.download_timeout <= 0:
        raise ValueError("download_timeout must be positive")

    if config.database.type not in ['cassandra', 'file']:
        raise ValueError("Database type must be 'cassandra' or 'file'")

    logging.getLogger(__name__).debug("Configuration validation passed")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
