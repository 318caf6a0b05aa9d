"""
Utility modules for the image crawler.
"""

from .config import Config, ConfigManager, load_config, get_config
from .monitoring import CrawlerMonitor, MetricsCollector

__all__ = ['Config', 'ConfigManager', 'load_config', 'get_config',
           'CrawlerMonitor', 'MetricsCollector']
