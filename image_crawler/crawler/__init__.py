"""
Image crawler core components.
"""

from .url_frontier import Job, VisitedSet, MemoryVisitedSet, RedisVisitedSet
from .fetcher import PageFetcher, FetchResult, FetchError
from .parser import PageExtractor, ExtractedPage, ImageRef
from .images import ImageProcessor, ImageProcessingError
from .dispatcher import Dispatcher, ConcurrencyBudget
from .urls import SameSitePolicy, sanitize_url, normalize_job_url

__all__ = [
    'Job', 'VisitedSet', 'MemoryVisitedSet', 'RedisVisitedSet',
    'PageFetcher', 'FetchResult', 'FetchError',
    'PageExtractor', 'ExtractedPage', 'ImageRef',
    'ImageProcessor', 'ImageProcessingError',
    'Dispatcher', 'ConcurrencyBudget',
    'SameSitePolicy', 'sanitize_url', 'normalize_job_url'
]
