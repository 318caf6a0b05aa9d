"""
Storage layer for the image crawler.
"""

from .database import DatabaseManager, DatabaseError, ImageMetadata, ImageQuery

__all__ = ['DatabaseManager', 'DatabaseError', 'ImageMetadata', 'ImageQuery']
