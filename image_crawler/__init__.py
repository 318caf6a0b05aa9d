"""
Image Crawler

A concurrent web crawler that downloads embedded images, thumbnails them and
builds a searchable image index.
"""

__version__ = "1.0.0"
__description__ = "Concurrent web crawler and image indexer"
