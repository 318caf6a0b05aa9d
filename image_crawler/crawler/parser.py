"""
Link and image extraction from fetched page markup.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Union

from bs4 import BeautifulSoup

from .urls import sanitize_url


@dataclass
class ImageRef:
    """An <img> reference found on a page. `src` is already absolute."""
    src: str
    alt: str = ""
    title: str = ""


@dataclass
class ExtractedPage:
    """Outbound links and image references of one page."""
    url: str
    links: List[str] = field(default_factory=list)
    images: List[ImageRef] = field(default_factory=list)


class ParseError(Exception):
    """Raised when markup cannot be parsed at all."""
    pass


class PageExtractor:
    """
    Walks anchor and image tags in document order.

    Links are deduplicated keeping first-seen order. Images keep encounter
    order and duplicates; they are never checked against the visited set.
    """

    def __init__(self, parser_features: str = 'lxml'):
        self.parser_features = parser_features
        self.logger = logging.getLogger(__name__)

    def extract(self, base_url: str, markup: Union[bytes, str]) -> ExtractedPage:
        """
        Extract links and images from markup.

        Args:
            base_url: URL used to resolve relative references
            markup: Raw page bytes or text

        Returns:
            ExtractedPage with sanitized absolute URLs
        """
        try:
            soup = BeautifulSoup(markup, self.parser_features)
        except Exception as e:
            raise ParseError(f"Could not parse markup from {base_url}: {e}") from e

        page = ExtractedPage(url=base_url)
        seen_links = set()

        for tag in soup.find_all(['a', 'img']):
            if tag.name == 'a':
                href = sanitize_url(tag.get('href'), base_url)
                if href and href not in seen_links:
                    seen_links.add(href)
                    page.links.append(href)
                continue

            src = sanitize_url(tag.get('src'), base_url)
            if src:
                page.images.append(ImageRef(
                    src=src,
                    alt=tag.get('alt') or '',
                    title=tag.get('title') or ''
                ))

        self.logger.debug(f"Extracted {len(page.links)} links and {len(page.images)} images from {base_url}")
        return page
