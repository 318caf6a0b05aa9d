"""Canned pages, images and stub collaborators shared by the tests."""

import asyncio
import io

from PIL import Image

from image_crawler.crawler.fetcher import FetchError, FetchResult
from image_crawler.crawler.images import ImageProcessingError


SVG_BYTES = b'<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"></svg>'

RAW_BYTES = b"ORIGINAL-RAW-BYTES"


def png_bytes(width, height, color=(200, 30, 30)):
    """Encode a solid-colour PNG of the given size."""
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


INDEX_HTML = """
<html><body>
  <a href="/page2">next</a>
  <a href="http://elsewhere.test/away">away</a>
  <img src="/img/photo.png" alt="A photo" title="Photo">
  <img src="/img/small.png" alt="small">
  <img src="data:image/png;base64,iVBORw0KGgo=">
</body></html>
"""

PAGE2_HTML = """
<html><body>
  <a href="/">home</a>
  <img src="/img/logo.svg" alt="logo">
  <img src="/missing.png">
</body></html>
"""


class StubFetcher:
    """Serves canned pages without any network access."""

    def __init__(self, pages=None, on_fetch=None):
        self.pages = pages or {}
        self.fetched = []
        self.on_fetch = on_fetch

    async def fetch(self, url, token=None):
        self.fetched.append(url)
        if self.on_fetch:
            self.on_fetch(url)
        if url not in self.pages:
            raise FetchError(url, "non-2xx status 404", 404)
        return FetchResult(url=url, base_url=url, content=self.pages[url].encode("utf-8"))


class StubImageProcessor:
    """Records image sources, failing for the ones listed in `fail_on`."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.processed = []

    async def process(self, ref, base_url, token=None):
        self.processed.append(ref.src)
        await asyncio.sleep(0)
        if ref.src in self.fail_on:
            raise ImageProcessingError(f"cannot decode {ref.src}")
        return ref
