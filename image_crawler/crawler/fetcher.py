"""
Page and image fetching over plain HTTP or a headless browser.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from playwright.async_api import Browser, Playwright, async_playwright

from .cancellation import CancellationToken, CrawlCancelled, run_with_token


MAX_CONTENT_BYTES = 10 * 1024 * 1024


class FetchError(Exception):
    """Raised when a page or image cannot be retrieved."""

    def __init__(self, url: str, message: str, status_code: int = 0):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status_code = status_code


@dataclass
class FetchResult:
    """Result of a successful fetch."""
    url: str
    base_url: str
    content: bytes
    status_code: int = 200
    content_type: Optional[str] = None
    rendered: bool = False
    fetch_time: float = 0.0


class PageFetcher:
    """
    Fetches pages either rendered through headless Chromium or with a plain GET.

    A rendered fetch that fails for any reason falls back to the plain GET.
    The same HTTP session downloads images for the image processor.
    """

    def __init__(self, user_agent: str, request_timeout: float = 15.0,
                 render_js: bool = False, render_timeout: float = 30.0,
                 render_settle_delay: float = 0.5, max_connections: int = 100,
                 max_content_bytes: int = MAX_CONTENT_BYTES):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.render_js = render_js
        self.render_timeout = render_timeout
        self.render_settle_delay = render_settle_delay
        self.max_connections = max_connections
        self.max_content_bytes = max_content_bytes

        self.logger = logging.getLogger(__name__)

        self.session: Optional[ClientSession] = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._browser_lock = asyncio.Lock()

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'rendered_pages': 0,
            'render_fallbacks': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the HTTP session. The browser is launched on first use."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={'User-Agent': self.user_agent},
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    ttl_dns_cache=300
                )
            )
            self.logger.info("PageFetcher session started")

    async def close(self):
        """Close the HTTP session and the browser if one was launched."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("PageFetcher session closed")

        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def fetch(self, url: str, token: Optional[CancellationToken] = None) -> FetchResult:
        """
        Fetch a page, rendered when render_js is on.

        Raises:
            FetchError: plain fetch failed or returned a non-2xx status
            CrawlCancelled: the crawl run was cancelled mid-fetch
        """
        if self.render_js:
            try:
                return await run_with_token(token, self._fetch_rendered(url))
            except CrawlCancelled:
                raise
            except Exception as e:
                self.stats['render_fallbacks'] += 1
                self.logger.warning(f"Rendered fetch failed for {url}: {e!r} - falling back to plain fetch")

        return await run_with_token(token, self._fetch_plain(url, self.request_timeout))

    async def download(self, url: str, timeout: float,
                       token: Optional[CancellationToken] = None) -> FetchResult:
        """Download raw bytes (used for images). Same error contract as fetch()."""
        return await run_with_token(token, self._fetch_plain(url, timeout))

    async def _fetch_plain(self, url: str, timeout: float) -> FetchResult:
        if self.session is None:
            await self.start()

        start_time = time.time()
        self.stats['total_requests'] += 1

        try:
            async with self.session.get(url, timeout=ClientTimeout(total=timeout)) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(url, f"non-2xx status {response.status}", response.status)

                content = await self._read_content_safely(url, response)
                self.stats['successful_requests'] += 1
                self.stats['total_bytes_downloaded'] += len(content)

                result = FetchResult(
                    url=url,
                    base_url=str(response.url),
                    content=content,
                    status_code=response.status,
                    content_type=response.headers.get('content-type', '').lower(),
                    fetch_time=time.time() - start_time
                )
                self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} bytes)")
                return result

        except FetchError:
            self.stats['failed_requests'] += 1
            raise
        except asyncio.TimeoutError:
            self.stats['failed_requests'] += 1
            raise FetchError(url, f"timed out after {timeout}s")
        except ClientError as e:
            self.stats['failed_requests'] += 1
            raise FetchError(url, f"client error: {e}")

    async def _read_content_safely(self, url: str, response: aiohttp.ClientResponse) -> bytes:
        """Read the body, refusing anything larger than max_content_bytes."""
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_bytes:
            raise FetchError(url, f"content too large ({content_length} bytes)", response.status)

        chunks = []
        size = 0
        async for chunk in response.content.iter_chunked(8192):
            size += len(chunk)
            if size > self.max_content_bytes:
                raise FetchError(url, "content exceeded size limit during reading", response.status)
            chunks.append(chunk)
        return b''.join(chunks)

    async def _ensure_browser(self) -> Browser:
        async with self._browser_lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
                self.logger.info("Headless browser launched")
        return self._browser

    async def _fetch_rendered(self, url: str) -> FetchResult:
        return await asyncio.wait_for(self._render(url), timeout=self.render_timeout)

    async def _render(self, url: str) -> FetchResult:
        """Navigate, let scripts settle, then read the rendered DOM."""
        start_time = time.time()
        browser = await self._ensure_browser()
        context = await browser.new_context(user_agent=self.user_agent)
        try:
            page = await context.new_page()
            response = await page.goto(url, timeout=self.render_timeout * 1000)
            if self.render_settle_delay:
                await page.wait_for_timeout(self.render_settle_delay * 1000)
            html = await page.content()
            base_url = page.url
        finally:
            await context.close()

        content = html.encode('utf-8')
        self.stats['rendered_pages'] += 1
        self.stats['total_bytes_downloaded'] += len(content)
        return FetchResult(
            url=url,
            base_url=base_url,
            content=content,
            status_code=response.status if response else 200,
            content_type='text/html',
            rendered=True,
            fetch_time=time.time() - start_time
        )

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
