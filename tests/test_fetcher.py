import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from image_crawler.crawler.cancellation import CancellationToken, CrawlCancelled
from image_crawler.crawler.fetcher import FetchError, FetchResult, PageFetcher


USER_AGENT = "ImageCrawlerTest/1.0"


@pytest.fixture
async def fetcher():
    async with PageFetcher(user_agent=USER_AGENT, request_timeout=5) as page_fetcher:
        yield page_fetcher


@pytest.fixture
async def rendering_fetcher():
    async with PageFetcher(user_agent=USER_AGENT, request_timeout=5, render_js=True,
                           render_timeout=0.2) as page_fetcher:
        yield page_fetcher


class TestPlainFetch:

    async def test_fetches_page_body(self, fetcher, site_server):
        url = str(site_server.make_url("/page2"))

        result = await fetcher.fetch(url)

        assert b"/img/logo.svg" in result.content
        assert result.status_code == 200
        assert result.base_url == url
        assert result.content_type.startswith("text/html")
        assert not result.rendered

    async def test_sends_configured_user_agent(self, fetcher, site_server):
        result = await fetcher.fetch(str(site_server.make_url("/ua")))

        assert result.content.decode() == USER_AGENT

    async def test_base_url_follows_redirects(self, fetcher, site_server):
        result = await fetcher.fetch(str(site_server.make_url("/redirect")))

        assert result.base_url == str(site_server.make_url("/page2"))
        assert result.url == str(site_server.make_url("/redirect"))

    async def test_non_2xx_is_an_error(self, fetcher, site_server):
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch(str(site_server.make_url("/nowhere")))

        assert excinfo.value.status_code == 404
        assert fetcher.get_stats()['failed_requests'] == 1

    async def test_connection_failure_is_an_error(self, fetcher):
        with pytest.raises(FetchError):
            await fetcher.fetch("http://127.0.0.1:1/")

    async def test_download_timeout_is_an_error(self, fetcher, site_server):
        started = time.monotonic()

        with pytest.raises(FetchError, match="timed out"):
            await fetcher.download(str(site_server.make_url("/slow")), timeout=0.2)

        assert time.monotonic() - started < 1.5

    async def test_oversized_body_is_refused(self, site_server):
        async with PageFetcher(user_agent=USER_AGENT, max_content_bytes=16) as small_fetcher:
            with pytest.raises(FetchError, match="too large|size limit"):
                await small_fetcher.fetch(str(site_server.make_url("/")))


class TestCancellation:

    async def test_cancelled_token_fails_fast(self, fetcher, site_server):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CrawlCancelled):
            await fetcher.fetch(str(site_server.make_url("/")), token)

    async def test_cancel_interrupts_in_flight_fetch(self, fetcher, site_server):
        token = CancellationToken()
        task = asyncio.ensure_future(fetcher.fetch(str(site_server.make_url("/slow")), token))
        await asyncio.sleep(0.1)

        started = time.monotonic()
        token.cancel()

        with pytest.raises(CrawlCancelled):
            await task
        assert time.monotonic() - started < 1


class TestRenderedFetch:

    async def test_render_failure_falls_back_to_plain_fetch(self, rendering_fetcher, site_server):
        url = str(site_server.make_url("/page2"))

        with patch.object(rendering_fetcher, "_render", AsyncMock(side_effect=RuntimeError("no browser"))):
            result = await rendering_fetcher.fetch(url)

        assert not result.rendered
        assert b"/img/logo.svg" in result.content
        assert rendering_fetcher.get_stats()['render_fallbacks'] == 1

    async def test_render_timeout_falls_back_to_plain_fetch(self, rendering_fetcher, site_server):

        async def hang(url):
            await asyncio.sleep(5)

        with patch.object(rendering_fetcher, "_render", hang):
            result = await rendering_fetcher.fetch(str(site_server.make_url("/page2")))

        assert not result.rendered
        assert rendering_fetcher.get_stats()['render_fallbacks'] == 1

    async def test_rendered_result_is_used_when_available(self, rendering_fetcher):
        rendered = FetchResult(
            url="http://www.example.com/",
            base_url="http://www.example.com/home",
            content=b"<html><img src='/late.png'></html>",
            rendered=True
        )

        with patch.object(rendering_fetcher, "_render", AsyncMock(return_value=rendered)):
            result = await rendering_fetcher.fetch("http://www.example.com/")

        assert result is rendered
        assert rendering_fetcher.get_stats()['render_fallbacks'] == 0

    async def test_render_failure_and_plain_failure_is_a_fetch_error(self, rendering_fetcher, site_server):
        with patch.object(rendering_fetcher, "_render", AsyncMock(side_effect=RuntimeError("no browser"))):
            with pytest.raises(FetchError):
                await rendering_fetcher.fetch(str(site_server.make_url("/nowhere")))
