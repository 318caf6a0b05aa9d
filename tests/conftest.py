import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from image_crawler.crawler.dispatcher import Dispatcher
from image_crawler.crawler.parser import PageExtractor
from image_crawler.crawler.urls import SameSitePolicy
from image_crawler.storage.database import DatabaseManager
from image_crawler.utils.config import DatabaseConfig

from .helpers import INDEX_HTML, PAGE2_HTML, RAW_BYTES, SVG_BYTES, StubFetcher, StubImageProcessor, png_bytes


@pytest.fixture
def same_site():
    return SameSitePolicy()


@pytest.fixture
def make_dispatcher(same_site):
    """Factory building a Dispatcher around stub collaborators."""

    def factory(fetcher=None, image_processor=None, **kwargs):
        return Dispatcher(
            fetcher=fetcher or StubFetcher(),
            extractor=PageExtractor(),
            image_processor=image_processor or StubImageProcessor(),
            same_site=same_site,
            **kwargs
        )

    return factory


@pytest.fixture
async def store(tmp_path):
    """File-backed metadata store in a temporary directory."""
    manager = DatabaseManager(DatabaseConfig(type="file", file={"data_directory": str(tmp_path / "data")}))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
async def site_server():
    """A small local site with pages, images and failure cases."""

    async def index(request):
        return web.Response(text=INDEX_HTML, content_type="text/html")

    async def page2(request):
        return web.Response(text=PAGE2_HTML, content_type="text/html")

    async def photo(request):
        return web.Response(body=png_bytes(400, 300), content_type="image/png")

    async def small(request):
        return web.Response(body=png_bytes(100, 50), content_type="image/png")

    async def logo(request):
        return web.Response(body=SVG_BYTES, content_type="image/svg+xml")

    async def blob(request):
        return web.Response(body=b"\x00\x01 definitely not an image", content_type="application/octet-stream")

    async def named_png(request):
        return web.Response(body=png_bytes(300, 100), content_type="image/png")

    async def raw_bytes(request):
        return web.Response(body=RAW_BYTES, content_type="application/octet-stream")

    async def user_agent(request):
        return web.Response(text=request.headers.get("User-Agent", ""))

    async def redirect(request):
        raise web.HTTPFound("/page2")

    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(text="late")

    app = web.Application()
    app.router.add_get("/", index)
    app.router.add_get("/page2", page2)
    app.router.add_get("/img/photo.png", photo)
    app.router.add_get("/img/small.png", small)
    app.router.add_get("/img/logo.svg", logo)
    app.router.add_get("/img/blob.bin", blob)
    app.router.add_get("/named/{name}", named_png)
    app.router.add_get("/raw/{name}", raw_bytes)
    app.router.add_get("/ua", user_agent)
    app.router.add_get("/redirect", redirect)
    app.router.add_get("/slow", slow)

    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()
