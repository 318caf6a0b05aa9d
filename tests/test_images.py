import asyncio
import os
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from PIL import Image

from image_crawler.crawler.cancellation import CancellationToken, CrawlCancelled
from image_crawler.crawler.fetcher import FetchError, PageFetcher
from image_crawler.crawler.images import (
    THUMBNAIL_SUFFIX,
    ImageProcessor,
    filename_from_url,
    is_svg,
    make_thumbnail,
    reserve_unique_file,
    thumbnail_size,
    write_unique_file,
)
from image_crawler.crawler.parser import ImageRef

from .helpers import RAW_BYTES, SVG_BYTES, png_bytes


@pytest.mark.parametrize("size,expected", [
    ((400, 300), (200, 150)),
    ((150, 100), (150, 100)),
    ((200, 80), (200, 80)),
    ((1000, 333), (200, 66)),
    ((1000, 1), (200, 1)),
])
def test_thumbnail_size(size, expected):
    assert thumbnail_size(size[0], size[1], 200) == expected


def test_make_thumbnail_samples_nearest_pixel():
    colors = [(255, 0, 0, 255), (0, 255, 0, 255), (0, 0, 255, 255), (255, 255, 255, 255)]
    source = Image.new("RGBA", (4, 1))
    for x, color in enumerate(colors):
        source.putpixel((x, 0), color)

    thumb = make_thumbnail(source, 2)

    assert thumb.size == (2, 1)
    assert thumb.mode == "RGBA"
    assert [thumb.getpixel((x, 0)) for x in range(2)] == [colors[0], colors[2]]


def test_make_thumbnail_keeps_small_images_at_size():
    thumb = make_thumbnail(Image.new("RGB", (120, 90)), 200)

    assert thumb.size == (120, 90)
    assert thumb.mode == "RGBA"


@pytest.mark.parametrize("url,expected", [
    ("http://example.com/a/b/cat.png?size=large", "cat.png"),
    ("http://example.com/my%20pic.jpg", "my pic.jpg"),
    ("http://example.com/", "http---example.com-"),
    ("http://example.com/gallery/", "http---example.com-gallery-"),
    ("http://example.com", "http---example.com"),
])
def test_filename_from_url(url, expected):
    assert filename_from_url(url) == expected


def test_filename_from_url_truncates_long_names():
    name = filename_from_url("http://example.com/" + "a" * 500 + ".png")

    assert len(name) == 200
    assert name.endswith(".png")


def test_filename_from_url_caps_utf8_length():
    name = filename_from_url("http://example.com/" + "%E4%B8%AD" * 100 + ".png")

    assert name.endswith(".png")
    assert name.startswith("中")
    assert len(name.encode("utf-8")) <= 200
    # Room left for a collision counter and the thumbnail suffix
    assert len((name + "-99" + THUMBNAIL_SUFFIX).encode("utf-8")) < 255


def test_filename_from_url_drops_oversized_extension():
    name = filename_from_url("http://example.com/photo." + "x" * 300)

    assert len(name.encode("utf-8")) <= 200
    assert name.startswith("photo.")


def test_is_svg():
    assert is_svg(SVG_BYTES)
    assert is_svg(b'  <svg xmlns="http://www.w3.org/2000/svg"></svg>')
    assert not is_svg(png_bytes(2, 2))


class TestWriteUniqueFile:

    def test_collisions_get_numbered_suffixes(self, tmp_path):
        names = [write_unique_file(tmp_path, "cat.png", str(i).encode()) for i in range(3)]

        assert names == ["cat.png", "cat-1.png", "cat-2.png"]
        assert (tmp_path / "cat-2.png").read_bytes() == b"2"

    def test_existing_file_is_never_overwritten(self, tmp_path):
        (tmp_path / "cat.png").write_bytes(b"original")

        name = write_unique_file(tmp_path, "cat.png", b"new")

        assert name == "cat-1.png"
        assert (tmp_path / "cat.png").read_bytes() == b"original"

    def test_concurrent_writers_get_distinct_files(self, tmp_path):
        with ThreadPoolExecutor(max_workers=8) as pool:
            names = list(pool.map(
                lambda i: write_unique_file(tmp_path, "dup.png", str(i).encode()),
                range(20)
            ))

        assert len(set(names)) == 20
        assert len(os.listdir(tmp_path)) == 20
        contents = {(tmp_path / name).read_bytes() for name in names}
        assert contents == {str(i).encode() for i in range(20)}

    def test_reserve_claims_an_empty_free_name(self, tmp_path):
        (tmp_path / "a.png.thumb.png").write_bytes(b"taken")

        name = reserve_unique_file(tmp_path, "a.png.thumb.png")

        assert name == "a.png.thumb-1.png"
        assert (tmp_path / name).read_bytes() == b""
        assert (tmp_path / "a.png.thumb.png").read_bytes() == b"taken"


@pytest.fixture
async def fetcher():
    async with PageFetcher(user_agent="ImageCrawlerTest/1.0", request_timeout=5) as page_fetcher:
        yield page_fetcher


@pytest.fixture
def make_processor(fetcher, store, tmp_path):

    def factory(**kwargs):
        processor = ImageProcessor(fetcher, store, str(tmp_path / "images"), **kwargs)
        processor.ensure_directory()
        return processor

    return factory


class TestImageProcessor:

    async def test_png_is_stored_thumbnailed_and_indexed(self, make_processor, site_server, store):
        processor = make_processor()
        url = str(site_server.make_url("/img/photo.png"))

        record = await processor.process(ImageRef(src=url, alt="A photo", title="Photo"),
                                         str(site_server.make_url("/")))

        assert record.filename == "photo.png"
        assert (record.width, record.height, record.format) == (400, 300, "png")
        assert (record.alt, record.title) == ("A photo", "Photo")
        assert record.thumbnail_path.endswith("photo.png" + THUMBNAIL_SUFFIX)
        with Image.open(record.thumbnail_path) as thumb:
            assert thumb.size == (200, 150)
            assert thumb.format == "PNG"

        stored = await store.query_images()
        assert [r.url for r in stored] == [url]
        assert processor.stats['thumbnails_created'] == 1

    async def test_relative_source_is_resolved_against_base(self, make_processor, site_server):
        processor = make_processor()

        record = await processor.process(ImageRef(src="/img/small.png"), str(site_server.make_url("/page2")))

        assert record.url == str(site_server.make_url("/img/small.png"))
        assert (record.width, record.height) == (100, 50)

    async def test_same_image_twice_gets_two_files(self, make_processor, site_server, tmp_path):
        processor = make_processor()
        ref = ImageRef(src=str(site_server.make_url("/img/small.png")))
        base = str(site_server.make_url("/"))

        first = await processor.process(ref, base)
        second = await processor.process(ref, base)

        assert (first.filename, second.filename) == ("small.png", "small-1.png")
        assert (tmp_path / "images" / "small-1.png").exists()

    async def test_svg_without_rasterizer_has_no_thumbnail(self, make_processor, site_server):
        processor = make_processor()

        record = await processor.process(ImageRef(src="/img/logo.svg"), str(site_server.make_url("/")))

        assert record.format == "svg"
        assert (record.width, record.height) == (0, 0)
        assert record.thumbnail_path is None

    async def test_svg_rasterizer_success(self, make_processor, site_server):
        processor = make_processor(rasterizer_command="printf %d > %s && test -f %s")

        record = await processor.process(ImageRef(src="/img/logo.svg"), str(site_server.make_url("/")))

        assert record.thumbnail_path is not None
        assert Path(record.thumbnail_path).read_text() == "200"
        assert processor.stats['svg_rasterized'] == 1

    async def test_svg_rasterizer_failure_still_indexes(self, make_processor, site_server, store):
        processor = make_processor(rasterizer_command="exit 3 # %d %s %s")

        record = await processor.process(ImageRef(src="/img/logo.svg"), str(site_server.make_url("/")))

        assert record.thumbnail_path is None
        assert len(await store.query_images()) == 1

    async def test_svg_rasterizer_timeout(self, make_processor, site_server):
        processor = make_processor(rasterizer_command="exec sleep 5 # %d %s %s", rasterizer_timeout=0.2)

        record = await processor.process(ImageRef(src="/img/logo.svg"), str(site_server.make_url("/")))

        assert record.thumbnail_path is None

    async def test_failed_rasterizer_leaves_no_thumbnail_file(self, make_processor, site_server, tmp_path):
        processor = make_processor(rasterizer_command="exit 3 # %d %s %s")

        await processor.process(ImageRef(src="/img/logo.svg"), str(site_server.make_url("/")))

        assert os.listdir(tmp_path / "images") == ["logo.svg"]

    async def test_cancel_kills_running_rasterizer(self, make_processor, site_server, store, tmp_path):
        processor = make_processor(rasterizer_command="exec sleep 5 # %d %s %s")
        token = CancellationToken()
        task = asyncio.ensure_future(
            processor.process(ImageRef(src="/img/logo.svg"), str(site_server.make_url("/")), token)
        )
        await asyncio.sleep(0.5)

        started = time.monotonic()
        token.cancel()

        with pytest.raises(CrawlCancelled):
            await asyncio.wait_for(task, timeout=3)
        assert time.monotonic() - started < 2
        assert await store.query_images() == []
        assert not (tmp_path / "images" / ("logo.svg" + THUMBNAIL_SUFFIX)).exists()

    async def test_thumbnail_never_replaces_an_existing_image(self, make_processor, site_server, tmp_path):
        processor = make_processor()
        base = str(site_server.make_url("/"))

        first = await processor.process(ImageRef(src="/raw/a.png.thumb.png"), base)
        second = await processor.process(ImageRef(src="/named/a.png"), base)

        assert first.filename == "a.png.thumb.png"
        assert (tmp_path / "images" / "a.png.thumb.png").read_bytes() == RAW_BYTES
        assert second.filename == "a.png"
        assert second.thumbnail_path == str(tmp_path / "images" / "a.png.thumb-1.png")
        with Image.open(second.thumbnail_path) as thumb:
            assert thumb.size == (200, 66)

    async def test_long_non_ascii_name_is_stored(self, make_processor, site_server, tmp_path):
        processor = make_processor()

        record = await processor.process(ImageRef(src="/named/" + "%E4%B8%AD" * 100 + ".png"),
                                         str(site_server.make_url("/")))

        assert record.filename.endswith(".png")
        assert len(record.filename.encode("utf-8")) <= 200
        assert (tmp_path / "images" / record.filename).exists()
        assert record.thumbnail_path is not None

    async def test_undecodable_bytes_are_kept_with_unknown_format(self, make_processor, site_server, tmp_path):
        processor = make_processor()

        record = await processor.process(ImageRef(src="/img/blob.bin"), str(site_server.make_url("/")))

        assert (record.width, record.height, record.format) == (0, 0, "")
        assert record.thumbnail_path is None
        assert (tmp_path / "images" / "blob.bin").exists()
        assert processor.stats['undecodable'] == 1

    async def test_download_failure_writes_nothing(self, make_processor, site_server, store, tmp_path):
        processor = make_processor()

        with pytest.raises(FetchError) as excinfo:
            await processor.process(ImageRef(src="/missing.png"), str(site_server.make_url("/")))

        assert excinfo.value.status_code == 404
        assert os.listdir(tmp_path / "images") == []
        assert await store.query_images() == []
