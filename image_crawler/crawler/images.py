"""
Image download, on-disk naming, decoding and thumbnailing.
"""

import asyncio
import io
import itertools
import logging
import os
import posixpath
import re
import shlex
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

from PIL import Image, UnidentifiedImageError

from ..storage.database import DatabaseManager, ImageMetadata
from .cancellation import CancellationToken, CrawlCancelled, run_with_token
from .fetcher import PageFetcher
from .parser import ImageRef
from .urls import sanitize_url


DEFAULT_MAX_THUMBNAIL_WIDTH = 200
THUMBNAIL_SUFFIX = '.thumb.png'
# Leaves room under the usual 255-byte name limit for "-N" and THUMBNAIL_SUFFIX
MAX_FILENAME_BYTES = 200
MAX_EXTENSION_BYTES = 16

_UNSAFE_FILENAME_CHARS = re.compile(r'[^A-Za-z0-9._-]')
_DEGENERATE_NAMES = ('', '.', '..', '/')


class ImageProcessingError(Exception):
    """Raised when a single image cannot be downloaded, written or indexed."""
    pass


def _truncate_utf8(text: str, max_bytes: int) -> str:
    return text.encode('utf-8')[:max_bytes].decode('utf-8', errors='ignore')


def filename_from_url(url: str) -> str:
    """
    Last path segment of the URL, or the whole URL made filesystem-safe.

    Names are capped by UTF-8 length, keeping a short extension intact.
    """
    name = posixpath.basename(unquote(urlparse(url).path))
    if name in _DEGENERATE_NAMES:
        name = _UNSAFE_FILENAME_CHARS.sub('-', url)
    name = name.replace('\x00', '-')

    if len(name.encode('utf-8')) > MAX_FILENAME_BYTES:
        stem, ext = os.path.splitext(name)
        if len(ext.encode('utf-8')) > MAX_EXTENSION_BYTES:
            stem, ext = name, ''
        name = _truncate_utf8(stem, MAX_FILENAME_BYTES - len(ext.encode('utf-8'))) + ext
    return name


def _create_exclusive(directory: Path, filename: str) -> Tuple[str, int]:
    """Open the first free name among name, name-1, name-2, ... with O_EXCL."""
    stem, ext = os.path.splitext(filename)
    for attempt in itertools.count():
        candidate = filename if attempt == 0 else f"{stem}-{attempt}{ext}"
        try:
            fd = os.open(directory / candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            continue
        return candidate, fd


def reserve_unique_file(directory: Path, filename: str) -> str:
    """
    Claim a free name by creating it empty, for writers that need a path
    rather than a file descriptor (Pillow, external processes).
    """
    candidate, fd = _create_exclusive(directory, filename)
    os.close(fd)
    return candidate


def write_unique_file(directory: Path, filename: str, data: bytes) -> str:
    """
    Write data under the first free name among name, name-1, name-2, ...

    Each candidate is created with O_EXCL, so two writers racing for the same
    name never share a file. Returns the name that was written.
    """
    candidate, fd = _create_exclusive(directory, filename)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)
    return candidate


def thumbnail_size(width: int, height: int, max_width: int) -> Tuple[int, int]:
    """Target size: unchanged up to max_width, else max_width with height scaled down."""
    if width <= max_width:
        return width, height
    return max_width, max(1, max_width * height // width)


def make_thumbnail(image: Image.Image, max_width: int) -> Image.Image:
    """
    Nearest-neighbour downscale. Destination pixel (x, y) takes source pixel
    (x * src_w // dst_w, y * src_h // dst_h).
    """
    source = image.convert('RGBA')
    src_w, src_h = source.size
    dst_w, dst_h = thumbnail_size(src_w, src_h, max_width)
    if (dst_w, dst_h) == (src_w, src_h):
        return source

    thumb = Image.new('RGBA', (dst_w, dst_h))
    src_pixels = source.load()
    dst_pixels = thumb.load()
    x_map = [x * src_w // dst_w for x in range(dst_w)]
    for y in range(dst_h):
        src_y = y * src_h // dst_h
        for x, src_x in enumerate(x_map):
            dst_pixels[x, y] = src_pixels[src_x, src_y]
    return thumb


def is_svg(data: bytes) -> bool:
    content = data.strip()
    return content.startswith(b'<?xml') or b'<svg' in content


class ImageProcessor:
    """
    Turns an ImageRef into a file on disk, an optional thumbnail and one
    metadata record.
    """

    def __init__(self, fetcher: PageFetcher, store: DatabaseManager, image_dir: str,
                 max_thumbnail_width: int = DEFAULT_MAX_THUMBNAIL_WIDTH,
                 download_timeout: float = 20.0,
                 rasterizer_command: Optional[str] = None,
                 rasterizer_timeout: Optional[float] = None):
        self.fetcher = fetcher
        self.store = store
        self.image_dir = Path(image_dir)
        self.max_thumbnail_width = max_thumbnail_width
        self.download_timeout = download_timeout
        self.rasterizer_command = rasterizer_command
        self.rasterizer_timeout = rasterizer_timeout
        self.logger = logging.getLogger(__name__)

        self.stats = {
            'images_indexed': 0,
            'thumbnails_created': 0,
            'svg_rasterized': 0,
            'undecodable': 0
        }

    def ensure_directory(self):
        self.image_dir.mkdir(parents=True, exist_ok=True)

    async def process(self, ref: ImageRef, base_url: str,
                      token: Optional[CancellationToken] = None) -> ImageMetadata:
        """
        Download, store, thumbnail and index one image.

        Raises:
            ImageProcessingError: unusable URL, write failure or store failure
            FetchError: download failed or returned non-2xx
            CrawlCancelled: the run was cancelled during the download or the
                rasterizer run
        """
        url = sanitize_url(ref.src, base_url)
        if url is None:
            raise ImageProcessingError(f"Unusable image URL {ref.src!r}")

        result = await self.fetcher.download(url, self.download_timeout, token)

        loop = asyncio.get_running_loop()
        try:
            filename = await loop.run_in_executor(
                None, write_unique_file, self.image_dir, filename_from_url(url), result.content
            )
        except OSError as e:
            raise ImageProcessingError(f"Could not write image from {url}: {e}") from e

        image_path = self.image_dir / filename
        width, height, image_format, thumbnail_path = await loop.run_in_executor(
            None, self._decode_and_thumbnail, result.content, image_path
        )

        if image_format == 'svg' and self.rasterizer_command:
            thumbnail_path = await self._rasterize(image_path, token)

        record = ImageMetadata(
            url=url,
            filename=filename,
            thumbnail_path=thumbnail_path,
            alt=ref.alt,
            title=ref.title,
            width=width,
            height=height,
            format=image_format
        )
        if not await self.store.insert_image(record):
            raise ImageProcessingError(f"Could not store metadata for {url}")

        self.stats['images_indexed'] += 1
        self.logger.debug(f"Indexed {url} as {filename} ({width}x{height} {image_format or 'unknown'})")
        return record

    def _reserve_thumbnail(self, image_path: Path) -> Path:
        """Claim `<file>.thumb.png` (or a numbered variant) so no existing file is replaced."""
        return self.image_dir / reserve_unique_file(self.image_dir, image_path.name + THUMBNAIL_SUFFIX)

    def _discard(self, path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove unused thumbnail {path}: {e}")

    def _decode_and_thumbnail(self, data: bytes, image_path: Path) -> Tuple[int, int, str, Optional[str]]:
        """Runs in an executor thread. Returns width, height, format and thumbnail path."""
        try:
            image = Image.open(io.BytesIO(data))
            width, height = image.size
            image_format = (image.format or '').lower()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
            if is_svg(data):
                return 0, 0, 'svg', None
            self.stats['undecodable'] += 1
            self.logger.warning(f"Unknown image format for {image_path}")
            return 0, 0, '', None

        thumbnail_path = None
        try:
            thumbnail_path = self._reserve_thumbnail(image_path)
            make_thumbnail(image, self.max_thumbnail_width).save(thumbnail_path, format='PNG')
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            self.logger.warning(f"Thumbnail failed for {image_path}: {e}")
            if thumbnail_path is not None:
                self._discard(thumbnail_path)
            return width, height, image_format, None

        self.stats['thumbnails_created'] += 1
        return width, height, image_format, str(thumbnail_path)

    async def _rasterize(self, input_path: Path,
                         token: Optional[CancellationToken] = None) -> Optional[str]:
        """
        Run the external rasterizer; success is exit status 0.

        The process is killed when the rasterizer timeout expires or the
        token fires. Cancellation propagates as CrawlCancelled.
        """
        loop = asyncio.get_running_loop()
        try:
            output_path = await loop.run_in_executor(None, self._reserve_thumbnail, input_path)
        except OSError as e:
            self.logger.warning(f"Could not reserve thumbnail name for {input_path}: {e}")
            return None

        try:
            command = self.rasterizer_command % (
                self.max_thumbnail_width,
                shlex.quote(str(output_path)),
                shlex.quote(str(input_path))
            )
        except (TypeError, ValueError) as e:
            self.logger.error(f"Invalid rasterizer command template {self.rasterizer_command!r}: {e}")
            self._discard(output_path)
            return None

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE
        )
        try:
            _, stderr = await run_with_token(
                token,
                asyncio.wait_for(process.communicate(), timeout=self.rasterizer_timeout)
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            self._discard(output_path)
            self.logger.warning(f"Rasterizer timed out for {input_path}")
            return None
        except CrawlCancelled:
            await self._kill(process)
            self._discard(output_path)
            raise

        if process.returncode != 0:
            self._discard(output_path)
            self.logger.warning(
                f"Rasterizer exited with {process.returncode} for {input_path}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
            return None

        self.stats['svg_rasterized'] += 1
        return str(output_path)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process):
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
