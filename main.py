#!/usr/bin/env python3
"""
Main entry point for the image crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from image_crawler.utils.config import Config, ConfigManager, load_config, validate_config
from image_crawler.utils.logger import setup_logging, log_system_info
from image_crawler.crawler.scheduler import CrawlerScheduler
from image_crawler.storage.database import DatabaseManager, ImageQuery


COMMANDS = ('crawl', 'search')


class CrawlerApp:
    """Main application class for the image crawler."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.logger = logging.getLogger(__name__)

    def setup_signal_handlers(self):
        """Stop the crawl gracefully on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            if self.scheduler and self.scheduler.dispatcher:
                self.scheduler.dispatcher.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Not available on Windows event loops
                pass

    async def crawl(self, config: Config, seed_urls: List[str], dry_run: bool = False) -> int:
        """Run a crawl."""
        setup_logging(config.logging)
        log_system_info()

        self.logger.info("=== IMAGE CRAWLER STARTING ===")
        self.logger.info(f"Seed URLs: {seed_urls}")
        self.logger.info(f"Workers: {config.crawler.workers}")
        self.logger.info(f"Max concurrent operations: {config.crawler.max_concurrent_operations}")
        self.logger.info(f"Follow external links: {config.crawler.follow_external}")
        self.logger.info(f"Render JS: {config.crawler.render_js}")
        self.logger.info(f"Crawl timeout: {config.crawler.crawl_timeout}s")
        self.logger.info(f"Image directory: {config.images.directory}")
        self.logger.info(f"Database type: {config.database.type}")

        try:
            if dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                await self._dry_run(config, seed_urls)
                return 0

            self.scheduler = CrawlerScheduler(config)
            await self.scheduler.initialize()
            self.setup_signal_handlers()

            await self.scheduler.start_crawling(seed_urls)

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== IMAGE CRAWLER FINISHED ===")

        return 0

    async def search(self, config: Config, query: ImageQuery) -> int:
        """Print image records matching the query, newest first."""
        database = DatabaseManager(config.database)
        await database.initialize()
        try:
            records = await database.query_images(query)
        finally:
            await database.close()

        for record in records:
            thumbnail = record.thumbnail_path or '-'
            print(f"{record.crawled_at.isoformat()}  {record.format or '?':5} "
                  f"{record.width}x{record.height}  {record.filename}  {thumbnail}  {record.url}")
        print(f"{len(records)} image(s)")
        return 0

    async def _dry_run(self, config: Config, seed_urls: List[str]):
        """Perform a dry run to test configuration and connections."""
        if config.redis.enabled:
            self.logger.info("Testing Redis connection...")
            try:
                import redis.asyncio as redis
                redis_client = redis.Redis(
                    host=config.redis.host,
                    port=config.redis.port,
                    db=config.redis.db,
                    password=config.redis.password
                )
                await redis_client.ping()
                await redis_client.aclose()
                self.logger.info("✓ Redis connection successful")
            except Exception as e:
                self.logger.error(f"✗ Redis connection failed: {e}")

        self.logger.info("Testing database configuration...")
        try:
            db_manager = DatabaseManager(config.database)
            await db_manager.initialize()
            await db_manager.close()
            self.logger.info("✓ Database initialization successful")
        except Exception as e:
            self.logger.error(f"✗ Database initialization failed: {e}")

        self.logger.info("Testing fetcher configuration...")
        try:
            from image_crawler.crawler.fetcher import PageFetcher
            from image_crawler.crawler.urls import normalize_job_url
            async with PageFetcher(
                user_agent=config.crawler.user_agent,
                request_timeout=config.crawler.request_timeout,
                render_js=config.crawler.render_js,
                render_timeout=config.crawler.render_timeout,
                render_settle_delay=config.crawler.render_settle_delay
            ) as fetcher:
                if seed_urls:
                    result = await fetcher.fetch(normalize_job_url(seed_urls[0]))
                    self.logger.info(f"✓ Test fetch successful: {result.status_code} "
                                     f"({len(result.content)} bytes, rendered={result.rendered})")
        except Exception as e:
            self.logger.error(f"✗ Fetcher test failed: {e}")

        self.logger.info("Dry run completed")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Image Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py crawl https://example.com            # Crawl with defaults / config.yaml
  python main.py https://example.com                  # Same; crawl is the default command
  python main.py crawl --timeout 300 --workers 20 example.com
  python main.py crawl --no-js --follow-external https://example.com
  python main.py search --format png --min-width 400  # Query the image index
        """
    )
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml, optional)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version='Image Crawler 1.0.0'
    )

    subparsers = parser.add_subparsers(dest='command')

    crawl = subparsers.add_parser('crawl', help='Crawl pages and index their images')
    crawl.add_argument('urls', nargs='*', help='Seed URLs (scheme optional, defaults to http://)')
    crawl.add_argument('--timeout', type=float, help='Crawl timeout in seconds')
    crawl.add_argument('--workers', type=int, help='Number of worker tasks')
    crawl.add_argument('--max-concurrent', type=int, help='Maximum concurrent fetch/process operations')
    crawl.add_argument('--max-depth', type=int, help='Maximum link depth (default: unbounded)')
    crawl.add_argument('--follow-external', action='store_true', default=None,
                       help='Follow links to other registrable domains')
    crawl.add_argument('--no-js', dest='render_js', action='store_false', default=None,
                       help='Disable headless browser rendering')
    crawl.add_argument('--image-dir', help='Directory for images and thumbnails')
    crawl.add_argument('--rasterizer', help="SVG rasterizer template, e.g. 'rsvg-convert -w %%d -o %%s %%s'")
    crawl.add_argument('--dry-run', action='store_true', help='Test configuration without crawling')

    search = subparsers.add_parser('search', help='Query indexed images')
    search.add_argument('--format', help='Exact image format, e.g. png, jpeg, svg')
    search.add_argument('--filename', help='Filename substring')
    search.add_argument('--min-width', type=int)
    search.add_argument('--min-height', type=int)
    search.add_argument('--limit', type=int, default=500)

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the command line, treating anything that is not a command as `crawl` arguments."""
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)

    index = 0
    while index < len(argv):
        if argv[index] == '--config':
            index += 2
        elif argv[index].startswith('--config='):
            index += 1
        else:
            break

    if index < len(argv) and argv[index] not in COMMANDS + ('-h', '--help', '--version'):
        argv.insert(index, 'crawl')
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> Config:
    """Load the YAML config if present and apply command-line overrides."""
    if Path(args.config).exists():
        config = load_config(args.config)
    else:
        config = ConfigManager.from_dict({})

    if args.command in (None, 'crawl'):
        overrides = {
            'crawl_timeout': getattr(args, 'timeout', None),
            'workers': getattr(args, 'workers', None),
            'max_concurrent_operations': getattr(args, 'max_concurrent', None),
            'max_depth': getattr(args, 'max_depth', None),
            'follow_external': getattr(args, 'follow_external', None),
            'render_js': getattr(args, 'render_js', None),
        }
        for name, value in overrides.items():
            if value is not None:
                setattr(config.crawler, name, value)
        if getattr(args, 'image_dir', None):
            config.images.directory = args.image_dir
        if getattr(args, 'rasterizer', None):
            config.images.rasterizer_command = args.rasterizer

    validate_config(config)
    return config


def main():
    """Main entry point."""
    args = parse_args()

    try:
        config = resolve_config(args)
    except (ValueError, TypeError) as e:
        print(f"Error: invalid configuration: {e}")
        return 1

    app = CrawlerApp()
    try:
        if args.command == 'search':
            query = ImageQuery(
                format=args.format,
                filename=args.filename,
                min_width=args.min_width,
                min_height=args.min_height,
                limit=args.limit
            )
            return asyncio.run(app.search(config, query))

        seed_urls = getattr(args, 'urls', None) or config.crawler.seed_urls
        if not seed_urls:
            print("Error: provide at least one seed URL as an argument or in crawler.seed_urls")
            return 1
        return asyncio.run(app.crawl(config, seed_urls, dry_run=getattr(args, 'dry_run', False)))

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
