"""
Job dispatcher: owns the deduplicated job queue, the concurrency budget and
the worker pool.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import redis.asyncio as redis

from ..utils.logger import CrawlerLogAdapter, get_crawler_logger
from ..utils.monitoring import CrawlerMonitor
from .cancellation import CancellationToken, CrawlCancelled, run_with_token
from .fetcher import FetchError, PageFetcher
from .images import ImageProcessingError, ImageProcessor
from .parser import ImageRef, PageExtractor, ParseError
from .url_frontier import Job, MemoryVisitedSet, VisitedSet
from .urls import SameSitePolicy, normalize_job_url


class ConcurrencyBudget:
    """Counting semaphore bounding in-flight fetch/process operations across all workers."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self.in_use = 0

    @asynccontextmanager
    async def slot(self, token: Optional[CancellationToken] = None):
        """Hold one unit. Waiting for it is abandoned if the token fires."""
        await run_with_token(token, self._semaphore.acquire())
        self.in_use += 1
        try:
            yield
        finally:
            self.in_use -= 1
            self._semaphore.release()


class Dispatcher:
    """
    Schedules crawl jobs onto a fixed pool of worker tasks.

    Every URL is enqueued at most once per run; a full queue drops the job
    with a warning instead of blocking the caller. One cancellation token
    covers the run: timeout and stop() both fire it, workers stop dequeuing
    and in-flight I/O unwinds through the same token.
    """

    def __init__(self, fetcher: PageFetcher, extractor: PageExtractor,
                 image_processor: ImageProcessor, same_site: SameSitePolicy,
                 visited: Optional[VisitedSet] = None, workers: int = 10,
                 max_concurrent_operations: int = 200, follow_external: bool = False,
                 queue_size: int = 1000, max_depth: Optional[int] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.fetcher = fetcher
        self.extractor = extractor
        self.image_processor = image_processor
        self.same_site = same_site
        self.visited = visited or MemoryVisitedSet()
        self.worker_count = workers
        self.follow_external = follow_external
        self.max_depth = max_depth
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self.budget = ConcurrencyBudget(max_concurrent_operations)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._token = CancellationToken()
        self._closed = False
        self._workers: List[asyncio.Task] = []
        self._active_jobs = 0

        self.stats = {
            'jobs_enqueued': 0,
            'jobs_dropped': 0,
            'pages_fetched': 0,
            'fetch_errors': 0,
            'parse_errors': 0,
            'images_indexed': 0,
            'image_errors': 0,
            'unexpected_errors': 0
        }

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._closed

    @property
    def token(self) -> CancellationToken:
        return self._token

    async def add(self, job: Job):
        """
        Schedule a job unless its URL was already scheduled this run.

        Never raises. A full queue drops the job and logs a warning; the URL
        stays marked as visited.
        """
        if self._closed:
            self.logger.debug(f"Dispatcher closed, ignoring {job.url}")
            return

        url = normalize_job_url(job.url)
        if url is None:
            return

        if self.max_depth is not None and job.depth > self.max_depth:
            self.logger.debug(f"Skipping {url}: depth {job.depth} beyond max depth {self.max_depth}")
            return

        try:
            if not await self.visited.add(url):
                return
        except (redis.RedisError, OSError) as e:
            self.logger.error(f"Visited set unavailable, dropping {url}: {e}")
            return

        try:
            self._queue.put_nowait(Job(url=url, depth=job.depth))
        except asyncio.QueueFull:
            self.stats['jobs_dropped'] += 1
            self.logger.warning(f"Job queue full, dropping {url}")
            if self.monitor:
                self.monitor.record_job_dropped(url)
            return

        self.stats['jobs_enqueued'] += 1
        if self.monitor:
            self.monitor.record_job_enqueued(url)
            self.monitor.update_queue_size(self._queue.qsize())

    async def run(self, timeout: Optional[float] = None):
        """
        Run the worker pool until the timeout expires or stop() is called,
        then close intake and wait for in-flight jobs to finish.

        A timeout of zero or less counts as already expired: no job is dequeued.
        """
        if self._workers:
            raise RuntimeError("Dispatcher is already running")

        self.logger.info(
            f"Dispatcher starting with {self.worker_count} workers, "
            f"max concurrent operations={self.budget.capacity}"
        )

        if timeout is not None and timeout <= 0:
            self.logger.info("Crawl timeout already expired, no work will be started")
            self._token.cancel()

        self._workers = [
            asyncio.create_task(self._worker(worker_id))
            for worker_id in range(self.worker_count)
        ]

        try:
            await asyncio.wait_for(self._token.wait(), timeout=timeout)
            self.logger.info("Dispatcher stopped - closing job intake")
        except asyncio.TimeoutError:
            self.logger.info("Crawl timeout reached - closing job intake")
        finally:
            self._token.cancel()
            self._closed = True
            await asyncio.gather(*self._workers, return_exceptions=True)
            self.logger.info("Dispatcher: all workers done")

    def stop(self):
        """Ask workers to stop dequeuing. In-flight I/O observes the same token."""
        if not self._token.cancelled:
            self.logger.info("Dispatcher stop requested")
        self._token.cancel()

    async def _worker(self, worker_id: int):
        log = get_crawler_logger(__name__, worker=worker_id)
        log.debug("started")

        while not self._token.cancelled:
            try:
                job = await self._token.run(self._queue.get())
            except CrawlCancelled:
                break

            try:
                if self._token.cancelled:
                    break
                await self._run_job(job, log)
            finally:
                self._queue.task_done()

        log.debug("stopped")

    async def _run_job(self, job: Job, log: CrawlerLogAdapter):
        self._active_jobs += 1
        if self.monitor:
            self.monitor.update_active_workers(self._active_jobs)
            self.monitor.update_queue_size(self._queue.qsize())

        try:
            await self._process_job(job, log)
        except CrawlCancelled:
            log.debug(f"Abandoned {job.url}: crawl cancelled")
        except Exception as e:
            self.stats['unexpected_errors'] += 1
            log.error(f"Unexpected error processing {job.url}: {e}", exc_info=True)
            if self.monitor:
                self.monitor.record_error('unexpected')
        finally:
            self._active_jobs -= 1
            if self.monitor:
                self.monitor.update_active_workers(self._active_jobs)

    async def _process_job(self, job: Job, log: CrawlerLogAdapter):
        """Fetch one page, schedule its links and index its images."""
        log.info(f"Processing {job.url} (depth {job.depth})")

        try:
            async with self.budget.slot(self._token):
                result = await self.fetcher.fetch(job.url, self._token)
        except FetchError as e:
            self.stats['fetch_errors'] += 1
            log.warning(f"Fetch failed for {job.url}: {e}")
            if self.monitor:
                self.monitor.record_error('fetch')
            return

        self.stats['pages_fetched'] += 1
        if self.monitor:
            self.monitor.record_page_fetched(job.url)

        try:
            page = self.extractor.extract(result.base_url, result.content)
        except ParseError as e:
            self.stats['parse_errors'] += 1
            log.warning(f"Parse failed for {job.url}: {e}")
            if self.monitor:
                self.monitor.record_error('parse')
            return

        for link in page.links:
            if not self.follow_external and not self.same_site.is_same_site(result.base_url, link):
                continue
            await self.add(job.child(link))

        if page.images:
            await asyncio.gather(*(
                self._process_image(ref, result.base_url, log) for ref in page.images
            ))

    async def _process_image(self, ref: ImageRef, base_url: str, log: CrawlerLogAdapter) -> bool:
        """Index one image. Failures are logged and never reach sibling images."""
        try:
            async with self.budget.slot(self._token):
                await self.image_processor.process(ref, base_url, self._token)
        except CrawlCancelled:
            log.debug(f"Image {ref.src} abandoned: crawl cancelled")
            return False
        except (FetchError, ImageProcessingError) as e:
            self.stats['image_errors'] += 1
            log.warning(f"Process image {ref.src}: {e}")
            if self.monitor:
                self.monitor.record_error('image')
            return False
        except Exception as e:
            self.stats['image_errors'] += 1
            log.error(f"Unexpected error processing image {ref.src}: {e}", exc_info=True)
            if self.monitor:
                self.monitor.record_error('image')
            return False

        self.stats['images_indexed'] += 1
        if self.monitor:
            self.monitor.record_image_indexed(ref.src)
        return True

    def get_stats(self) -> Dict[str, int]:
        stats = self.stats.copy()
        stats['queued'] = self._queue.qsize()
        stats['active_jobs'] = self._active_jobs
        return stats
