"""
Single cancellation token shared by every blocking call in a crawl run.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar


T = TypeVar('T')


class CrawlCancelled(Exception):
    """Raised when an operation is abandoned because the crawl run was cancelled."""
    pass


class CancellationToken:
    """
    Covers a whole crawl run. Timeout expiry and explicit stop both cancel it;
    queue waits, semaphore acquires, fetches and downloads race against it.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        The pending operation is cancelled and CrawlCancelled raised when the
        token wins. A result that completes together with cancellation is
        still returned so acquired resources are not leaked.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CrawlCancelled()

        task = asyncio.ensure_future(awaitable)
        stop_task = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                [task, stop_task],
                return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not stop_task.done():
                stop_task.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            return await task
        except asyncio.CancelledError:
            raise CrawlCancelled() from None


async def run_with_token(token: Optional[CancellationToken], awaitable: Awaitable[T]) -> T:
    """Await directly when no token is supplied."""
    if token is None:
        return await awaitable
    return await token.run(awaitable)
