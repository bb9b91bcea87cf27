"""Cooperative cancellation signal shared by the router and vector store client."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from ragchat_core.exceptions import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    """Caller-owned cancellation signal.

    ``run`` races an awaitable against the signal; when the token fires first
    the awaitable's task is cancelled and ``OperationCancelledError`` raised.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            # the aborted call's own error is superseded by the cancellation
            pass
        raise OperationCancelledError(self.reason or "Operation cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early if the token fires."""
        await self.run(asyncio.sleep(delay))


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """Await ``awaitable``, racing it against ``token`` when one is given."""
    if token is None:
        return await awaitable
    return await token.run(awaitable)
