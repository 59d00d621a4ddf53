"""Cooperative cancellation for in-flight streams."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, TypeVar

from deepseek_stream.errors import StreamCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Signal shared between a caller and the stream it wants to stop.

    ``cancel()`` may be called from any coroutine on the same event loop.
    Pending awaits wrapped with :meth:`race` are interrupted immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason or "no reason given")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled(self.reason)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation happens first.

        Raises StreamCancelled when the token fires before the awaitable
        completes; the awaitable is cancelled and awaited before raising.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StreamCancelled(self.reason)
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # The read must be finished before anyone closes its source
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise StreamCancelled(self.reason)
