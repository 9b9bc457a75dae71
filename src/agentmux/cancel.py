"""Cancellation tokens and deadline composition for provider calls.

A request is aborted by whichever fires first: the caller's token or the
deadline. Token cancellation surfaces as ``asyncio.CancelledError`` so that
callers treat it like any other asyncio cancellation; an expired deadline
surfaces as ``RequestTimeoutError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from agentmux.errors import RequestTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CancelToken:
    """Caller-owned cancellation signal shared by one or more requests."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "user") -> None:
        """Trigger cancellation; later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise asyncio.CancelledError(self.reason)


async def run_cancellable(
    awaitable: Awaitable[T],
    *,
    token: CancelToken | None = None,
    timeout_s: float | None = None,
) -> T:
    """Await *awaitable*, aborting it when *token* fires or *timeout_s* elapses."""
    if token is not None and token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise asyncio.CancelledError(token.reason)
    task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait()) if token is not None else None
    try:
        async with asyncio.timeout(timeout_s):
            if waiter is None:
                return await task
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            logger.debug("Request aborted by cancel token (%s)", token.reason if token else None)
            raise asyncio.CancelledError(token.reason if token else None)
    except TimeoutError as exc:
        raise RequestTimeoutError(
            f"Request timed out after {timeout_s}s",
            hint="Raise the timeout or retry the request.",
            retryable=True,
        ) from exc
    finally:
        if waiter is not None:
            waiter.cancel()
        if not task.done():
            task.cancel()
            # Let the aborted call unwind (closing its HTTP response) before returning.
            await asyncio.wait({task})


async def _next_item(iterator: AsyncIterator[T]) -> tuple[bool, Any]:
    try:
        return True, await anext(iterator)
    except StopAsyncIteration:
        return False, None


async def iterate_cancellable(
    source: AsyncIterable[T],
    *,
    token: CancelToken | None = None,
    timeout_s: float | None = None,
) -> AsyncIterator[T]:
    """Re-yield *source*, applying one overall deadline and the caller token."""
    loop = asyncio.get_running_loop()
    deadline = None if timeout_s is None else loop.time() + timeout_s
    iterator = aiter(source)
    try:
        while True:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            has_item, item = await run_cancellable(
                _next_item(iterator), token=token, timeout_s=remaining
            )
            if not has_item:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if callable(aclose):
            await aclose()
