"""
mcpchat - Keyed cancellation of in-flight requests.

A ``CancellationRegistry`` is owned by whoever issues requests (one per
chat client or session). Starting a request under a key aborts any request
still running under the same key, so at most one flow is active per key.
Aborting is a clean early stop, never an error.
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterable, AsyncIterator, Callable, Optional, TypeVar

logger = logging.getLogger("mcpchat.cancellation")

DEFAULT_KEY = "send-message"

T = TypeVar("T")


class CancellationToken:
    """Abort signal for one request."""

    def __init__(self, key: str) -> None:
        self.key = key
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield from ``source`` until it ends or this token is cancelled.

        A pending read is interrupted as soon as the token is cancelled.
        """
        iterator = source.__aiter__()
        waiter = asyncio.ensure_future(self._event.wait())
        next_item: Optional[asyncio.Future] = None
        try:
            while not self.cancelled:
                next_item = asyncio.ensure_future(iterator.__anext__())
                await asyncio.wait({next_item, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not next_item.done():
                    break
                try:
                    item = next_item.result()
                except StopAsyncIteration:
                    break
                yield item
        finally:
            waiter.cancel()
            # Also reached when the consuming task itself is cancelled mid-read.
            if next_item is not None and not next_item.done():
                next_item.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_item
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        if self.cancelled:
            logger.info("Request '%s' aborted", self.key)


class CancellationRegistry:
    """Per-key registry of in-flight request tokens."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def start(self, key: str = DEFAULT_KEY) -> CancellationToken:
        """Abort whatever runs under ``key`` and register a fresh token."""
        self.abort(key)
        token = CancellationToken(key)
        self._tokens[key] = token
        return token

    def abort(self, key: str = DEFAULT_KEY) -> bool:
        token = self._tokens.pop(key, None)
        if token is None:
            return False
        token.cancel()
        return True

    def finish(self, token: CancellationToken) -> None:
        """Forget ``token`` if it is still the active one for its key."""
        if self._tokens.get(token.key) is token:
            del self._tokens[token.key]

    def active(self, key: str = DEFAULT_KEY) -> Optional[CancellationToken]:
        return self._tokens.get(key)

    def abort_all(self) -> None:
        for key in list(self._tokens):
            self.abort(key)
