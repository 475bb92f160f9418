"""Guards around the downstream connection and request-scoped resources."""

import asyncio
from contextlib import AsyncExitStack
from types import TracebackType
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agent_relay.logging import get_logger

if TYPE_CHECKING:
    from agent_relay.emitter import DownstreamEmitter

log = get_logger(__name__)

Writer = Callable[[bytes], Awaitable[Any]]
Closer = Callable[[], Awaitable[Any]]

GENERIC_ERROR_MESSAGE = "Stream error"


class DownstreamChannel:
    """A client connection that never raises on write.

    Once closed (completion, fatal error, or client disconnect) every
    further write is dropped. A writer failure is treated as a disconnect.
    """

    def __init__(self, writer: Writer, closer: Closer | None = None):
        self._writer = writer
        self._closer = closer
        self._closed = False
        self._disconnected = False
        self.bytes_written = 0
        self.dropped_writes = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def mark_disconnected(self) -> None:
        """Record that the client went away; later writes are dropped."""
        if not self._closed:
            log.info("Client disconnected, suppressing further writes")
        self._disconnected = True
        self._closed = True

    async def write(self, data: bytes) -> bool:
        """Write to the client. Returns False if the write was dropped."""
        if self._closed:
            self.dropped_writes += 1
            return False
        try:
            await self._writer(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.info("Downstream write failed", error=str(e) or type(e).__name__)
            self.mark_disconnected()
            self.dropped_writes += 1
            return False
        self.bytes_written += len(data)
        return True

    async def close(self) -> None:
        """Close once. Safe to call repeatedly or after a disconnect."""
        if self._closed:
            return
        self._closed = True
        if self._closer is None:
            return
        try:
            await self._closer()
        except Exception as e:
            log.debug("Downstream close failed", error=str(e) or type(e).__name__)


class SafetyShell:
    """Request-level exit guarantees.

    On leaving the ``async with`` block, whatever the path:

    1. request-scoped resources pushed onto the shell are released,
    2. the emitter gets its terminal frame (an error frame if an exception escaped),
    3. the downstream channel is closed,
    4. the persistence callback runs exactly once; its failures are only logged.

    Exceptions other than cancellation are swallowed after being reported.
    """

    def __init__(
        self,
        channel: DownstreamChannel,
        emitter: "DownstreamEmitter",
        persist: Closer | None = None,
    ):
        self.channel = channel
        self.emitter = emitter
        self._persist = persist
        self._stack = AsyncExitStack()
        self._persisted = False

    async def __aenter__(self) -> "SafetyShell":
        await self._stack.__aenter__()
        return self

    def push_async_callback(self, callback: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Release a request-scoped resource when the request ends."""
        self._stack.push_async_callback(callback, *args)

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        try:
            await self._stack.aclose()
        except Exception as e:
            log.error("Releasing request resources failed", error=str(e))

        cancelled = exc_type is not None and issubclass(exc_type, asyncio.CancelledError)
        if exc is not None and not cancelled and isinstance(exc, Exception):
            log.error("Unhandled error in agent loop", error=str(exc), exc_info=exc)
            await self.emitter.error(GENERIC_ERROR_MESSAGE)
        elif not cancelled:
            await self.emitter.finish()

        await self.channel.close()
        await self._persist_once()

        # Cancellation and other BaseExceptions keep propagating.
        return exc is not None and not cancelled and isinstance(exc, Exception)

    async def _persist_once(self) -> None:
        if self._persisted or self._persist is None:
            return
        self._persisted = True
        try:
            await self._persist()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Persisting final response failed", error=str(e))
