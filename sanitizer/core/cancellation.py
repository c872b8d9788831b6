"""Cancellation token and suspension-point helpers."""
import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sanitizer.core.errors import SanitizerTimeoutError

T = TypeVar("T")


class ProcessingPhase(Enum):
    """Current processing phase."""
    IDLE = auto()
    CONNECTING = auto()   # Availability check, context detection
    SPLITTING = auto()    # Chunk budget and split
    GENERATION = auto()   # Streaming a chunk through the backend
    RECOVERY = auto()     # Re-splitting after a context overflow
    CONDENSING = auto()   # Reducing partial summaries


@dataclass
class CancellationToken:
    """
    Thread-safe cancellation token for one session.

    Features:
    - Cross-thread cancellation signaling (worker threads poll ``is_cancelled``)
    - Phase tracking for diagnostics
    - Callback support so pending awaits unwind immediately
    """
    _cancelled: bool = field(default=False, repr=False)
    _phase: ProcessingPhase = field(default=ProcessingPhase.IDLE, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _callbacks: list[Callable[[], None]] = field(default_factory=list, repr=False)
    reason: str = ""
    request_id: str = ""

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        with self._lock:
            return self._cancelled

    @property
    def phase(self) -> ProcessingPhase:
        """Get current processing phase."""
        with self._lock:
            return self._phase

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Request cancellation and invoke callbacks.

        Returns:
            True on the first call, False if already cancelled
        """
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self.reason = reason
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        # Invoke callbacks outside lock to avoid deadlock
        for callback in callbacks:
            callback()
        return True

    def set_phase(self, phase: ProcessingPhase) -> None:
        """Update current processing phase."""
        with self._lock:
            self._phase = phase

    def register_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback to be called on cancellation."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        # Already cancelled, invoke immediately
        callback()

    def unregister_callback(self, callback: Callable[[], None]) -> None:
        """Unregister a cancellation callback."""
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def check_cancelled(self) -> None:
        """Raise CancelledException if cancelled."""
        if self.is_cancelled:
            raise CancelledException(f"Request cancelled in phase: {self.phase.name}")


class CancelledException(Exception):
    """Raised when operation is cancelled."""
    pass


async def race_with_token(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """
    Await ``awaitable`` unless ``token`` fires first.

    The pending operation is cancelled as soon as the token fires, so
    network reads and timers unwind at their current suspension point.

    Raises:
        CancelledException: If the token fired before the operation settled
    """
    if token is None:
        return await awaitable

    if token.is_cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CancelledException("Cancelled before operation started")

    task = asyncio.ensure_future(awaitable)
    loop = asyncio.get_running_loop()

    def on_cancel():
        loop.call_soon_threadsafe(task.cancel)

    token.register_callback(on_cancel)
    try:
        return await task
    except asyncio.CancelledError:
        if token.is_cancelled:
            raise CancelledException(f"Cancelled in phase: {token.phase.name}") from None
        raise
    finally:
        token.unregister_callback(on_cancel)


_EXHAUSTED = object()


async def _next_item(iterator: AsyncIterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def iterate_with_token(
    source: AsyncIterable[T],
    token: Optional[CancellationToken],
) -> AsyncIterator[T]:
    """Iterate an async stream, racing every read against ``token``."""
    iterator = source.__aiter__()
    while True:
        item = await race_with_token(_next_item(iterator), token)
        if item is _EXHAUSTED:
            return
        yield item


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float], message: str) -> T:
    """
    Race ``awaitable`` against a timer.

    Raises:
        SanitizerTimeoutError: If the timer fires first
    """
    if seconds is None:
        return await awaitable
    try:
        async with asyncio.timeout(seconds):
            return await awaitable
    except TimeoutError as e:
        raise SanitizerTimeoutError(message) from e
