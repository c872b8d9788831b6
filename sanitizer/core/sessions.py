"""Session registry and lifecycle coordination."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from sanitizer.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """
    One in-flight sanitization request bound to an external context.

    The session exclusively owns its cancellation token.
    """
    session_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    output: str = ""
    retry_path: tuple[int, ...] = ()  # chunk lineage currently processed
    started_at: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        if not self.token.request_id:
            self.token.request_id = self.session_id

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def append_output(self, delta: str) -> None:
        self.output += delta

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "phase": self.token.phase.name,
            "cancelled": self.token.is_cancelled,
            "output_chars": len(self.output),
            "retry_path": list(self.retry_path),
            "elapsed": round(time.monotonic() - self.started_at, 3),
        }


class SessionCoordinator:
    """
    Owns the session registry and pending keepalive handshakes.

    Ensures at most one active session per external context: starting a
    new session for a context cancels the previous one. Both registries
    are only mutated here.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._pending_heartbeats: dict[str, asyncio.Future] = {}

    async def start_session(self, session_id: str) -> Session:
        """
        Start a new session, cancelling any existing one for the same context.

        Returns:
            New Session owning a fresh cancellation token
        """
        async with self._lock:
            previous = self._sessions.get(session_id)
            if previous is not None:
                previous.token.cancel("superseded")
                logger.info("Session %s superseded by a new request", session_id)

            session = Session(session_id=session_id)
            self._sessions[session_id] = session
            logger.info("Session %s started", session_id)
            return session

    async def cancel(self, session_id: str, reason: str = "stopped") -> bool:
        """
        Cancel the session for a context.

        Returns:
            True if a session was cancelled, False if none was active
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            # A connected heartbeat stays registered until the socket drops
            pending = self._pending_heartbeats.get(session_id)
            if pending is not None and not pending.done():
                del self._pending_heartbeats[session_id]
                pending.cancel()
        if session is None:
            return False

        fired = session.token.cancel(reason)
        if fired:
            logger.info("Session %s cancelled (%s)", session_id, reason)
        return fired

    async def context_gone(self, session_id: str) -> bool:
        """The external context navigated away or was closed."""
        return await self.cancel(session_id, reason="context gone")

    async def finish_session(self, session: Session) -> None:
        """Mark a session as finished."""
        async with self._lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
        logger.info("Session %s finished", session.session_id)

    async def wait_for_heartbeat(self, session_id: str, timeout: float) -> bool:
        """
        Wait until the host opens the liveness heartbeat for a session.

        Returns:
            True if the heartbeat connected in time, False otherwise
        """
        loop = asyncio.get_running_loop()
        async with self._lock:
            waiter = self._pending_heartbeats.get(session_id)
            if waiter is None or waiter.cancelled():
                waiter = loop.create_future()
                self._pending_heartbeats[session_id] = waiter

        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout)
            return True
        except TimeoutError:
            logger.warning("No heartbeat for session %s within %.1fs", session_id, timeout)
        except asyncio.CancelledError:
            # Waiter cancelled by a stop; the caller itself was not cancelled
            if not waiter.cancelled():
                raise

        async with self._lock:
            if self._pending_heartbeats.get(session_id) is waiter and not waiter.done():
                del self._pending_heartbeats[session_id]
        return False

    async def heartbeat_connected(self, session_id: str) -> bool:
        """
        Rendezvous with a pending ``wait_for_heartbeat``.

        A heartbeat arriving before anyone waits is recorded so the wait
        completes immediately.
        """
        loop = asyncio.get_running_loop()
        async with self._lock:
            waiter = self._pending_heartbeats.get(session_id)
            if waiter is None or waiter.cancelled():
                waiter = loop.create_future()
                self._pending_heartbeats[session_id] = waiter
            if not waiter.done():
                waiter.set_result(True)
        logger.info("Heartbeat connected for session %s", session_id)
        return True

    async def heartbeat_lost(self, session_id: str) -> bool:
        """The liveness heartbeat dropped; treated as an explicit stop."""
        async with self._lock:
            self._pending_heartbeats.pop(session_id, None)
        logger.info("Heartbeat lost for session %s", session_id)
        return await self.cancel(session_id, reason="heartbeat lost")

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        """Check if a context has a live, uncancelled session."""
        session = self._sessions.get(session_id)
        return session is not None and not session.is_cancelled

    @property
    def active_sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if not s.is_cancelled]
