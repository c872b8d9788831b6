"""Sanitize service: session lifecycle around the chunk orchestrator."""
import asyncio
import logging
from typing import Any, AsyncGenerator, Optional

from sanitizer.core.cancellation import CancelledException, ProcessingPhase, race_with_token
from sanitizer.core.config import config
from sanitizer.core.errors import ProviderUnavailableError, SanitizerError, normalize_error
from sanitizer.core.models import (
    CallResult,
    DeltaEvent,
    SanitizeRequest,
    StatusCallback,
    StatusEvent,
    UpdateCallback,
)
from sanitizer.core.sessions import Session, SessionCoordinator
from sanitizer.services.orchestrator import ChunkOrchestrator
from sanitizer.services.providers import create_provider, get_provider_class

logger = logging.getLogger(__name__)

STRATEGIES = ("sequential", "condense")

_END = object()


class SanitizeService:
    """
    Runs sanitization sessions end to end.

    Architecture:
    - SessionCoordinator: one cancellation token per external context
    - Provider: created per session, destroyed exactly once on every exit path
    - ChunkOrchestrator: splitting, sequential streaming, overflow recovery

    Output reaches the host through two channels: coarse status messages
    and order-significant output deltas.
    """

    def __init__(
        self,
        coordinator: SessionCoordinator,
        orchestrator: ChunkOrchestrator | None = None,
        provider_options: dict[str, dict[str, Any]] | None = None,
    ):
        self._coordinator = coordinator
        self._orchestrator = orchestrator or ChunkOrchestrator()
        # Extra constructor kwargs per provider id (e.g. a shared runtime)
        self._provider_options = provider_options or {}

    @property
    def coordinator(self) -> SessionCoordinator:
        return self._coordinator

    async def _execute(
        self,
        session: Session,
        request: SanitizeRequest,
        on_status: Optional[StatusCallback],
        on_update: Optional[UpdateCallback],
    ) -> CallResult:
        if request.strategy not in STRATEGIES:
            raise SanitizerError(f"Unknown strategy: {request.strategy}")

        # Phase: Availability check
        session.token.set_phase(ProcessingPhase.CONNECTING)
        provider_cls = get_provider_class(request.provider_id)
        availability = await provider_cls.check_availability(request.settings)
        if not availability.available:
            raise ProviderUnavailableError(availability.reason or f"{provider_cls.label} is unavailable.")
        session.token.check_cancelled()

        provider = create_provider(
            request.provider_id,
            request.settings,
            **self._provider_options.get(request.provider_id, {}),
        )
        try:
            if request.strategy == "condense":
                return await self._orchestrator.condense(
                    session, provider, request.text, request.prompt, on_status, on_update,
                )
            return await self._orchestrator.run(
                session, provider, request.text, request.prompt, on_status, on_update,
            )
        finally:
            await provider.destroy()

    async def run(
        self,
        request: SanitizeRequest,
        on_status: Optional[StatusCallback] = None,
        on_update: Optional[UpdateCallback] = None,
        session: Optional[Session] = None,
        keepalive: bool = False,
    ) -> Optional[CallResult]:
        """
        Run one session to completion.

        Args:
            request: Text, prompt, provider id and settings
            on_status: Status callback (message, progress)
            on_update: Delta callback
            session: Pre-started session; one is started when omitted
            keepalive: Wait briefly for the host heartbeat before starting

        Returns:
            The aggregated result, or None when the session was cancelled

        Raises:
            SanitizerError: Normalized failure for display to the user
        """
        if session is None:
            session = await self._coordinator.start_session(request.session_id)

        try:
            if keepalive:
                if on_status:
                    on_status("Waiting for keepalive...", None)
                await race_with_token(
                    self._coordinator.wait_for_heartbeat(request.session_id, config.keepalive_timeout),
                    session.token,
                )
            result = await self._execute(session, request, on_status, on_update)
            logger.info("Session %s completed (%d chars)", session.session_id, len(result.content))
            return result
        except CancelledException:
            logger.info("Session %s stopped: %s", session.session_id, session.token.reason or "cancelled")
            return None
        except Exception as e:
            raise normalize_error(e) from e
        finally:
            await self._coordinator.finish_session(session)

    async def stream(
        self,
        request: SanitizeRequest,
        keepalive: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """
        Run a session and yield its events.

        Yields:
            Event dicts: status, content, done, error, cancelled

        Closing the generator early cancels the session.
        """
        session = await self._coordinator.start_session(request.session_id)
        queue: asyncio.Queue = asyncio.Queue()

        def on_status(message: str, progress: Optional[float]) -> None:
            queue.put_nowait(StatusEvent(message, progress).to_dict())

        def on_update(delta: str) -> None:
            queue.put_nowait(DeltaEvent(delta).to_dict())

        async def produce() -> None:
            try:
                result = await self.run(
                    request, on_status, on_update, session=session, keepalive=keepalive,
                )
                if result is None:
                    queue.put_nowait({"cancelled": True})
                else:
                    queue.put_nowait({"done": True, "content": result.content})
            except SanitizerError as e:
                queue.put_nowait(e.to_dict())
            finally:
                queue.put_nowait(_END)

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                if event is _END:
                    break
                yield event
            await task
        finally:
            if not task.done():
                session.token.cancel("stream closed")
                await asyncio.gather(task, return_exceptions=True)
