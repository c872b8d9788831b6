"""Base abstraction for streaming LLM providers."""
import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Optional

from sanitizer.core.cancellation import CancellationToken
from sanitizer.core.models import (
    Availability,
    CallResult,
    ProviderSettings,
    StatusCallback,
    UpdateCallback,
)

logger = logging.getLogger(__name__)


class Provider(ABC):
    """
    Abstract streaming backend.

    Every provider must implement:
    - ``id`` / ``label`` class attributes
    - ``check_availability(settings)``: cheap, side-effect-free check
    - ``call(...)``: send one chunk under the prompt and stream the result
    - ``detect_context_length()``: backend-specific context discovery

    Callbacks passed to ``call``:
    - ``on_status(message, progress)`` with progress 0-1, or None when
      indeterminate
    - ``on_update(delta)`` with incremental output, in emission order;
      concatenating all deltas yields the returned content

    Providers differ only in how they source the context length; callers
    never branch on the backend identity.
    """

    id: ClassVar[str] = ""
    label: ClassVar[str] = ""
    DEFAULT_CONTEXT_LENGTH: ClassVar[int] = 4096

    def __init__(self, settings: ProviderSettings | None = None):
        self.settings = settings or ProviderSettings()
        self._destroyed = False

    @classmethod
    async def check_availability(cls, settings: ProviderSettings | None = None) -> Availability:
        """Check whether this provider can be used in the current environment."""
        return Availability(available=False, reason="Not implemented")

    async def resolve_context_length(self) -> int:
        """
        Context size in tokens.

        Priority: user setting > backend auto-detection > class default.
        """
        if self.settings.context_length:
            return self.settings.context_length

        detected = await self.detect_context_length()
        if detected:
            logger.info("Auto-detected context length: %d tokens", detected)
            return detected
        return self.DEFAULT_CONTEXT_LENGTH

    async def detect_context_length(self) -> Optional[int]:
        """Ask the backend for its context size; None when unknown."""
        return None

    @abstractmethod
    async def call(
        self,
        text: str,
        prompt: str,
        on_status: Optional[StatusCallback] = None,
        on_update: Optional[UpdateCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> CallResult:
        """
        Send ``text`` to the LLM under ``prompt`` and stream back the result.

        Raises:
            CancelledException: If ``token`` fires before the call settles
        """

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    async def destroy(self) -> None:
        """Release any resources held by this provider instance (idempotent)."""
        if self._destroyed:
            return
        self._destroyed = True
        await self._release()

    async def _release(self) -> None:
        """Backend-specific cleanup, runs at most once."""
        return None
