# Core module - Data models, configuration, cancellation and sessions
from .config import Config, config
from .models import (
    Availability,
    CallResult,
    Chunk,
    DeltaEvent,
    ProviderSettings,
    SanitizeRequest,
    StatusEvent,
    Tool,
)
from .errors import (
    ContextOverflowError,
    ErrorKind,
    NetworkError,
    ProviderUnavailableError,
    SanitizerError,
    SanitizerTimeoutError,
    is_context_error,
    normalize_error,
)
from .cancellation import (
    CancellationToken,
    CancelledException,
    ProcessingPhase,
    iterate_with_token,
    race_with_token,
    with_timeout,
)
from .sessions import Session, SessionCoordinator

__all__ = [
    "Config",
    "config",
    "Availability",
    "CallResult",
    "Chunk",
    "DeltaEvent",
    "ProviderSettings",
    "SanitizeRequest",
    "StatusEvent",
    "Tool",
    "ContextOverflowError",
    "ErrorKind",
    "NetworkError",
    "ProviderUnavailableError",
    "SanitizerError",
    "SanitizerTimeoutError",
    "is_context_error",
    "normalize_error",
    "CancellationToken",
    "CancelledException",
    "ProcessingPhase",
    "iterate_with_token",
    "race_with_token",
    "with_timeout",
    "Session",
    "SessionCoordinator",
]
