"""Error taxonomy and user-facing message normalization.

Every failure that reaches the host is a ``SanitizerError`` carrying a
machine-distinguishable ``kind`` and a message meant for direct display.
Cancellation is not part of this hierarchy, see ``CancelledException``.
"""
import re
from enum import Enum


class ErrorKind(str, Enum):
    """Machine-distinguishable failure kinds."""
    CANCELLED = "cancelled"
    CONTEXT_OVERFLOW = "context_overflow"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNAVAILABLE = "unavailable"
    GENERIC = "generic"


# Backend error vocabularies differ; extend these per target backend.
CONTEXT_ERROR_PATTERN = re.compile(
    r"context size|context length|context window|n_ctx|exceeded|too many tokens"
    r"|input too long|maximum context",
    re.IGNORECASE,
)
TIMEOUT_ERROR_PATTERN = re.compile(r"timeout|timed out|ETIMEDOUT", re.IGNORECASE)
NETWORK_ERROR_PATTERN = re.compile(
    r"fetch|network|connection|ECONNREFUSED|ECONNRESET",
    re.IGNORECASE,
)

TIMEOUT_MESSAGE = "Request timed out. Try increasing timeout or reducing context length."
CONTEXT_MESSAGE = 'Context size exceeded. Reduce "Context length" in settings or shorten the prompt.'
NETWORK_MESSAGE = "Network error. Check API URL and that the server is running."


class SanitizerError(Exception):
    """Base exception for failures surfaced to the host."""
    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind.value}


class ContextOverflowError(SanitizerError):
    """Backend rejected the input as larger than its context window."""
    kind = ErrorKind.CONTEXT_OVERFLOW


class SanitizerTimeoutError(SanitizerError):
    """A chunk or request did not settle before its timer."""
    kind = ErrorKind.TIMEOUT


class NetworkError(SanitizerError):
    """Transport-level failure talking to the backend."""
    kind = ErrorKind.NETWORK


class ProviderUnavailableError(SanitizerError):
    """Capability check reported the backend as unusable."""
    kind = ErrorKind.UNAVAILABLE


def _message_of(err: BaseException) -> str:
    return str(err) or err.__class__.__name__


def is_context_error(err: BaseException) -> bool:
    """Best-effort check whether ``err`` reports a context overflow."""
    if isinstance(err, ContextOverflowError):
        return True
    if isinstance(err, SanitizerError):
        return False
    return bool(CONTEXT_ERROR_PATTERN.search(_message_of(err)))


def classify_error(err: BaseException) -> ErrorKind:
    """Map an arbitrary exception onto an ``ErrorKind``."""
    if isinstance(err, SanitizerError):
        return err.kind
    if isinstance(err, TimeoutError):
        return ErrorKind.TIMEOUT

    message = _message_of(err)
    if TIMEOUT_ERROR_PATTERN.search(message):
        return ErrorKind.TIMEOUT
    if CONTEXT_ERROR_PATTERN.search(message):
        return ErrorKind.CONTEXT_OVERFLOW
    if isinstance(err, ConnectionError) or NETWORK_ERROR_PATTERN.search(message):
        return ErrorKind.NETWORK
    return ErrorKind.GENERIC


def normalize_error(err: BaseException) -> SanitizerError:
    """
    Convert any failure into a single user-facing ``SanitizerError``.

    Unavailable and generic errors keep their own message verbatim;
    the other kinds get a fixed hint for the user.
    """
    kind = classify_error(err)

    if kind is ErrorKind.TIMEOUT:
        message = TIMEOUT_MESSAGE
    elif kind is ErrorKind.CONTEXT_OVERFLOW:
        message = CONTEXT_MESSAGE
    elif kind is ErrorKind.NETWORK:
        message = NETWORK_MESSAGE
    elif isinstance(err, SanitizerError):
        message = err.message
    else:
        message = _message_of(err)

    normalized = SanitizerError(message, kind=kind)
    normalized.__cause__ = err
    return normalized
