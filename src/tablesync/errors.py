"""
Error kinds and the typed error hierarchy shared by the engine and clients.

Every failure the engine records carries an ErrorKind. Endpoint clients raise
the EndpointError subclasses below; the kind is structured metadata on the
exception, never parsed back out of the message text.
"""
import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    FETCH = "fetch"
    TRANSFORM = "transform"
    WRITE = "write"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    STATE = "state"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    NETWORK = "network"
    UNKNOWN = "unknown"


# ── Base ──────────────────────────────────────────────────────────────────────

class SyncEngineError(Exception):
    """Base class for all errors raised by tablesync or its endpoint clients."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = True

    def __init__(self, message: str = "", *, row_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.row_id = row_id


# ── Endpoint errors (raised by clients) ───────────────────────────────────────

class EndpointError(SyncEngineError):
    """An external endpoint rejected or failed a request."""

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        row_id: Optional[str] = None,
    ):
        super().__init__(message, row_id=row_id)
        self.status_code = status_code


class RateLimitError(EndpointError):
    """HTTP 429 or an equivalent quota signal."""

    kind = ErrorKind.RATE_LIMIT


class AuthError(EndpointError):
    """Credentials rejected or expired. Retried: token refresh may be in flight."""

    kind = ErrorKind.AUTH


class TransientError(EndpointError):
    """5xx, timeouts and dropped connections."""

    kind = ErrorKind.NETWORK


class ClientRequestError(EndpointError):
    """A 4xx other than 429: the request itself is wrong and will not succeed."""

    kind = ErrorKind.WRITE
    retryable = False


class ValidationError(SyncEngineError):
    """A value was rejected by a field constraint (e.g. strict choice list)."""

    kind = ErrorKind.VALIDATION
    retryable = False


# ── Engine-internal errors ────────────────────────────────────────────────────

class TransformError(SyncEngineError):
    """A value could not be converted between the two endpoint representations."""

    kind = ErrorKind.TRANSFORM
    retryable = False


class StateError(SyncEngineError):
    """A checkpoint is malformed or belongs to another configuration."""

    kind = ErrorKind.STATE
    retryable = False


class ConflictError(SyncEngineError):
    """A conflict record cannot be resolved (e.g. it has no row on either side)."""

    kind = ErrorKind.CONFLICT
    retryable = False


class OperationFailed(SyncEngineError):
    """Raised by RetryExecutor once every attempt of an operation has failed."""

    def __init__(self, message: str, *, kind: ErrorKind, attempts: int):
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts


# ── Helpers ───────────────────────────────────────────────────────────────────

def classify_error(exc: BaseException, default: ErrorKind = ErrorKind.UNKNOWN) -> ErrorKind:
    """
    Return the ErrorKind for an exception.

    Typed engine errors keep their own kind (UNKNOWN on the base class falls
    through to the default). Timeouts and OS-level connection failures are
    NETWORK. Anything else takes the caller's phase default.
    """
    if isinstance(exc, SyncEngineError) and exc.kind is not ErrorKind.UNKNOWN:
        return exc.kind
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK
    return default


def is_retryable(exc: BaseException) -> bool:
    """Client errors and engine-internal errors fail fast; everything else is retried."""
    if isinstance(exc, SyncEngineError):
        return exc.retryable
    return True


def attempts_of(exc: BaseException) -> int:
    return getattr(exc, "attempts", 1)


def root_message(exc: BaseException) -> str:
    """The message of the innermost cause, which is what users want to read."""
    current = exc
    while isinstance(current, OperationFailed) and current.__cause__ is not None:
        current = current.__cause__
    return str(current) or current.__class__.__name__
