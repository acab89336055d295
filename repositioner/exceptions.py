"""
Custom exception hierarchy for the reposition engine.

Every error carries an ``ErrorKind`` so the tool boundary can render a
uniform envelope without re-inspecting the exception type.

Hierarchy:

    RepositionerError (base)                      INTERNAL_ERROR
    ├── OperationalError   - transient/retryable (RPC, network, storage)
    │   ├── RpcError                              RPC_ERROR
    │   ├── PriceUnavailableError                 RPC_ERROR
    │   ├── DatabaseError                         DATABASE_ERROR
    │   └── CacheError                            CACHE_ERROR
    ├── DataError          - bad input or absent entity, never retried
    │   ├── ValidationError                       VALIDATION_ERROR
    │   │   └── InsufficientCreditsError
    │   └── NotFoundError                         NOT_FOUND
    ├── AccessDeniedError                         ACCESS_DENIED
    └── InvariantError     - data-integrity violation
        └── DataIntegrityError                    INTERNAL_ERROR

Rules:
    - OperationalError: retry with bounded backoff, then surface.
    - DataError: surface to the caller with an actionable message.
    - InvariantError: log in full, surface generically.
    - Anything else is wrapped once at the tool boundary as INTERNAL_ERROR.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Tool-facing error kinds."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RPC_ERROR = "RPC_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CACHE_ERROR = "CACHE_ERROR"
    ACCESS_DENIED = "ACCESS_DENIED"


# Kinds whose message and details never reach the caller.
GENERIC_KINDS = frozenset({ErrorKind.DATABASE_ERROR, ErrorKind.INTERNAL_ERROR})

GENERIC_MESSAGES = {
    ErrorKind.DATABASE_ERROR: "A storage error occurred. Please try again later.",
    ErrorKind.INTERNAL_ERROR: "An internal error occurred. Please try again later.",
}


class RepositionerError(Exception):
    """Base exception for all reposition engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(RepositionerError):
    """Transient/retryable error: RPC, network, timeouts, storage."""
    pass


class RpcError(OperationalError):
    """Ledger RPC or pool service transport failure."""

    kind = ErrorKind.RPC_ERROR


class PriceUnavailableError(OperationalError):
    """No usable spot price after all attempts and no fallback.

    ``last_error`` keeps the final underlying failure.
    """

    kind = ErrorKind.RPC_ERROR

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message, details=str(last_error) if last_error else None)
        self.last_error = last_error


class DatabaseError(OperationalError):
    """Unexpected storage failure."""

    kind = ErrorKind.DATABASE_ERROR


class CacheError(OperationalError):
    """Cache failure. Non-fatal: callers treat it as a miss."""

    kind = ErrorKind.CACHE_ERROR


# ============ DATA (bad input, terminal) ============

class DataError(RepositionerError):
    """Bad input or absent entity."""
    pass


class ValidationError(DataError):
    """Malformed address or input. Never retried."""

    kind = ErrorKind.VALIDATION_ERROR


class InsufficientCreditsError(ValidationError):
    """A debit would drive the credit balance negative."""
    pass


class NotFoundError(DataError):
    """Entity absent. Terminal."""

    kind = ErrorKind.NOT_FOUND


# ============ ACCESS ============

class AccessDeniedError(RepositionerError):
    """Premium operation refused by the access gate."""

    kind = ErrorKind.ACCESS_DENIED

    def __init__(self, message: str, details: Optional[str] = None, subscription_status: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.subscription_status = subscription_status


# ============ INVARIANT ============

class InvariantError(RepositionerError):
    """Invariant violation. Never silently continued."""
    pass


class DataIntegrityError(InvariantError):
    """Two sources disagree about the identity of one record."""
    pass


def wrap_boundary(exc: BaseException, error_cls: type, message: str) -> RepositionerError:
    """
    Wrap a foreign exception into a typed error exactly once.

    Already-typed errors are returned unchanged so nothing is re-wrapped
    on its way up through several components.
    """
    if isinstance(exc, RepositionerError):
        return exc
    return error_cls(message, details=str(exc) or exc.__class__.__name__)


def error_envelope(exc: BaseException) -> Dict[str, Any]:
    """
    Render an exception as the uniform tool error envelope.

    Returns:
        ``{"error": kind, "message": str, "details"?: str}``
    """
    if not isinstance(exc, RepositionerError):
        kind = ErrorKind.INTERNAL_ERROR
        return {"error": kind.value, "message": GENERIC_MESSAGES[kind]}

    if exc.kind in GENERIC_KINDS:
        return {"error": exc.kind.value, "message": GENERIC_MESSAGES[exc.kind]}

    envelope: Dict[str, Any] = {"error": exc.kind.value, "message": exc.message}
    if exc.details:
        envelope["details"] = exc.details
    if isinstance(exc, AccessDeniedError) and exc.subscription_status is not None:
        envelope["subscriptionStatus"] = exc.subscription_status
    return envelope
