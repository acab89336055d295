"""
Unit tests for the error hierarchy and the tool error envelope.
"""
import pytest

from repositioner.exceptions import (
    AccessDeniedError,
    DatabaseError,
    DataIntegrityError,
    ErrorKind,
    InsufficientCreditsError,
    NotFoundError,
    OperationalError,
    PriceUnavailableError,
    RpcError,
    ValidationError,
    error_envelope,
    wrap_boundary,
)


@pytest.mark.parametrize("exc, kind", [
    (ValidationError("bad"), ErrorKind.VALIDATION_ERROR),
    (InsufficientCreditsError("short"), ErrorKind.VALIDATION_ERROR),
    (NotFoundError("gone"), ErrorKind.NOT_FOUND),
    (RpcError("down"), ErrorKind.RPC_ERROR),
    (PriceUnavailableError("no price"), ErrorKind.RPC_ERROR),
    (DatabaseError("db"), ErrorKind.DATABASE_ERROR),
    (AccessDeniedError("no"), ErrorKind.ACCESS_DENIED),
    (DataIntegrityError("conflict"), ErrorKind.INTERNAL_ERROR),
])
def test_error_kinds(exc, kind):
    assert exc.kind == kind


def test_envelope_carries_message_and_details():
    envelope = error_envelope(ValidationError("Invalid slippage", "must be 1..5000"))
    assert envelope == {
        "error": "VALIDATION_ERROR",
        "message": "Invalid slippage",
        "details": "must be 1..5000",
    }


def test_envelope_hides_storage_and_internal_details():
    db = error_envelope(DatabaseError("Failed to save", "password=hunter2 host=10.0.0.5"))
    assert db["error"] == "DATABASE_ERROR"
    assert "details" not in db
    assert "hunter2" not in db["message"]

    internal = error_envelope(KeyError("secret_key"))
    assert internal["error"] == "INTERNAL_ERROR"
    assert "secret_key" not in internal["message"]


def test_access_denied_envelope_includes_subscription_status():
    envelope = error_envelope(AccessDeniedError("Subscribe", subscription_status={"status": "expired"}))
    assert envelope["error"] == "ACCESS_DENIED"
    assert envelope["subscriptionStatus"] == {"status": "expired"}


def test_wrap_boundary_wraps_once():
    typed = RpcError("already typed")
    assert wrap_boundary(typed, RpcError, "ignored") is typed

    wrapped = wrap_boundary(ConnectionResetError("peer reset"), RpcError, "Ledger read failed")
    assert isinstance(wrapped, RpcError)
    assert isinstance(wrapped, OperationalError)
    assert wrapped.message == "Ledger read failed"
    assert wrapped.details == "peer reset"


def test_price_unavailable_keeps_last_error():
    cause = TimeoutError("timed out")
    exc = PriceUnavailableError("Failed to fetch token prices after 3 attempts", last_error=cause)
    assert exc.last_error is cause
    assert exc.details == "timed out"
