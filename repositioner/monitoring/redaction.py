"""
Log redaction helpers.

Designed for structlog processors.
"""

from __future__ import annotations

from typing import Any


SENSITIVE_KEY_FRAGMENTS = (
    "api_key",
    "secret",
    "password",
    "authorization",
    "signature",
    "proof",
)

WALLET_KEYS = ("wallet", "wallet_address", "owner")


def _is_sensitive_key(key: str) -> bool:
    k = str(key).lower()
    return any(frag in k for frag in SENSITIVE_KEY_FRAGMENTS)


def shorten_address(value: Any) -> Any:
    """abcd1234... form for base58 addresses; other values pass through."""
    if isinstance(value, str) and len(value) >= 32:
        return value[:8] + "..."
    return value


def redact(obj: Any) -> Any:
    """
    Recursively redact dict keys that look sensitive and shorten wallets.
    """
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if _is_sensitive_key(k):
                out[k] = "***REDACTED***"
            elif str(k).lower() in WALLET_KEYS:
                out[k] = shorten_address(v)
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact(v) for v in obj]
    return obj


def structlog_redaction_processor(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """
    Structlog processor: redact sensitive fields from event_dict.
    """
    return redact(event_dict)
