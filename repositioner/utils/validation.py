"""
Input validation helpers.

Addresses are checked locally before any network call so malformed input
fails as VALIDATION_ERROR instead of surfacing later as a transport error.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from solders.pubkey import Pubkey

from repositioner.exceptions import ValidationError

BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")
MIN_ADDRESS_LENGTH = 32
MAX_ADDRESS_LENGTH = 44


def validate_address(address: Any, field_name: str = "address") -> str:
    """
    Validate a base58 ledger address and return it unchanged.

    Raises:
        ValidationError: wrong type, length, alphabet, or not a 32-byte key
    """
    if not isinstance(address, str) or not address:
        raise ValidationError(f"Missing {field_name}", f"{field_name} must be a non-empty string")

    if not MIN_ADDRESS_LENGTH <= len(address) <= MAX_ADDRESS_LENGTH:
        raise ValidationError(
            f"Invalid {field_name} length: {len(address)}",
            "Must be between 32-44 characters.",
        )

    if not BASE58_RE.match(address):
        raise ValidationError(f"Invalid {field_name} format", "Must be a valid base58 string.")

    try:
        Pubkey.from_string(address)
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}", str(e))

    return address


def is_valid_address(address: Any) -> bool:
    try:
        validate_address(address)
    except ValidationError:
        return False
    return True


def to_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """Lenient Decimal conversion for numbers coming off the wire or the DB."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def parse_positive_decimal(value: Any, field_name: str) -> Decimal:
    """Strictly positive Decimal or ValidationError."""
    amount = to_decimal(value, default=None)
    if amount is None or not amount.is_finite():
        raise ValidationError(f"Invalid {field_name}", f"{field_name} must be a number")
    if amount <= 0:
        raise ValidationError(f"Invalid {field_name}", f"{field_name} must be greater than 0")
    return amount
