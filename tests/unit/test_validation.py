"""
Unit tests for address and number validation.
"""
from decimal import Decimal

import pytest

from conftest import POOL, WALLET
from repositioner.exceptions import ErrorKind, ValidationError
from repositioner.utils.validation import (
    is_valid_address,
    parse_positive_decimal,
    to_decimal,
    validate_address,
)


def test_valid_addresses_pass_unchanged():
    assert validate_address(WALLET) == WALLET
    assert validate_address(POOL, "poolAddress") == POOL


@pytest.mark.parametrize("bad", [
    None,
    "",
    123,
    "short",
    "0OIl" * 10,            # characters outside the base58 alphabet
    "1" * 45,               # too long
])
def test_malformed_addresses_are_validation_errors(bad):
    with pytest.raises(ValidationError) as exc_info:
        validate_address(bad, "walletAddress")
    assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR


def test_error_names_the_field():
    with pytest.raises(ValidationError) as exc_info:
        validate_address("not-an-address", "positionAddress")
    assert "positionAddress" in exc_info.value.message


def test_is_valid_address():
    assert is_valid_address(WALLET)
    assert not is_valid_address("nope")


def test_to_decimal_is_lenient():
    assert to_decimal("1.5") == Decimal("1.5")
    assert to_decimal(2) == Decimal("2")
    assert to_decimal(None) == Decimal("0")
    assert to_decimal("", default=None) is None
    assert to_decimal("abc", default=None) is None


@pytest.mark.parametrize("value", [0, -1, "0", "abc", None, float("nan"), "Infinity"])
def test_parse_positive_decimal_rejects(value):
    with pytest.raises(ValidationError):
        parse_positive_decimal(value, "amount")


def test_parse_positive_decimal_accepts():
    assert parse_positive_decimal("2.5", "amount") == Decimal("2.5")
