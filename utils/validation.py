"""
Data Validation Utilities for the mirror bot.

Provides consistent validation for numeric values, addresses, identifiers and
upstream payload fields.
"""

import math
import re
from typing import Any, Optional, Union
from urllib.parse import urlparse
import logging


logger = logging.getLogger(__name__)


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


# =============================================================================
# NUMERIC VALIDATION
# =============================================================================


def to_finite_float(value: Any) -> Optional[float]:
    """Parse a number from an upstream field; None unless finite."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_non_negative_int(value: Any) -> Optional[int]:
    """Parse a non-negative integer (e.g. an outcome index); None when invalid."""
    number = to_finite_float(value)
    if number is None or number < 0 or number != int(number):
        return None
    return int(number)


def validate_percentage(
    value: Optional[float], name: str = "percentage"
) -> tuple[bool, str]:
    """
    Validate a percentage value (0 to 1).

    Args:
        value: The percentage value to validate
        name: Name of the parameter for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None:
        return False, f"{name} is required"

    if not isinstance(value, (int, float)):
        return False, f"{name} must be a number"

    if value < 0:
        return False, f"{name} cannot be negative"

    if value > 1.0:
        return False, f"{name} cannot exceed 1.0 (100%)"

    return True, ""


def validate_positive_number(
    value: Union[float, int, None], name: str, allow_zero: bool = False
) -> tuple[bool, str]:
    """Validate that a value is a positive (or non-negative) finite number."""
    if value is None:
        return False, f"{name} is required"

    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return False, f"{name} must be a finite number"

    if allow_zero:
        if value < 0:
            return False, f"{name} cannot be negative"
    elif value <= 0:
        return False, f"{name} must be greater than zero"

    return True, ""


# =============================================================================
# ADDRESS VALIDATION
# =============================================================================


def is_address(value: Optional[str]) -> bool:
    """True for a 0x-prefixed 20-byte hex address."""
    return bool(value) and bool(ADDRESS_RE.match(value.strip()))


def is_bytes32_hex(value: Optional[str]) -> bool:
    """True for a 0x-prefixed 32-byte hex string (condition ids, private keys)."""
    return bool(value) and bool(BYTES32_RE.match(value.strip()))


def validate_eth_address(
    address: Optional[str], name: str = "address"
) -> tuple[bool, str]:
    """
    Validate an Ethereum-style address.

    Args:
        address: The address to validate
        name: Name of the parameter for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not address:
        return False, f"{name} is required"

    address = address.strip()

    if len(address) != 42:
        return (
            False,
            f"Invalid {name} length (expected 42 characters, got {len(address)})",
        )

    if not address.startswith("0x"):
        return False, f"{name} must start with 0x"

    if not ADDRESS_RE.match(address):
        return False, f"{name} contains non-hex characters"

    return True, ""


def validate_private_key(key: Optional[str], name: str = "PRIVATE_KEY") -> tuple[bool, str]:
    """Validate a 0x-prefixed 32-byte hex private key without echoing it."""
    if not key:
        return False, f"{name} is required"
    if not is_bytes32_hex(key):
        return False, f"{name} must be 0x followed by 64 hex characters"
    return True, ""


def validate_http_url(url: Optional[str], name: str = "url") -> tuple[bool, str]:
    """Validate an http(s) URL."""
    if not url:
        return False, f"{name} is required"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False, f"{name} must be an http(s) URL"
    return True, ""


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison; False when either is missing."""
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()
