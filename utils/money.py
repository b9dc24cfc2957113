"""
Fixed-Point Money Utilities for the mirror bot.

USDC amounts are carried as integer micro-units (6 decimals) wherever balances,
allowances and reserved collateral are compared, so no float drift leaks into
the preflight decisions.
"""

import re
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Union


USDC_DECIMALS = 6
USDC_SCALE = 10 ** USDC_DECIMALS

_DECIMAL_RE = re.compile(r"^(-?)(\d+)(?:\.(\d+))?$")

Numeric = Union[str, int, float, Decimal]


def _to_plain_string(value: Numeric) -> str:
    """Render a number without exponent notation."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return format(Decimal(repr(value)), "f")
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value).strip()


def parse_decimal_to_fixed(
    value: Optional[Numeric], decimals: int = USDC_DECIMALS, round_up: bool = False
) -> int:
    """
    Convert a decimal string (or number) into a fixed-point integer.

    Digits beyond ``decimals`` are truncated, or rounded away from zero when
    ``round_up`` is set and any dropped digit is non-zero. Unparseable input
    yields 0.

    Args:
        value: Decimal string, int, float or Decimal
        decimals: Number of fractional digits kept
        round_up: Round the dropped remainder up instead of truncating

    Returns:
        Integer in units of 10**-decimals
    """
    if value is None:
        return 0
    raw = _to_plain_string(value)
    match = _DECIMAL_RE.match(raw)
    if not match:
        return 0

    sign, whole, frac = match.group(1), match.group(2), match.group(3) or ""
    kept = frac[:decimals].ljust(decimals, "0")
    combined = int(whole) * 10 ** decimals + int(kept or "0")

    if round_up and len(frac) > decimals and frac[decimals:].strip("0"):
        combined += 1

    return -combined if sign == "-" else combined


def format_fixed(value: int, decimals: int = USDC_DECIMALS) -> str:
    """Format a fixed-point integer as a decimal string without trailing zeros."""
    negative = value < 0
    whole, frac = divmod(abs(value), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    result = f"{whole}.{frac_str}" if frac_str else str(whole)
    return f"-{result}" if negative else result


def parse_usdc_to_micro(value: Optional[Numeric], round_up: bool = False) -> int:
    """Parse a USDC amount into micro-units."""
    return parse_decimal_to_fixed(value, USDC_DECIMALS, round_up)


def format_usdc_micro(value: int) -> str:
    """Format micro-units as a USDC decimal string."""
    return format_fixed(value, USDC_DECIMALS)


def compute_reserved_usdc_micro(open_orders: Iterable[Dict[str, Any]]) -> int:
    """
    Sum the collateral locked by our own open BUY orders.

    Remaining size is ``original_size - size_matched``; each order reserves
    ``price * remaining``. Inputs are rounded up so reserved collateral is never
    understated.
    """
    reserved = 0
    for order in open_orders:
        if not order or str(order.get("side", "")).upper() != "BUY":
            continue
        price = parse_usdc_to_micro(order.get("price"), round_up=True)
        original = parse_usdc_to_micro(order.get("original_size"), round_up=True)
        matched = parse_usdc_to_micro(order.get("size_matched"), round_up=True)
        remaining = original - matched if original > matched else 0
        if remaining <= 0 or price <= 0:
            continue
        reserved += (price * remaining) // USDC_SCALE
    return reserved


def calculate_available_usdc_micro(balance: int, allowance: int, reserved: int) -> int:
    """Available = min(balance, allowance) - reserved, floored at zero."""
    available = min(balance, allowance) - reserved
    return available if available > 0 else 0
