"""
Price and size rounding onto instrument granularity.
"""

import math

from api_clients.base import OrderSide
from utils.validation import to_finite_float


TICK_TOLERANCE = 1e-9


def count_decimals(value: str) -> int:
    """Decimal places of a decimal string ("0.01" -> 2, "5" -> 0)."""
    text = str(value).strip()
    if "." not in text:
        return 0
    return len(text.split(".", 1)[1])


def round_size(shares: float, precision: int) -> float:
    """Round shares toward zero at ``precision`` decimal places."""
    if precision <= 0:
        return float(math.floor(shares))
    factor = 10 ** precision
    return math.floor(shares * factor) / factor


def round_price_to_tick(price: float, tick_size: str, side: OrderSide) -> float:
    """
    Round a limit price onto the tick grid in the direction that keeps the
    order marketable: up for BUY, down for SELL. The result is clamped into
    [tick, 1 - tick].
    """
    tick = to_finite_float(tick_size)
    if tick is None or tick <= 0:
        return price
    ticks = price / tick
    if side == OrderSide.BUY:
        rounded = math.ceil(ticks - TICK_TOLERANCE)
    else:
        rounded = math.floor(ticks + TICK_TOLERANCE)
    decimals = count_decimals(tick_size)
    value = round(rounded * tick, decimals)
    upper = round(1 - tick, decimals)
    return min(max(value, tick), upper)


def limit_price_with_slippage(exec_price: float, slippage_pct: float, side: OrderSide) -> float:
    if side == OrderSide.BUY:
        return exec_price * (1 + slippage_pct)
    return exec_price * (1 - slippage_pct)


def compute_feasible_ttl_seconds(order_ttl_s: int, end_ms: int, now_ms: int, expiration_safety_s: int) -> int:
    """Order lifetime that still ends before the market does."""
    remaining_s = math.floor((end_ms - now_ms) / 1000)
    return min(order_ttl_s, remaining_s - expiration_safety_s)


def compute_gtd_expiration_s(now_s: int, ttl_s: int, expiration_safety_s: int) -> int:
    """GTD expiration timestamp; the exchange requires a safety lead."""
    return now_s + expiration_safety_s + ttl_s
