"""
Market lifecycle and end-time gate for BUY mirrors.

A market must be open, active and accepting orders, pass the category filter,
have a known end time, and leave enough time for a GTD order to live before
it ends.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from utils.timeparse import extract_market_end_ms

from .market_filter import evaluate_market_category
from .models import SkipReason
from .pricing import compute_feasible_ttl_seconds


@dataclass
class MarketFilterConfig:
    """Category allow / deny lists (normalized at evaluation time)."""
    allowed_categories: List[str] = field(
        default_factory=lambda: ["crypto", "finance", "politics", "tech", "other"]
    )
    disallowed_categories: List[str] = field(default_factory=lambda: ["sports"])


@dataclass
class MarketCheck:
    """Result of the market gate."""
    ok: bool
    code: Optional[SkipReason] = None
    reason: str = ""
    end_ms: Optional[int] = None
    ttl_s: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _flag(value: Any) -> Optional[bool]:
    """Upstream booleans arrive as bools or "true"/"false" strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
    return None


def _any_flag(sources: Tuple[Optional[Dict[str, Any]], ...], names: Tuple[str, ...]) -> List[bool]:
    found = []
    for source in sources:
        if not source:
            continue
        for name in names:
            flag = _flag(source.get(name))
            if flag is not None:
                found.append(flag)
    return found


class MarketGuard:
    """Lifecycle, category and end-time checks for one market."""

    def __init__(
        self,
        filters: Optional[MarketFilterConfig] = None,
        order_ttl_s: int = 60,
        expiration_safety_s: int = 60,
        market_end_safety_s: int = 300,
    ):
        self.filters = filters or MarketFilterConfig()
        self.order_ttl_s = order_ttl_s
        self.expiration_safety_s = expiration_safety_s
        self.market_end_safety_s = market_end_safety_s

    def check(
        self,
        market: Optional[Dict[str, Any]],
        clob_market: Optional[Dict[str, Any]],
        now_ms: int,
    ) -> MarketCheck:
        if not market and not clob_market:
            return MarketCheck(False, SkipReason.MARKET_UNAVAILABLE, "market metadata unavailable")

        sources = (market, clob_market)
        if any(_any_flag(sources, ("closed",))):
            return MarketCheck(False, SkipReason.MARKET_CLOSED, "market closed")
        if any(_any_flag(sources, ("archived",))):
            return MarketCheck(False, SkipReason.MARKET_ARCHIVED, "market archived")
        if False in _any_flag(sources, ("active",)):
            return MarketCheck(False, SkipReason.MARKET_INACTIVE, "market inactive")
        if False in _any_flag(sources, ("acceptingOrders", "accepting_orders")):
            return MarketCheck(False, SkipReason.MARKET_NOT_ACCEPTING, "market not accepting orders")

        decision = evaluate_market_category(
            market or clob_market,
            self.filters.allowed_categories,
            self.filters.disallowed_categories,
        )
        if not decision.allowed:
            code = SkipReason(decision.reason_code)
            return MarketCheck(False, code, decision.reason or code.value, details=decision.to_dict())

        end_ms = extract_market_end_ms(market, clob_market)
        if end_ms is None:
            return MarketCheck(False, SkipReason.MARKET_END_UNKNOWN, "market end time unknown")

        details = {"end_ms": end_ms, "now_ms": now_ms}
        if now_ms >= end_ms - self.market_end_safety_s * 1000:
            return MarketCheck(False, SkipReason.MARKET_ENDING, "market expired or too close to end", end_ms, details=details)

        ttl_s = compute_feasible_ttl_seconds(self.order_ttl_s, end_ms, now_ms, self.expiration_safety_s)
        if ttl_s <= 1:
            return MarketCheck(
                False, SkipReason.TTL_CROSSES_END, "order TTL crosses market end", end_ms, ttl_s, details
            )
        return MarketCheck(True, end_ms=end_ms, ttl_s=ttl_s, details=details)
