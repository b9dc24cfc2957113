"""
Result types of the mirror decision pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from api_clients.base import OrderType
from utils.money import calculate_available_usdc_micro, format_usdc_micro


class MirrorStatus(Enum):
    """Terminal state of one signal."""
    PLACED = "placed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    FAILED = "failed"


class SkipReason(Enum):
    """Stable machine-readable reason codes for skips and failures."""
    INVALID_TRADE = "invalid-trade"
    TOKEN_UNRESOLVED = "token-unresolved"
    TOKEN_LOOKS_LIKE_CONDITION = "token-looks-like-condition"
    TOKEN_LOOKS_LIKE_ADDRESS = "token-looks-like-address"
    BALANCE_COOLDOWN = "balance-cooldown"
    AUTH_BACKOFF = "auth-backoff"
    MARKET_UNAVAILABLE = "market-unavailable"
    MARKET_CLOSED = "market-closed"
    MARKET_ARCHIVED = "market-archived"
    MARKET_INACTIVE = "market-inactive"
    MARKET_NOT_ACCEPTING = "market-not-accepting"
    CATEGORY_DISALLOWED = "category-disallowed"
    CATEGORY_NOT_ALLOWED = "category-not-allowed"
    MARKET_END_UNKNOWN = "market-end-unknown"
    MARKET_ENDING = "market-ending"
    TTL_CROSSES_END = "ttl-crosses-end"
    PRICE_UNAVAILABLE = "price-unavailable"
    ORDERBOOK_META_UNAVAILABLE = "orderbook-meta-unavailable"
    INVALID_TRADE_NOTIONAL = "invalid-trade-notional"
    NON_POSITIVE_WEIGHT = "non-positive-weight"
    NON_POSITIVE_NOTIONAL = "non-positive-notional"
    DAILY_CAP = "daily-cap"
    NO_POSITION = "no-position"
    SIZE_BELOW_MIN = "size-below-min"
    INVALID_LIMIT_PRICE = "invalid-limit-price"
    IDENTITY_MISMATCH = "identity-mismatch"
    ALLOWANCE_TOO_LOW = "allowance-too-low"
    RESERVED_BY_OPEN_ORDERS = "reserved-by-open-orders"
    INSUFFICIENT_COLLATERAL = "insufficient-collateral"
    PREFLIGHT_ERROR = "preflight-error"
    ORDER_REJECTED = "order-rejected"
    ORDER_ERROR = "order-error"
    TRADING_DISABLED = "trading-disabled"
    DRY_RUN = "dry-run"
    ORDER_PLACED = "order-placed"


@dataclass
class BalanceSnapshot:
    """Collateral position of the controlled account in micro-USDC."""
    owner: str
    balance_micro: int
    allowance_micro: int
    reserved_micro: int = 0

    @property
    def available_micro(self) -> int:
        return calculate_available_usdc_micro(self.balance_micro, self.allowance_micro, self.reserved_micro)

    @property
    def spendable_micro(self) -> int:
        return min(self.balance_micro, self.allowance_micro)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "balance": format_usdc_micro(self.balance_micro),
            "allowance": format_usdc_micro(self.allowance_micro),
            "reserved": format_usdc_micro(self.reserved_micro),
            "available": format_usdc_micro(self.available_micro),
        }


@dataclass
class MirrorResult:
    """Outcome of one decision; persisted verbatim for audit."""

    status: MirrorStatus
    reason: str
    reason_code: SkipReason
    order_id: Optional[str] = None
    notional: Optional[float] = None
    size: Optional[float] = None
    limit_price: Optional[float] = None
    order_type: Optional[OrderType] = None
    token_id: Optional[str] = None
    error_message: Optional[str] = None
    error_status: Optional[int] = None
    error_body: Any = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skipped(cls, code: SkipReason, reason: str, **diagnostics: Any) -> "MirrorResult":
        return cls(status=MirrorStatus.SKIPPED, reason=reason, reason_code=code, diagnostics=diagnostics)

    @property
    def is_terminal_success(self) -> bool:
        return self.status in (MirrorStatus.PLACED, MirrorStatus.DRY_RUN)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status.value,
            "reason": self.reason,
            "reason_code": self.reason_code.value,
        }
        optional = {
            "order_id": self.order_id,
            "notional": self.notional,
            "size": self.size,
            "limit_price": self.limit_price,
            "order_type": self.order_type.value if self.order_type else None,
            "token_id": self.token_id,
            "error_message": self.error_message,
            "error_status": self.error_status,
            "error_body": self.error_body,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.diagnostics:
            data["diagnostics"] = self.diagnostics
        return data
