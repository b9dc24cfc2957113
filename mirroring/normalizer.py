"""
Trade normalizer.

Validates a raw data-API trade record and canonicalizes it into a Trade.
Invalid records are rejected with the exact list of missing or invalid fields;
when possible a poison key is built so the record is not re-examined forever.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from api_clients.base import OrderSide, Trade
from utils.timeparse import TRADE_TIMESTAMP_FIELDS, first_match, first_present, to_ms
from utils.validation import to_finite_float, to_non_negative_int


WALLET_FIELDS: Tuple[str, ...] = ("proxyWallet", "proxy_wallet")
TX_FIELDS: Tuple[str, ...] = ("transactionHash", "transaction_hash", "txHash")
CONDITION_FIELDS: Tuple[str, ...] = ("conditionId", "condition_id", "market", "marketId")
OUTCOME_FIELDS: Tuple[str, ...] = ("outcomeIndex", "outcome_index", "outcome")
SIDE_FIELDS: Tuple[str, ...] = ("side", "takerSide", "taker_side")
SIZE_FIELDS: Tuple[str, ...] = ("size", "quantity", "amount", "shares")
PRICE_FIELDS: Tuple[str, ...] = ("price", "avgPrice", "rate")

# Order in which missing fields are reported
REQUIRED_FIELDS: Tuple[str, ...] = (
    "proxyWallet",
    "transactionHash",
    "conditionId",
    "outcomeIndex",
    "side",
    "size",
    "price",
    "timestamp",
)


@dataclass
class NormalizedSignal:
    """A normalized trade, or the reasons it could not be normalized."""
    trade: Optional[Trade]
    missing: List[str] = field(default_factory=list)
    key: Optional[str] = None
    poison_key: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def ok(self) -> bool:
        return self.trade is not None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _raw_number(record: Dict[str, Any], fields: Tuple[str, ...]) -> Tuple[Optional[float], str]:
    """First field that parses as a finite number, with its upstream text."""
    for name in fields:
        value = record.get(name)
        if value is None or value == "":
            continue
        parsed = to_finite_float(value)
        if parsed is not None:
            return parsed, str(value).strip()
    return None, ""


def _positive_size(value: Any) -> bool:
    size = to_finite_float(value)
    return size is not None and size > 0


def _probability(value: Any) -> bool:
    price = to_finite_float(value)
    return price is not None and 0 <= price <= 1


def build_trade_key(trade: Trade) -> str:
    """Idempotency key of a valid trade."""
    return ":".join(
        [
            trade.proxy_wallet,
            trade.transaction_hash,
            trade.condition_id,
            str(trade.outcome_index),
            trade.side.value,
            trade.size_raw,
            trade.price_raw,
            str(trade.timestamp_ms),
        ]
    )


def build_poison_key(wallet: Optional[str], tx: Optional[str], timestamp_ms: Optional[int]) -> Optional[str]:
    """Degraded key for an unusable record; None when tx or timestamp is unknown."""
    if not tx or timestamp_ms is None:
        return None
    return f"invalid:{wallet or 'unknown'}:{tx}:{timestamp_ms}"


def normalize_trade(raw: Dict[str, Any], wallet: Optional[str] = None) -> NormalizedSignal:
    """
    Normalize one raw trade record for the monitored ``wallet``.

    Args:
        raw: Upstream trade record (any of the known field spellings)
        wallet: Monitored wallet, used when the record carries none

    Returns:
        NormalizedSignal with a Trade and key, or the missing field list
    """
    record = raw if isinstance(raw, dict) else {}

    proxy_wallet = _text(first_present(record, WALLET_FIELDS)) or _text(wallet)
    tx = _text(first_present(record, TX_FIELDS))
    condition_id = _text(first_present(record, CONDITION_FIELDS))
    outcome_index = first_match(record, OUTCOME_FIELDS, to_non_negative_int)
    side = first_match(record, SIDE_FIELDS, OrderSide.from_raw)
    size, size_raw = _raw_number(record, SIZE_FIELDS)
    price, price_raw = _raw_number(record, PRICE_FIELDS)
    if size is not None and size <= 0:
        size = None
    if price is not None and not 0 <= price <= 1:
        price = None
    timestamp_ms = first_match(record, TRADE_TIMESTAMP_FIELDS, to_ms)

    values = (proxy_wallet, tx, condition_id, outcome_index, side, size, price, timestamp_ms)
    missing = [name for name, value in zip(REQUIRED_FIELDS, values) if value is None]

    if missing:
        return NormalizedSignal(
            trade=None,
            missing=missing,
            poison_key=build_poison_key(proxy_wallet, tx, timestamp_ms),
            raw=record,
        )

    trade = Trade(
        proxy_wallet=proxy_wallet,
        transaction_hash=tx,
        condition_id=condition_id,
        outcome_index=outcome_index,
        side=side,
        size=size,
        price=price,
        timestamp_ms=timestamp_ms,
        size_raw=size_raw,
        price_raw=price_raw,
    )
    return NormalizedSignal(trade=trade, key=build_trade_key(trade), raw=record)


def validate_trade(trade: Optional[Trade]) -> List[str]:
    """Re-check an already built Trade; returns the invalid field names."""
    if trade is None:
        return list(REQUIRED_FIELDS)
    checks = (
        bool(trade.proxy_wallet),
        bool(trade.transaction_hash),
        bool(trade.condition_id),
        isinstance(trade.outcome_index, int) and trade.outcome_index >= 0,
        isinstance(trade.side, OrderSide),
        _positive_size(trade.size),
        _probability(trade.price),
        isinstance(trade.timestamp_ms, int),
    )
    return [name for name, ok in zip(REQUIRED_FIELDS, checks) if not ok]
