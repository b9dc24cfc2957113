"""
Time helpers and ordered field extractors.

Upstream payloads name the same value many different ways (``endDate``,
``end_date_iso``, ``closeTime``...). Extraction is driven by ordered tuples of
candidate field names so a new variant is a one-line addition.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple


# Numbers below this are unix seconds, at or above it unix milliseconds.
SECONDS_CUTOFF = 1e12

MARKET_END_FIELDS: Tuple[str, ...] = (
    "end_date_iso",
    "endDateIso",
    "end_date",
    "endDate",
    "closeTime",
    "close_time",
    "closedTime",
    "closed_time",
    "close_timestamp",
    "closeTimestamp",
    "resolution_time",
    "resolutionTime",
    "resolve_time",
    "resolveTime",
    "end_time",
    "endTime",
)

TRADE_TIMESTAMP_FIELDS: Tuple[str, ...] = ("timestamp", "time", "createdAt", "created_at")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utc_day_key(timestamp_ms: Optional[int] = None) -> str:
    """UTC calendar day (YYYY-MM-DD) used to bucket the daily notional cap."""
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def _parse_iso(raw: str) -> Optional[int]:
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def to_ms(value: Any) -> Optional[int]:
    """
    Convert a timestamp in any upstream format to epoch milliseconds.

    Accepts datetimes, numbers and strings. Numbers (or numeric strings) below
    1e12 are treated as seconds. Other strings are parsed as ISO-8601.

    Returns:
        Milliseconds, or None when the value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return int(value * 1000) if value < SECONDS_CUTOFF else int(value)

    raw = str(value).strip()
    if not raw:
        return None
    try:
        numeric = float(raw)
    except ValueError:
        return _parse_iso(raw)
    if not math.isfinite(numeric):
        return None
    return int(numeric * 1000) if numeric < SECONDS_CUTOFF else int(numeric)


def first_match(
    record: Optional[Mapping[str, Any]],
    fields: Sequence[str],
    parser: Callable[[Any], Optional[Any]] = lambda v: v,
) -> Optional[Any]:
    """Return the first candidate field whose value parses to something non-None."""
    if not record:
        return None
    for name in fields:
        candidate = record.get(name)
        if candidate is None or candidate == "":
            continue
        parsed = parser(candidate)
        if parsed is not None:
            return parsed
    return None


def first_present(record: Optional[Mapping[str, Any]], fields: Sequence[str]) -> Any:
    """Return the raw value of the first candidate field that is present."""
    return first_match(record, fields)


def extract_market_end_ms(*sources: Optional[Mapping[str, Any]]) -> Optional[int]:
    """
    Find a market end time across several metadata sources.

    Sources are tried in priority order; within each source the first parseable
    field of ``MARKET_END_FIELDS`` wins.
    """
    for source in sources:
        end_ms = first_match(source, MARKET_END_FIELDS, to_ms)
        if end_ms is not None:
            return end_ms
    return None
