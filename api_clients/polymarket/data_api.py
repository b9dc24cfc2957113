"""
Data API client for Polymarket.

Provides trade history, open positions and closed positions for monitored
wallets and for the controlled account.

Endpoints:
- GET /trades - Trade history for a user
- GET /positions - Current positions for a user
- GET /v1/closed-positions - Resolved / closed positions for a user
"""

import logging
from typing import Any, Dict, List, Optional

from api_clients.base import HTTPClientBase, PositionSnapshot, SignalSource
from utils.timeparse import TRADE_TIMESTAMP_FIELDS, first_match, to_ms
from utils.validation import to_finite_float, to_non_negative_int


logger = logging.getLogger(__name__)


def _rows(data: Any, *keys: str) -> List[Dict[str, Any]]:
    """Unwrap list payloads that may arrive bare or inside an envelope."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def _number(row: Dict[str, Any], *keys: str, default: float = 0.0) -> float:
    for key in keys:
        value = to_finite_float(row.get(key))
        if value is not None:
            return value
    return default


def parse_position(row: Dict[str, Any]) -> PositionSnapshot:
    """Map a /positions or /closed-positions row to a PositionSnapshot."""
    outcome = None
    for key in ("outcomeIndex", "outcome_index"):
        outcome = to_non_negative_int(row.get(key))
        if outcome is not None:
            break
    return PositionSnapshot(
        condition_id=str(row.get("conditionId") or row.get("condition_id") or row.get("market") or ""),
        outcome_index=outcome,
        size=_number(row, "size", "position"),
        cash_pnl=_number(row, "cashPnl", "cash_pnl"),
        realized_pnl=_number(row, "realizedPnl", "realized_pnl"),
        total_bought=_number(row, "totalBought", "total_bought"),
        timestamp_ms=first_match(row, ("timestamp", "endDate", "time", "createdAt", "created_at"), to_ms),
        asset=row.get("asset"),
        title=row.get("title"),
    )


class DataAPIClient(HTTPClientBase, SignalSource):
    """
    Data API client for Polymarket.

    Base URL: https://data-api.polymarket.com
    """

    BASE_URL = "https://data-api.polymarket.com"
    SERVICE_NAME = "Data"

    # =========================================================================
    # Trades
    # =========================================================================

    async def fetch_trades(
        self,
        wallet: str,
        limit: int = 500,
        offset: int = 0,
        taker_only: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Get raw trade records for a wallet, newest first.

        Args:
            wallet: Proxy wallet address
            limit: Page size
            offset: Pagination offset
            taker_only: Restrict to taker fills

        Returns:
            Raw trade dicts (normalized later by the mirror pipeline)
        """
        params = {
            "user": wallet,
            "limit": limit,
            "offset": offset,
            "takerOnly": "true" if taker_only else "false",
        }
        data = await self._request("GET", "/trades", params=params)
        return _rows(data, "data", "trades")

    # =========================================================================
    # Positions
    # =========================================================================

    async def fetch_positions(
        self, wallet: str, condition_id: Optional[str] = None
    ) -> List[PositionSnapshot]:
        """Get currently open positions, optionally for one market."""
        params = {
            "user": wallet,
            "sizeThreshold": 0,
            "limit": 500,
            "offset": 0,
        }
        if condition_id:
            params["market"] = condition_id
        data = await self._request("GET", "/positions", params=params)
        return [parse_position(row) for row in _rows(data, "data", "positions")]

    async def fetch_closed_positions(
        self,
        wallet: str,
        since_ms: Optional[int] = None,
        page_size: int = 50,
        max_pages: int = 4,
    ) -> List[PositionSnapshot]:
        """
        Get closed positions, newest first.

        When ``since_ms`` is given, further pages are fetched until a position
        older than it shows up (or ``max_pages`` is reached).
        """
        positions: List[PositionSnapshot] = []
        for page in range(max_pages):
            params = {
                "user": wallet,
                "limit": page_size,
                "offset": page * page_size,
                "sortBy": "TIMESTAMP",
                "sortDirection": "DESC",
            }
            data = await self._request("GET", "/v1/closed-positions", params=params)
            rows = [parse_position(row) for row in _rows(data, "data", "positions")]
            positions.extend(rows)
            if since_ms is None or len(rows) < page_size:
                break
            oldest = rows[-1].timestamp_ms
            if oldest is None or oldest < since_ms:
                break
        return positions


def trade_timestamp_ms(raw: Dict[str, Any]) -> Optional[int]:
    """Timestamp of a raw trade record, for pagination stop checks."""
    return first_match(raw, TRADE_TIMESTAMP_FIELDS, to_ms)
