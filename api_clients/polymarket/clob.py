"""
CLOB API client for Polymarket (public, unauthenticated endpoints).
Handles order books, indicative prices and CLOB market records.
"""

import logging
from typing import Any, Dict, Optional

from api_clients.base import HTTPClientBase, OrderBook, OrderSide
from utils.validation import to_finite_float


logger = logging.getLogger(__name__)


def parse_order_book(token_id: str, data: Dict[str, Any]) -> OrderBook:
    """Build an OrderBook from a /book payload."""
    tick = data.get("tick_size")
    min_size = data.get("min_order_size")
    return OrderBook(
        token_id=str(data.get("asset_id") or token_id),
        bids=list(data.get("bids") or []),
        asks=list(data.get("asks") or []),
        tick_size=str(tick) if tick not in (None, "") else None,
        min_order_size=str(min_size) if min_size not in (None, "") else None,
        neg_risk=bool(data.get("neg_risk", False)),
    )


class CLOBAPIClient(HTTPClientBase):
    """
    CLOB API client for Polymarket.
    Provides read access to order books and prices.
    """

    BASE_URL = "https://clob.polymarket.com"
    SERVICE_NAME = "CLOB"

    async def get_order_book(self, token_id: str) -> OrderBook:
        """Get the order book (with tick size and minimum order size) for a token."""
        data = await self._request("GET", "/book", params={"token_id": token_id})
        if not isinstance(data, dict):
            raise ValueError(f"unexpected order book payload for {token_id}")
        return parse_order_book(token_id, data)

    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        """Indicative price for a token on one side."""
        data = await self._request("GET", "/price", params={"token_id": token_id, "side": side.value})
        if isinstance(data, dict):
            return to_finite_float(data.get("price"))
        return to_finite_float(data)

    async def get_market(self, condition_id: str) -> Optional[Dict[str, Any]]:
        """CLOB market record (carries ``end_date_iso``, ``closed``, ``active``)."""
        data = await self._request("GET", f"/markets/{condition_id}")
        return data if isinstance(data, dict) and data else None
