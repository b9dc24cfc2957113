"""
Polymarket API client implementation.
Combines the Data, Gamma and CLOB read APIs behind the collaborator interfaces
the mirror pipeline consumes.
"""

import logging
from typing import Any, Dict, List, Optional

from .data_api import DataAPIClient
from .gamma import GammaAPIClient, GeoblockResult, parse_clob_token_ids
from .clob import CLOBAPIClient
from ..base import (
    MarketSnapshotProvider,
    OrderBook,
    OrderSide,
    PositionSnapshot,
    SignalSource,
    close_all,
)
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PolymarketAPIClient(SignalSource, MarketSnapshotProvider):
    """
    Polymarket API client.
    Data API for signals and positions, Gamma for market metadata, CLOB for books.
    """

    def __init__(
        self,
        clob_host: Optional[str] = None,
        timeout_s: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize Polymarket API client."""
        policy = retry_policy or RetryPolicy()
        self.data = DataAPIClient(timeout_s=timeout_s, retry_policy=policy)
        self.gamma = GammaAPIClient(timeout_s=timeout_s, retry_policy=policy)
        self.clob = CLOBAPIClient(base_url=clob_host, timeout_s=timeout_s, retry_policy=policy)

    @property
    def platform_name(self) -> str:
        """Get platform name."""
        return "polymarket"

    async def close(self):
        """Close all underlying sessions."""
        await close_all(self.data, self.gamma, self.clob)

    # Signals

    async def fetch_trades(self, wallet: str, limit: int = 500, offset: int = 0) -> List[Dict[str, Any]]:
        return await self.data.fetch_trades(wallet, limit=limit, offset=offset)

    async def fetch_closed_positions(self, wallet: str, since_ms: Optional[int] = None) -> List[PositionSnapshot]:
        return await self.data.fetch_closed_positions(wallet, since_ms=since_ms)

    async def fetch_positions(self, wallet: str, condition_id: Optional[str] = None) -> List[PositionSnapshot]:
        return await self.data.fetch_positions(wallet, condition_id)

    # Market snapshots

    async def get_market_metadata(self, condition_id: str) -> Optional[Dict[str, Any]]:
        return await self.gamma.get_market_by_condition(condition_id)

    async def get_clob_market(self, condition_id: str) -> Optional[Dict[str, Any]]:
        return await self.clob.get_market(condition_id)

    async def get_order_book(self, token_id: str) -> OrderBook:
        return await self.clob.get_order_book(token_id)

    async def get_indicative_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        return await self.clob.get_price(token_id, side)

    async def check_geoblock(self) -> GeoblockResult:
        return await self.gamma.check_geoblock()


__all__ = [
    "PolymarketAPIClient",
    "DataAPIClient",
    "GammaAPIClient",
    "CLOBAPIClient",
    "GeoblockResult",
    "parse_clob_token_ids",
]
