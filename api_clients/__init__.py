"""
API Clients module for the mirror bot.
Provides the collaborator interfaces and their Polymarket implementations.
"""

from .base import (
    APIError,
    ApprovalClient,
    BalanceAllowance,
    MarketSnapshotProvider,
    OrderBook,
    OrderBookMeta,
    OrderRequest,
    OrderSide,
    OrderType,
    PositionSnapshot,
    SignalSource,
    Trade,
    TraderScore,
    TradingGateway,
)
from .polymarket import PolymarketAPIClient
from .mock import (
    MockApprovalClient,
    MockMarketProvider,
    MockSignalSource,
    MockTradingGateway,
    create_mock_collaborators,
)

__all__ = [
    "APIError",
    "ApprovalClient",
    "BalanceAllowance",
    "MarketSnapshotProvider",
    "OrderBook",
    "OrderBookMeta",
    "OrderRequest",
    "OrderSide",
    "OrderType",
    "PositionSnapshot",
    "SignalSource",
    "Trade",
    "TraderScore",
    "TradingGateway",
    "PolymarketAPIClient",
    "MockApprovalClient",
    "MockMarketProvider",
    "MockSignalSource",
    "MockTradingGateway",
    "create_mock_collaborators",
]
