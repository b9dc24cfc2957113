"""
Base classes and interfaces for the exchange collaborators.
Defines the shared domain types and the contract every client must implement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
from enum import Enum
import asyncio
import logging

import aiohttp

from utils.retry import RetryPolicy, NO_RETRY
from utils.validation import to_finite_float


logger = logging.getLogger(__name__)


class OrderSide(Enum):
    """Order side enumeration."""
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def from_raw(cls, value: Any) -> Optional["OrderSide"]:
        """Parse an upstream side string; None unless exactly BUY or SELL."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class OrderType(Enum):
    """Order lifetime policy."""
    GTD = "GTD"
    GTC = "GTC"


class APIError(Exception):
    """HTTP error returned by an upstream API."""

    def __init__(self, service: str, status: int, body: Any = None, endpoint: str = ""):
        self.service = service
        self.status = status
        self.body = body
        self.endpoint = endpoint
        super().__init__(f"{service} API error: {status} - {body}")


# =============================================================================
# DOMAIN TYPES
# =============================================================================


@dataclass(frozen=True)
class Trade:
    """One observed fill on a monitored wallet (immutable once normalized)."""
    proxy_wallet: str
    transaction_hash: str
    condition_id: str
    outcome_index: int
    side: OrderSide
    size: float
    price: float
    timestamp_ms: int
    size_raw: str = ""
    price_raw: str = ""

    @property
    def notional(self) -> float:
        return self.price * self.size

    def snippet(self) -> Dict[str, Any]:
        """Compact payload for log lines."""
        return {
            "proxy_wallet": self.proxy_wallet,
            "transaction_hash": self.transaction_hash,
            "condition_id": self.condition_id,
            "outcome_index": self.outcome_index,
            "side": self.side.value,
            "size": self.size,
            "price": self.price,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass
class OrderBook:
    """Order book snapshot for one outcome token."""
    token_id: str
    bids: List[Dict[str, Any]] = field(default_factory=list)
    asks: List[Dict[str, Any]] = field(default_factory=list)
    tick_size: Optional[str] = None
    min_order_size: Optional[str] = None
    neg_risk: bool = False

    def _prices(self, levels: List[Dict[str, Any]]) -> List[float]:
        prices = []
        for level in levels:
            price = to_finite_float(level.get("price")) if isinstance(level, dict) else None
            if price is not None and price > 0:
                prices.append(price)
        return prices

    def get_best_bid(self) -> Optional[float]:
        """Get best (highest) bid price."""
        prices = self._prices(self.bids)
        return max(prices) if prices else None

    def get_best_ask(self) -> Optional[float]:
        """Get best (lowest) ask price."""
        prices = self._prices(self.asks)
        return min(prices) if prices else None

    def executable_price(self, side: OrderSide) -> Optional[float]:
        """Price a mirror order on ``side`` would take: best ask to buy, best bid to sell."""
        return self.get_best_ask() if side == OrderSide.BUY else self.get_best_bid()


@dataclass
class OrderBookMeta:
    """Instrument granularity, cached with a short TTL."""
    token_id: str
    tick_size: str
    min_order_size: str
    neg_risk: bool
    updated_at_ms: int


@dataclass
class PositionSnapshot:
    """Open or closed position as reported by the data API."""
    condition_id: str
    outcome_index: Optional[int]
    size: float = 0.0
    cash_pnl: float = 0.0
    realized_pnl: float = 0.0
    total_bought: float = 0.0
    timestamp_ms: Optional[int] = None
    asset: Optional[str] = None
    title: Optional[str] = None


@dataclass
class TraderScore:
    """Performance score of one monitored wallet over the lookback window."""
    wallet: str
    score: float
    realized_pnl_sum: float = 0.0
    total_bought_sum: float = 0.0
    roi: float = 0.0
    sample: int = 0
    open_pnl_sum: float = 0.0
    eligible: bool = False
    timestamp_ms: int = 0
    display_name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrderRequest:
    """A priced, sized order ready for the trading gateway."""
    token_id: str
    side: OrderSide
    price: float
    size: float
    order_type: OrderType
    tick_size: str
    neg_risk: bool = False
    expiration_s: int = 0


@dataclass
class BalanceAllowance:
    """Exchange-side collateral balance and allowance in micro-USDC."""
    balance_micro: int
    allowance_micro: int


# =============================================================================
# COLLABORATOR INTERFACES
# =============================================================================


class SignalSource(ABC):
    """Trade history and positions of monitored wallets."""

    @abstractmethod
    async def fetch_trades(self, wallet: str, limit: int = 500, offset: int = 0) -> List[Dict[str, Any]]:
        """Raw trade records for ``wallet``, newest first."""
        pass

    @abstractmethod
    async def fetch_closed_positions(
        self, wallet: str, since_ms: Optional[int] = None
    ) -> List[PositionSnapshot]:
        """Closed positions, newest first; ``since_ms`` bounds pagination."""
        pass

    @abstractmethod
    async def fetch_positions(
        self, wallet: str, condition_id: Optional[str] = None
    ) -> List[PositionSnapshot]:
        pass


class MarketSnapshotProvider(ABC):
    """Market metadata, order books and indicative prices."""

    @abstractmethod
    async def get_market_metadata(self, condition_id: str) -> Optional[Dict[str, Any]]:
        """Gamma market record for a condition id, or None when unknown."""
        pass

    @abstractmethod
    async def get_clob_market(self, condition_id: str) -> Optional[Dict[str, Any]]:
        """CLOB market record, a secondary source for lifecycle fields."""
        pass

    @abstractmethod
    async def get_order_book(self, token_id: str) -> OrderBook:
        pass

    @abstractmethod
    async def get_indicative_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        pass


class TradingGateway(ABC):
    """Authenticated order placement for the controlled account."""

    @property
    @abstractmethod
    def signer_address(self) -> str:
        pass

    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> Dict[str, Any]:
        """Submit an order; returns the raw response or raises on error."""
        pass

    @abstractmethod
    async def get_balance_allowance(self) -> BalanceAllowance:
        pass

    @abstractmethod
    async def get_open_orders(self) -> List[Dict[str, Any]]:
        pass


class ApprovalClient(ABC):
    """On-chain collateral approval for the exchange spender."""

    @property
    @abstractmethod
    def signer_address(self) -> Optional[str]:
        pass

    @abstractmethod
    async def read_allowance(self, owner: str) -> int:
        """Current on-chain allowance of ``owner`` in micro-USDC."""
        pass

    @abstractmethod
    async def approve(self, amount_micro: Optional[int]) -> str:
        """Submit an approval; ``None`` approves the maximum. Returns the tx hash."""
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        pass


# =============================================================================
# HTTP CLIENT BASE
# =============================================================================


class HTTPClientBase:
    """
    Shared aiohttp plumbing for the Polymarket REST clients.

    Each request carries a total timeout and runs under the client's retry
    policy; HTTP errors surface as ``APIError``.
    """

    BASE_URL = ""
    SERVICE_NAME = "HTTP"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_s: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.retry_policy = retry_policy or RetryPolicy()
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the aiohttp session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request_once(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = await self._get_session()
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        async with session.request(method, url, params=params, json=data, timeout=self.timeout) as response:
            if response.status >= 400:
                error_text = await response.text()
                raise APIError(self.SERVICE_NAME, response.status, error_text[:500], endpoint)
            return await response.json(content_type=None)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Any:
        """Make an HTTP request under the retry policy."""
        policy = self.retry_policy if retry else NO_RETRY
        return await policy.run(self._request_once, method, endpoint, params=params, data=data)


async def close_all(*clients: Any):
    """Close several clients, ignoring ones without a ``close`` coroutine."""
    closers = [c.close() for c in clients if c is not None and asyncio.iscoroutinefunction(getattr(c, "close", None))]
    if closers:
        await asyncio.gather(*closers, return_exceptions=True)
