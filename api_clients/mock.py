"""
In-memory collaborators for dry runs and tests.

Implements every collaborator interface with plain dictionaries so the
mirror pipeline, scoring and the orchestrator run without API keys, HTTP
requests or wallets. Failures can be scripted per call.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from .base import (
    ApprovalClient,
    BalanceAllowance,
    MarketSnapshotProvider,
    OrderBook,
    OrderRequest,
    OrderSide,
    PositionSnapshot,
    SignalSource,
    TradingGateway,
)

logger = logging.getLogger(__name__)


Scripted = Union[Dict[str, Any], Exception]


class MockSignalSource(SignalSource):
    """Trades and positions keyed by wallet."""

    def __init__(self):
        self.trades: Dict[str, List[Dict[str, Any]]] = {}
        self.closed_positions: Dict[str, List[PositionSnapshot]] = {}
        self.positions: Dict[str, List[PositionSnapshot]] = {}
        self.errors: Dict[str, Exception] = {}
        self.trade_calls: List[Tuple[str, int, int]] = []

    def add_trade(self, wallet: str, raw: Dict[str, Any]):
        """Add a raw trade; stored newest first like the data API."""
        rows = self.trades.setdefault(wallet, [])
        rows.append(raw)
        rows.sort(key=lambda r: float(r.get("timestamp") or 0), reverse=True)

    async def fetch_trades(self, wallet: str, limit: int = 500, offset: int = 0) -> List[Dict[str, Any]]:
        self.trade_calls.append((wallet, limit, offset))
        if wallet in self.errors:
            raise self.errors[wallet]
        return list(self.trades.get(wallet, []))[offset:offset + limit]

    async def fetch_closed_positions(self, wallet: str, since_ms: Optional[int] = None) -> List[PositionSnapshot]:
        if wallet in self.errors:
            raise self.errors[wallet]
        return list(self.closed_positions.get(wallet, []))

    async def fetch_positions(self, wallet: str, condition_id: Optional[str] = None) -> List[PositionSnapshot]:
        if wallet in self.errors:
            raise self.errors[wallet]
        rows = self.positions.get(wallet, [])
        if condition_id:
            rows = [p for p in rows if p.condition_id == condition_id]
        return list(rows)


class MockMarketProvider(MarketSnapshotProvider):
    """Market metadata, books and prices keyed by id."""

    def __init__(self):
        self.markets: Dict[str, Dict[str, Any]] = {}
        self.clob_markets: Dict[str, Dict[str, Any]] = {}
        self.books: Dict[str, OrderBook] = {}
        self.prices: Dict[Tuple[str, OrderSide], float] = {}
        self.errors: Dict[str, Exception] = {}
        self.book_calls: List[str] = []

    def _raise_for(self, key: str):
        if key in self.errors:
            raise self.errors[key]

    async def get_market_metadata(self, condition_id: str) -> Optional[Dict[str, Any]]:
        self._raise_for(condition_id)
        return self.markets.get(condition_id)

    async def get_clob_market(self, condition_id: str) -> Optional[Dict[str, Any]]:
        self._raise_for(f"clob:{condition_id}")
        return self.clob_markets.get(condition_id)

    async def get_order_book(self, token_id: str) -> OrderBook:
        self.book_calls.append(token_id)
        self._raise_for(token_id)
        book = self.books.get(token_id)
        if book is None:
            raise LookupError(f"no order book for {token_id}")
        return book

    async def get_indicative_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        self._raise_for(f"price:{token_id}")
        return self.prices.get((token_id, side))


class MockTradingGateway(TradingGateway):
    """Records submitted orders; responses can be scripted in order."""

    def __init__(
        self,
        signer: str = "0x" + "1" * 40,
        balance_micro: int = 1_000_000_000,
        allowance_micro: int = 1_000_000_000,
    ):
        self._signer = signer
        self.balance_micro = balance_micro
        self.allowance_micro = allowance_micro
        self.open_orders: List[Dict[str, Any]] = []
        self.responses: List[Scripted] = []
        self.submitted: List[OrderRequest] = []
        self.balance_error: Optional[Exception] = None

    @property
    def signer_address(self) -> str:
        return self._signer

    async def submit_order(self, request: OrderRequest) -> Dict[str, Any]:
        self.submitted.append(request)
        if self.responses:
            scripted = self.responses.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            return scripted
        return {"success": True, "orderID": f"order-{len(self.submitted)}"}

    async def get_balance_allowance(self) -> BalanceAllowance:
        if self.balance_error is not None:
            raise self.balance_error
        return BalanceAllowance(balance_micro=self.balance_micro, allowance_micro=self.allowance_micro)

    async def get_open_orders(self) -> List[Dict[str, Any]]:
        return list(self.open_orders)


class MockApprovalClient(ApprovalClient):
    """On-chain allowance per owner; approvals raise it immediately."""

    def __init__(self, signer: Optional[str] = "0x" + "1" * 40, allowance_micro: int = 0):
        self._signer = signer
        self.allowances: Dict[str, int] = {}
        self.default_allowance = allowance_micro
        self.approvals: List[Optional[int]] = []
        self.approve_error: Optional[Exception] = None
        self.grant_on_approve = True

    @property
    def signer_address(self) -> Optional[str]:
        return self._signer

    async def read_allowance(self, owner: str) -> int:
        return self.allowances.get(owner.lower(), self.default_allowance)

    async def approve(self, amount_micro: Optional[int]) -> str:
        self.approvals.append(amount_micro)
        if self.approve_error is not None:
            raise self.approve_error
        if self.grant_on_approve and self._signer:
            self.allowances[self._signer.lower()] = amount_micro if amount_micro is not None else 2 ** 256 - 1
        return f"0xtx{len(self.approvals)}"

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        return {"transaction_hash": tx_hash, "block_number": 1, "status": 1}


def create_mock_collaborators() -> Tuple[MockSignalSource, MockMarketProvider, MockTradingGateway]:
    """Create a fresh set of in-memory collaborators."""
    return MockSignalSource(), MockMarketProvider(), MockTradingGateway()
