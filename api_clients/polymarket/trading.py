"""
Authenticated CLOB trading gateway backed by ``py-clob-client``.

Order signing and the submission wire format stay inside the library; this
adapter only maps our OrderRequest onto it. The library is synchronous, so
every call runs in a worker thread. Install with the ``live`` extra.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from api_clients.base import BalanceAllowance, OrderRequest, TradingGateway
from utils.money import parse_decimal_to_fixed


logger = logging.getLogger(__name__)


def _micro(value: Any) -> int:
    """Balance-allowance values arrive as integer strings in base units."""
    return parse_decimal_to_fixed(value, 0)


class PyClobTradingGateway(TradingGateway):
    """Live order placement for the controlled account."""

    def __init__(
        self,
        host: str,
        private_key: str,
        chain_id: int,
        signature_type: int,
        funder: Optional[str] = None,
    ):
        from py_clob_client.client import ClobClient

        self.signature_type = int(signature_type)
        self.client = ClobClient(
            host,
            key=private_key,
            chain_id=chain_id,
            signature_type=self.signature_type,
            funder=funder,
        )
        self.client.set_api_creds(self.client.create_or_derive_api_creds())
        self._signer_address = str(self.client.get_address() or "").strip()
        logger.info(f"CLOB trading client ready for signer {self._signer_address}")

    @property
    def signer_address(self) -> str:
        return self._signer_address

    def _submit_sync(self, request: OrderRequest) -> Dict[str, Any]:
        from py_clob_client.clob_types import OrderArgs, OrderType, PartialCreateOrderOptions

        order_args = OrderArgs(
            token_id=request.token_id,
            price=request.price,
            size=request.size,
            side=request.side.value,
            expiration=request.expiration_s if request.order_type.value == "GTD" else 0,
        )
        options = PartialCreateOrderOptions(tick_size=request.tick_size, neg_risk=request.neg_risk)
        signed = self.client.create_order(order_args, options)
        order_type = OrderType.GTD if request.order_type.value == "GTD" else OrderType.GTC
        response = self.client.post_order(signed, order_type)
        if not isinstance(response, dict):
            return {"raw_response": response}
        return response

    async def submit_order(self, request: OrderRequest) -> Dict[str, Any]:
        return await asyncio.to_thread(self._submit_sync, request)

    def _balance_sync(self) -> BalanceAllowance:
        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

        response = self.client.get_balance_allowance(
            BalanceAllowanceParams(asset_type=AssetType.COLLATERAL, signature_type=self.signature_type)
        )
        if not isinstance(response, dict):
            raise ValueError(f"unexpected balance-allowance payload: {response!r}")
        allowance = response.get("allowance")
        if allowance is None and isinstance(response.get("allowances"), dict):
            values = [_micro(v) for v in response["allowances"].values()]
            allowance_micro = min(values) if values else 0
        else:
            allowance_micro = _micro(allowance)
        return BalanceAllowance(
            balance_micro=_micro(response.get("balance")),
            allowance_micro=allowance_micro,
        )

    async def get_balance_allowance(self) -> BalanceAllowance:
        return await asyncio.to_thread(self._balance_sync)

    def _open_orders_sync(self) -> List[Dict[str, Any]]:
        from py_clob_client.clob_types import OpenOrderParams

        orders = self.client.get_orders(OpenOrderParams())
        return [o for o in orders or [] if isinstance(o, dict)]

    async def get_open_orders(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._open_orders_sync)
