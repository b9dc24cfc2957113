"""
BUY preflight for live trading.

Checks the signing identity against the funder for the configured signature
type, then compares the collateral actually available (balance and allowance
net of our own open BUY orders) with the notional about to be spent.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from api_clients.base import TradingGateway
from mirroring.models import BalanceSnapshot, SkipReason
from utils.money import compute_reserved_usdc_micro, format_usdc_micro, parse_usdc_to_micro
from utils.retry import CallResult, RetryPolicy, guarded_call
from utils.validation import is_address, same_address


logger = logging.getLogger(__name__)

SIGNATURE_TYPE_EOA = 0
PROXY_SIGNATURE_TYPES = (1, 2)


def allowance_owner(signature_type: int, signer: Optional[str], funder: Optional[str]) -> Optional[str]:
    """Account whose collateral backs orders: the funder for proxy wallets."""
    if signature_type in PROXY_SIGNATURE_TYPES:
        return funder or signer
    return signer


def check_identity(signature_type: int, signer: Optional[str], funder: Optional[str]) -> Optional[str]:
    """
    Validate signer / funder consistency.

    Returns:
        A problem description, or None when consistent
    """
    if not is_address(signer):
        return "signer address unavailable or invalid"
    if signature_type == SIGNATURE_TYPE_EOA:
        if funder and not same_address(funder, signer):
            return "signature type 0 requires the funder to equal the signer"
        return None
    if signature_type in PROXY_SIGNATURE_TYPES:
        if not funder:
            return f"signature type {signature_type} requires a funder address"
        if not is_address(funder):
            return "funder address is invalid"
        if same_address(funder, signer):
            return f"signature type {signature_type} requires a funder distinct from the signer"
        return None
    return f"unsupported signature type {signature_type}"


def classify_shortfall(snapshot: BalanceSnapshot, required_micro: int) -> Optional[SkipReason]:
    """Why ``required_micro`` cannot be spent, or None when it can."""
    if snapshot.available_micro >= required_micro:
        return None
    if snapshot.allowance_micro < required_micro:
        return SkipReason.ALLOWANCE_TOO_LOW
    if snapshot.spendable_micro >= required_micro:
        return SkipReason.RESERVED_BY_OPEN_ORDERS
    return SkipReason.INSUFFICIENT_COLLATERAL


@dataclass
class PreflightResult:
    ok: bool
    code: Optional[SkipReason] = None
    reason: str = ""
    snapshot: Optional[BalanceSnapshot] = None
    required_micro: int = 0
    error: Optional[CallResult] = None

    def diagnostics(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"required": format_usdc_micro(self.required_micro)}
        if self.snapshot is not None:
            data.update(self.snapshot.to_dict())
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


class Preflight:
    """Identity and collateral checks against the trading gateway."""

    def __init__(
        self,
        gateway: TradingGateway,
        signature_type: int = 1,
        funder: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.gateway = gateway
        self.signature_type = signature_type
        self.funder = funder
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def owner(self) -> Optional[str]:
        return allowance_owner(self.signature_type, self.gateway.signer_address, self.funder)

    async def fetch_snapshot(self) -> CallResult:
        """Balance, allowance and reserved collateral as a CallResult[BalanceSnapshot]."""
        balance = await guarded_call(self.gateway.get_balance_allowance, policy=self.retry_policy)
        if not balance.ok:
            return balance
        orders = await guarded_call(self.gateway.get_open_orders, policy=self.retry_policy)
        if not orders.ok:
            return orders
        snapshot = BalanceSnapshot(
            owner=self.owner or "",
            balance_micro=balance.value.balance_micro,
            allowance_micro=balance.value.allowance_micro,
            reserved_micro=compute_reserved_usdc_micro(orders.value),
        )
        return CallResult.success(snapshot)

    async def run(self, notional_usdc: float) -> PreflightResult:
        required = parse_usdc_to_micro(f"{notional_usdc:.6f}", round_up=True)

        problem = check_identity(self.signature_type, self.gateway.signer_address, self.funder)
        if problem:
            return PreflightResult(False, SkipReason.IDENTITY_MISMATCH, problem, required_micro=required)

        fetched = await self.fetch_snapshot()
        if not fetched.ok:
            logger.warning(f"Preflight fetch failed: {fetched.message}")
            return PreflightResult(
                False, SkipReason.PREFLIGHT_ERROR, fetched.message, required_micro=required, error=fetched
            )

        snapshot = fetched.value
        code = classify_shortfall(snapshot, required)
        if code is None:
            return PreflightResult(True, snapshot=snapshot, required_micro=required)
        reason = (
            f"{code.value}: available {format_usdc_micro(snapshot.available_micro)} "
            f"< required {format_usdc_micro(required)}"
        )
        return PreflightResult(False, code, reason, snapshot=snapshot, required_micro=required)
