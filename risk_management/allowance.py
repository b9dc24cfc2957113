"""
USDC allowance guard.

Makes sure the exchange spender is authorized to move enough collateral before
BUY mirrors are placed. Concurrent checks collapse into a single in-flight
check. With auto-approve enabled (direct EOA signers only) an approval
transaction is submitted, confirmed, and the allowance re-read. Approval
attempts and the "allowance too low" log line are both rate-limited.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

from api_clients.base import ApprovalClient
from utils.logging_config import log_event
from utils.money import format_usdc_micro, parse_usdc_to_micro
from utils.timeparse import now_ms
from utils.validation import is_address, same_address

from .preflight import SIGNATURE_TYPE_EOA, allowance_owner


logger = logging.getLogger(__name__)

WARNING_COOLDOWN_MS = 5 * 60 * 1000
APPROVAL_COOLDOWN_MS = 5 * 60 * 1000
RESULT_TTL_MS = 60 * 1000

UNLIMITED_APPROVALS = ("unlimited", "max", "maxuint256")


def parse_approve_amount(raw: str) -> Optional[int]:
    """Approval amount in micro-USDC; None means the maximum uint256."""
    normalized = str(raw).strip().lower()
    if normalized in UNLIMITED_APPROVALS:
        return None
    micro = parse_usdc_to_micro(normalized)
    if micro <= 0:
        raise ValueError(f"APPROVE_AMOUNT_USDC must be > 0 or 'unlimited'. Got: {raw}")
    return micro


def compute_required_allowance_micro(notional_usdc: Optional[float], min_allowance_usdc: float) -> int:
    """max(notional, configured minimum) in micro-USDC."""
    min_micro = parse_usdc_to_micro(min_allowance_usdc)
    required = 0
    if notional_usdc is not None and notional_usdc > 0:
        required = parse_usdc_to_micro(f"{notional_usdc:.6f}")
    return max(required, min_micro)


@dataclass
class AllowanceConfig:
    """Allowance guard settings."""
    auto_approve: bool = False
    approve_amount_usdc: str = "1000"
    min_allowance_usdc: float = 50.0
    signature_type: int = 1
    my_address: Optional[str] = None
    funder_address: Optional[str] = None
    dry_run: bool = True


@dataclass
class AllowanceCheckResult:
    ok: bool
    owner: Optional[str]
    allowance_micro: int
    required_micro: int
    reason: Optional[str] = None
    approved: bool = False
    tx_hash: Optional[str] = None
    checked_at_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "owner": self.owner,
            "allowance": format_usdc_micro(self.allowance_micro),
            "required": format_usdc_micro(self.required_micro),
            "reason": self.reason,
            "approved": self.approved,
            "tx_hash": self.tx_hash,
        }


class AllowanceGuard:
    """Single-flight allowance check with optional auto-approval."""

    def __init__(
        self,
        config: AllowanceConfig,
        approvals: Optional[ApprovalClient] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.approvals = approvals
        self.clock = clock
        self._in_flight: Optional[asyncio.Task] = None
        self._last_result: Optional[AllowanceCheckResult] = None
        self._last_warning_ms = 0
        self._last_approval_ms = 0

    @property
    def owner(self) -> Optional[str]:
        return allowance_owner(self.config.signature_type, self.config.my_address, self.config.funder_address)

    @property
    def last_result(self) -> Optional[AllowanceCheckResult]:
        return self._last_result

    def _covers(self, result: Optional[AllowanceCheckResult], required: int) -> bool:
        return result is not None and result.ok and result.allowance_micro >= required

    async def ensure_allowance(
        self,
        required_notional_usdc: Optional[float] = None,
        reason: str = "pre-trade",
    ) -> AllowanceCheckResult:
        """
        Ensure the allowance covers ``required_notional_usdc`` (and the minimum).

        Args:
            required_notional_usdc: Notional about to be spent, if any
            reason: Caller label ("startup", "interval", "pre-trade")

        Returns:
            AllowanceCheckResult; never raises for upstream failures
        """
        required = compute_required_allowance_micro(required_notional_usdc, self.config.min_allowance_usdc)
        if self.config.dry_run:
            return self._result(True, required, required, "dry-run")

        if self._in_flight is not None:
            existing = await asyncio.shield(self._in_flight)
            if self._covers(existing, required):
                return replace(existing, required_micro=required)

        last = self._last_result
        if reason == "pre-trade" and self._covers(last, required) and self.clock() - last.checked_at_ms < RESULT_TTL_MS:
            return replace(last, required_micro=required)

        if self._in_flight is None or self._in_flight.done():
            self._in_flight = asyncio.ensure_future(self._perform_check(reason, required))
        task = self._in_flight
        try:
            result = await asyncio.shield(task)
        finally:
            if self._in_flight is task and task.done():
                self._in_flight = None
        self._last_result = result
        if result.required_micro != required:
            result = replace(result, required_micro=required, ok=result.allowance_micro >= required and result.ok)
        return result

    def _result(self, ok: bool, allowance: int, required: int, reason: Optional[str] = None, **kwargs: Any) -> AllowanceCheckResult:
        return AllowanceCheckResult(
            ok=ok,
            owner=self.owner,
            allowance_micro=allowance,
            required_micro=required,
            reason=reason,
            checked_at_ms=self.clock(),
            **kwargs,
        )

    async def _perform_check(self, reason: str, required: int) -> AllowanceCheckResult:
        owner = self.owner
        if self.approvals is None:
            self._warn_once("RPC_URL is required to check on-chain USDC allowance", {"owner": owner})
            return self._result(False, 0, required, "rpc-missing")

        try:
            allowance = await self.approvals.read_allowance(owner)
        except Exception as e:
            self._warn_once("Allowance check failed", {"owner": owner, "error": str(e)})
            return self._result(False, 0, required, "allowance-check-failed")

        if allowance >= required:
            return self._result(True, allowance, required)

        if not self.config.auto_approve:
            self._approval_required(reason, "AUTO_APPROVE disabled", allowance, required)
            return self._result(False, allowance, required, "allowance-too-low")

        issue = self._auto_approve_issue(owner)
        if issue:
            self._approval_required(reason, issue, allowance, required)
            return self._result(False, allowance, required, issue)

        now = self.clock()
        if self._last_approval_ms and now - self._last_approval_ms < APPROVAL_COOLDOWN_MS:
            return self._result(False, allowance, required, "approval-recently-attempted")
        self._last_approval_ms = now

        try:
            amount = parse_approve_amount(self.config.approve_amount_usdc)
            label = "unlimited" if amount is None else format_usdc_micro(amount)
            log_event(logger, logging.INFO, "submitting USDC approval", {"owner": owner, "amount": label})
            tx_hash = await self.approvals.approve(amount)
            receipt = await self.approvals.wait_for_receipt(tx_hash)
            log_event(logger, logging.INFO, "approval confirmed", receipt)
            allowance = await self.approvals.read_allowance(owner)
        except Exception as e:
            self._warn_once("USDC approval failed", {"owner": owner, "error": str(e)})
            return self._result(False, allowance, required, "approval-failed")

        ok = allowance >= required
        log_event(
            logger,
            logging.INFO,
            "allowance refreshed",
            {"owner": owner, "allowance": format_usdc_micro(allowance), "required": format_usdc_micro(required), "ok": ok},
        )
        return self._result(ok, allowance, required, None if ok else "allowance-still-low", approved=True, tx_hash=tx_hash)

    def _auto_approve_issue(self, owner: Optional[str]) -> Optional[str]:
        if self.config.signature_type != SIGNATURE_TYPE_EOA:
            return "approve-unsupported-signature-type"
        signer = self.approvals.signer_address
        if not signer:
            return "approve-private-key-missing"
        if not is_address(owner) or not same_address(signer, owner):
            return "approve-signer-mismatch"
        return None

    def _warn_once(self, message: str, details: Dict[str, Any]):
        now = self.clock()
        if self._last_warning_ms and now - self._last_warning_ms < WARNING_COOLDOWN_MS:
            return
        self._last_warning_ms = now
        log_event(logger, logging.ERROR, message, details)

    def _approval_required(self, check_reason: str, cause: str, allowance: int, required: int):
        self._warn_once(
            "USDC allowance too low; approval required before trading",
            {
                "cause": cause,
                "check_reason": check_reason,
                "owner": self.owner,
                "allowance": format_usdc_micro(allowance),
                "required": format_usdc_micro(required),
                "signature_type": self.config.signature_type,
            },
        )
