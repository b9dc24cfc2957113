"""
Unit tests for preflight, the allowance guard and the timed breakers.
"""

import asyncio

import pytest

from api_clients.mock import MockApprovalClient, MockTradingGateway
from mirroring.models import SkipReason
from risk_management.allowance import (
    AllowanceConfig,
    AllowanceGuard,
    compute_required_allowance_micro,
    parse_approve_amount,
)
from risk_management.circuit_breaker import BalanceCooldownBreaker, CircuitState
from risk_management.preflight import Preflight, allowance_owner, check_identity


ME = "0x" + "1" * 40
FUNDER = "0x" + "2" * 40
NOW = 1_700_000_000_000


class TestIdentity:
    """Test signer / funder consistency rules."""

    @pytest.mark.parametrize(
        "signature_type, signer, funder, ok",
        [
            (0, ME, None, True),
            (0, ME, ME, True),
            (0, ME, FUNDER, False),
            (1, ME, FUNDER, True),
            (2, ME, FUNDER, True),
            (1, ME, None, False),
            (1, ME, ME, False),
            (1, ME, "0xnot-an-address", False),
            (0, None, None, False),
            (3, ME, FUNDER, False),
        ],
    )
    def test_check_identity(self, signature_type, signer, funder, ok):
        assert (check_identity(signature_type, signer, funder) is None) == ok

    def test_allowance_owner(self):
        """Test that proxy signature types spend from the funder."""
        assert allowance_owner(0, ME, FUNDER) == ME
        assert allowance_owner(1, ME, FUNDER) == FUNDER
        assert allowance_owner(2, ME, None) == ME


class TestPreflight:
    """Test collateral classification."""

    @pytest.fixture
    def gateway(self):
        # balance 100, allowance 75, 50 reserved by an open BUY
        gateway = MockTradingGateway(signer=ME, balance_micro=100_000_000, allowance_micro=75_000_000)
        gateway.open_orders = [{"side": "BUY", "price": "0.5", "original_size": "100", "size_matched": "0"}]
        return gateway

    @pytest.mark.asyncio
    async def test_available_is_net_of_reserved(self, gateway):
        preflight = Preflight(gateway, signature_type=0)

        ok = await preflight.run(20.0)
        assert ok.ok
        assert ok.snapshot.available_micro == 25_000_000

        reserved = await preflight.run(30.0)
        assert reserved.code == SkipReason.RESERVED_BY_OPEN_ORDERS
        assert reserved.diagnostics()["available"] == "25"

    @pytest.mark.asyncio
    async def test_allowance_too_low(self, gateway):
        result = await Preflight(gateway, signature_type=0).run(80.0)
        assert result.code == SkipReason.ALLOWANCE_TOO_LOW

    @pytest.mark.asyncio
    async def test_insufficient_collateral(self, gateway):
        gateway.balance_micro = 10_000_000
        gateway.open_orders = []
        result = await Preflight(gateway, signature_type=0).run(20.0)
        assert result.code == SkipReason.INSUFFICIENT_COLLATERAL

    @pytest.mark.asyncio
    async def test_identity_mismatch(self, gateway):
        result = await Preflight(gateway, signature_type=1).run(1.0)
        assert result.code == SkipReason.IDENTITY_MISMATCH
        assert "funder" in result.reason

    @pytest.mark.asyncio
    async def test_fetch_failure(self, gateway):
        gateway.balance_error = RuntimeError("clob down")
        result = await Preflight(gateway, signature_type=1, funder=FUNDER).run(1.0)
        assert result.code == SkipReason.PREFLIGHT_ERROR
        assert result.error.message == "clob down"
        assert result.diagnostics()["error"]["message"] == "clob down"


class CountingApprovalClient(MockApprovalClient):
    """Approval client that counts reads and yields to the event loop."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = 0

    async def read_allowance(self, owner: str) -> int:
        self.reads += 1
        await asyncio.sleep(0.01)
        return await super().read_allowance(owner)


class TestAllowanceGuard:
    """Test allowance checks and auto-approval."""

    def config(self, **overrides):
        values = {"dry_run": False, "signature_type": 0, "my_address": ME, "min_allowance_usdc": 50.0}
        values.update(overrides)
        return AllowanceConfig(**values)

    def test_parse_approve_amount(self):
        assert parse_approve_amount("unlimited") is None
        assert parse_approve_amount("MaxUint256") is None
        assert parse_approve_amount("1000") == 1_000_000_000
        with pytest.raises(ValueError):
            parse_approve_amount("0")

    def test_required_allowance(self):
        assert compute_required_allowance_micro(None, 50) == 50_000_000
        assert compute_required_allowance_micro(75.5, 50) == 75_500_000

    @pytest.mark.asyncio
    async def test_dry_run_always_ok(self):
        guard = AllowanceGuard(self.config(dry_run=True))
        result = await guard.ensure_allowance(10.0)
        assert result.ok
        assert result.reason == "dry-run"

    @pytest.mark.asyncio
    async def test_rpc_missing(self):
        result = await AllowanceGuard(self.config()).ensure_allowance(reason="startup")
        assert not result.ok
        assert result.reason == "rpc-missing"

    @pytest.mark.asyncio
    async def test_sufficient_allowance(self):
        approvals = MockApprovalClient(signer=ME, allowance_micro=60_000_000)
        result = await AllowanceGuard(self.config(), approvals).ensure_allowance(reason="startup")
        assert result.ok
        assert result.owner == ME
        assert approvals.approvals == []

    @pytest.mark.asyncio
    async def test_too_low_without_auto_approve(self):
        approvals = MockApprovalClient(signer=ME, allowance_micro=1_000_000)
        result = await AllowanceGuard(self.config(), approvals).ensure_allowance(reason="startup")
        assert not result.ok
        assert result.reason == "allowance-too-low"
        assert approvals.approvals == []

    @pytest.mark.asyncio
    async def test_auto_approve(self):
        """Test approve, confirm and re-read for a direct EOA signer."""
        approvals = MockApprovalClient(signer=ME, allowance_micro=0)
        guard = AllowanceGuard(self.config(auto_approve=True, approve_amount_usdc="1000"), approvals)

        result = await guard.ensure_allowance(reason="startup")
        assert result.ok
        assert result.approved
        assert result.tx_hash == "0xtx1"
        assert result.allowance_micro == 1_000_000_000
        assert approvals.approvals == [1_000_000_000]

    @pytest.mark.asyncio
    async def test_auto_approve_refused_for_proxy_wallets(self):
        approvals = MockApprovalClient(signer=ME, allowance_micro=0)
        config = self.config(auto_approve=True, signature_type=1, funder_address=FUNDER)
        result = await AllowanceGuard(config, approvals).ensure_allowance(reason="startup")
        assert not result.ok
        assert result.reason == "approve-unsupported-signature-type"
        assert result.owner == FUNDER
        assert approvals.approvals == []

    @pytest.mark.asyncio
    async def test_approval_attempts_are_rate_limited(self):
        approvals = MockApprovalClient(signer=ME, allowance_micro=0)
        approvals.grant_on_approve = False
        guard = AllowanceGuard(self.config(auto_approve=True), approvals, clock=lambda: NOW)

        first = await guard.ensure_allowance(reason="startup")
        assert first.reason == "allowance-still-low"
        second = await guard.ensure_allowance(reason="interval")
        assert second.reason == "approval-recently-attempted"
        assert len(approvals.approvals) == 1

    @pytest.mark.asyncio
    async def test_pre_trade_reuses_recent_result(self):
        approvals = CountingApprovalClient(signer=ME, allowance_micro=60_000_000)
        guard = AllowanceGuard(self.config(), approvals, clock=lambda: NOW)

        assert (await guard.ensure_allowance(reason="startup")).ok
        assert (await guard.ensure_allowance(1.0, reason="pre-trade")).ok
        assert approvals.reads == 1

    @pytest.mark.asyncio
    async def test_concurrent_checks_share_one_read(self):
        """Test that overlapping checks collapse into a single in-flight check."""
        approvals = CountingApprovalClient(signer=ME, allowance_micro=60_000_000)
        guard = AllowanceGuard(self.config(), approvals)

        results = await asyncio.gather(
            guard.ensure_allowance(reason="interval"),
            guard.ensure_allowance(reason="interval"),
        )
        assert all(r.ok for r in results)
        assert approvals.reads == 1


class TestTimedBreaker:
    """Test the balance cooldown window."""

    def test_trip_and_expire(self):
        breaker = BalanceCooldownBreaker(cooldown_ms=1_000)
        assert breaker.state(NOW) == CircuitState.CLOSED

        breaker.trip("not enough balance", NOW)
        assert breaker.is_open(NOW + 999)
        assert breaker.remaining_ms(NOW + 400) == 600
        assert not breaker.is_open(NOW + 1_000)

    def test_retrip_extends(self):
        breaker = BalanceCooldownBreaker(cooldown_ms=1_000)
        breaker.trip("first", NOW)
        breaker.trip("second", NOW + 500)
        assert breaker.is_open(NOW + 1_400)
        assert breaker.to_dict(NOW + 1_400) == {
            "state": "open",
            "remaining_ms": 100,
            "last_reason": "second",
            "trip_count": 2,
        }

        breaker.reset()
        assert not breaker.is_open(NOW + 1_400)
