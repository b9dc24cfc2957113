"""
Unit tests for the mirror decision engine.
Runs the full pipeline against in-memory collaborators.
"""

import pytest

from api_clients.base import APIError, OrderBook, OrderBookMeta, OrderSide, OrderType, PositionSnapshot, Trade
from api_clients.mock import MockMarketProvider, MockSignalSource, MockTradingGateway
from db.persistence import StateStore
from mirroring.engine import ExecutionConfig, MirrorEngine, SizingConfig
from mirroring.models import MirrorStatus, SkipReason
from utils.retry import RetryPolicy
from utils.timeparse import utc_day_key


LEADER = "0x" + "a" * 40
ME = "0x" + "1" * 40
COND = "0x" + "c" * 64
YES_TOKEN = "111"
NO_TOKEN = "222"

NOW = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


def make_trade(side=OrderSide.BUY, size=100.0, price=0.5, outcome_index=1, condition_id=COND):
    return Trade(
        proxy_wallet=LEADER,
        transaction_hash="0xtx",
        condition_id=condition_id,
        outcome_index=outcome_index,
        side=side,
        size=size,
        price=price,
        timestamp_ms=NOW,
        size_raw=str(size),
        price_raw=str(price),
    )


@pytest.fixture
def store():
    state = StateStore(":memory:")
    yield state
    state.close()


@pytest.fixture
def markets():
    provider = MockMarketProvider()
    provider.markets[COND] = {
        "conditionId": COND,
        "question": "Will BTC close above 100k?",
        "category": "Crypto",
        "active": True,
        "closed": False,
        "acceptingOrders": True,
        "endDate": NOW + DAY_MS,
        "clobTokenIds": f'["{YES_TOKEN}", "{NO_TOKEN}"]',
    }
    provider.books[NO_TOKEN] = OrderBook(
        token_id=NO_TOKEN,
        bids=[{"price": "0.48"}, {"price": "0.40"}],
        asks=[{"price": "0.55"}, {"price": "0.50"}],
        tick_size="0.01",
        min_order_size="1",
    )
    return provider


@pytest.fixture
def signals():
    return MockSignalSource()


@pytest.fixture
def gateway():
    return MockTradingGateway(signer=ME)


def build_engine(markets, signals, store, gateway=None, dry_run=True, **sizing):
    sizing.setdefault("slippage_pct", 0.0)
    return MirrorEngine(
        markets,
        signals,
        store,
        gateway=gateway,
        sizing=SizingConfig(**sizing),
        execution=ExecutionConfig(dry_run=dry_run, my_address=ME, signature_type=0),
        retry_policy=RetryPolicy(base_delay_s=0),
    )


class TestDryRunSizing:
    """Test sizing and pricing in dry run."""

    @pytest.mark.asyncio
    async def test_buy_sizing(self, markets, signals, store):
        """Test notional = size * price * copy ratio * weight at the best ask."""
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)

        assert result.status == MirrorStatus.DRY_RUN
        assert result.reason_code == SkipReason.DRY_RUN
        assert result.token_id == NO_TOKEN
        assert result.size == pytest.approx(2.0)
        assert result.limit_price == pytest.approx(0.50)
        assert result.notional == pytest.approx(1.0)
        assert store.get_daily_notional(utc_day_key(NOW)) == pytest.approx(1.0)
        assert store.get_condition_token_ids(COND) == [YES_TOKEN, NO_TOKEN]
        assert engine.counters["dry-run"] == 1

    @pytest.mark.asyncio
    async def test_weight_scales_notional(self, markets, signals, store):
        engine = build_engine(markets, signals, store, copy_ratio=0.1)
        result = await engine.decide(make_trade(), 0.5, now_ms=NOW)
        # 50 * 0.1 * 0.5 = 2.5 USDC -> 5 shares at 0.50
        assert result.size == pytest.approx(5.0)
        assert result.notional == pytest.approx(2.5)

    @pytest.mark.asyncio
    async def test_caps_per_trade(self, markets, signals, store):
        """Test the per-trade USDC and share caps."""
        engine = build_engine(markets, signals, store, copy_ratio=1.0, max_usdc_per_trade=10.0, max_shares_per_trade=15.0)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.size == pytest.approx(15.0)
        assert result.notional == pytest.approx(7.5)

    @pytest.mark.asyncio
    async def test_slippage_rounds_up_for_buy(self, markets, signals, store):
        engine = build_engine(markets, signals, store, slippage_pct=0.03)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        # 0.50 * 1.03 = 0.515 -> next tick up
        assert result.limit_price == pytest.approx(0.52)

    @pytest.mark.asyncio
    async def test_sell_limited_by_position(self, markets, signals, store):
        """Test that SELL mirrors never exceed the held size."""
        signals.positions[ME] = [
            PositionSnapshot(condition_id=COND, outcome_index=1, size=1.5),
            PositionSnapshot(condition_id=COND, outcome_index=0, size=50.0),
        ]
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(side=OrderSide.SELL), 1.0, now_ms=NOW)

        assert result.status == MirrorStatus.DRY_RUN
        assert result.size == pytest.approx(1.0)
        assert result.limit_price == pytest.approx(0.48)

    @pytest.mark.asyncio
    async def test_sell_without_position(self, markets, signals, store):
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(side=OrderSide.SELL), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.NO_POSITION

    @pytest.mark.asyncio
    async def test_sell_position_lookup_failure(self, markets, signals, store):
        signals.errors[ME] = RuntimeError("data api down")
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(side=OrderSide.SELL), 1.0, now_ms=NOW)
        assert result.status == MirrorStatus.FAILED
        assert result.reason_code == SkipReason.PREFLIGHT_ERROR
        assert "data api down" in result.error_message


class TestGates:
    """Test skip reasons from each gate."""

    @pytest.mark.asyncio
    async def test_invalid_trade(self, markets, signals, store):
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(outcome_index=-1), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.INVALID_TRADE
        assert result.diagnostics["missing"] == ["outcomeIndex"]

    @pytest.mark.asyncio
    async def test_negative_size_and_price_rejected(self, markets, signals, store):
        """Test that a positive notional from two negative inputs is not mirrored."""
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(size=-100.0, price=-0.5), 1.0, now_ms=NOW)
        assert result.status == MirrorStatus.SKIPPED
        assert result.reason_code == SkipReason.INVALID_TRADE
        assert result.diagnostics["missing"] == ["size", "price"]
        assert markets.book_calls == []

    @pytest.mark.asyncio
    async def test_token_unresolved(self, signals, store):
        engine = build_engine(MockMarketProvider(), signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.TOKEN_UNRESOLVED

    @pytest.mark.asyncio
    async def test_token_from_clob_tokens(self, markets, signals, store):
        """Test the CLOB token list fallback when gamma has no clobTokenIds."""
        del markets.markets[COND]["clobTokenIds"]
        markets.clob_markets[COND] = {"tokens": [{"token_id": YES_TOKEN}, {"token_id": NO_TOKEN}]}
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.token_id == NO_TOKEN
        assert result.status == MirrorStatus.DRY_RUN

    @pytest.mark.asyncio
    async def test_token_looks_like_condition(self, markets, signals, store):
        store.set_condition_token_ids(COND, ["0x" + "d" * 64, "0x" + "e" * 64])
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.TOKEN_LOOKS_LIKE_CONDITION
        assert markets.book_calls == []

    @pytest.mark.asyncio
    async def test_token_looks_like_address(self, markets, signals, store):
        store.set_condition_token_ids(COND, [YES_TOKEN, "0x" + "f" * 40])
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.TOKEN_LOOKS_LIKE_ADDRESS

    @pytest.mark.asyncio
    async def test_market_ending_blocks_buy_only(self, markets, signals, store):
        """Test that the end-time gate applies to BUY but not SELL."""
        markets.markets[COND]["endDate"] = NOW + 60_000
        signals.positions[ME] = [PositionSnapshot(condition_id=COND, outcome_index=1, size=10.0)]
        engine = build_engine(markets, signals, store)

        buy = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert buy.reason_code == SkipReason.MARKET_ENDING

        sell = await engine.decide(make_trade(side=OrderSide.SELL), 1.0, now_ms=NOW)
        assert sell.status == MirrorStatus.DRY_RUN

    @pytest.mark.asyncio
    async def test_sports_market_skipped(self, markets, signals, store):
        markets.markets[COND]["category"] = "Sports"
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.CATEGORY_DISALLOWED

    @pytest.mark.asyncio
    async def test_price_unavailable(self, markets, signals, store):
        del markets.books[NO_TOKEN]
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.PRICE_UNAVAILABLE
        assert "book_error" in result.diagnostics

    @pytest.mark.asyncio
    async def test_indicative_price_needs_meta(self, markets, signals, store):
        """Test the price fallback; granularity must still come from somewhere."""
        del markets.books[NO_TOKEN]
        markets.prices[(NO_TOKEN, OrderSide.BUY)] = 0.5
        engine = build_engine(markets, signals, store)

        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.ORDERBOOK_META_UNAVAILABLE

        # a stale cache entry is better than nothing
        store.set_token_meta(OrderBookMeta(NO_TOKEN, "0.01", "1", False, updated_at_ms=NOW - DAY_MS))
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.status == MirrorStatus.DRY_RUN
        assert result.size == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_non_positive_weight(self, markets, signals, store):
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 0.0, now_ms=NOW)
        assert result.reason_code == SkipReason.NON_POSITIVE_WEIGHT

    @pytest.mark.asyncio
    async def test_size_below_min(self, markets, signals, store):
        markets.books[NO_TOKEN].min_order_size = "5"
        engine = build_engine(markets, signals, store)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.SIZE_BELOW_MIN

    @pytest.mark.asyncio
    async def test_daily_cap(self, markets, signals, store):
        """Test that the UTC-day cap counts previously spent notional."""
        store.add_daily_notional(utc_day_key(NOW), 1.0)
        engine = build_engine(markets, signals, store, max_daily_usdc=1.5)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert result.reason_code == SkipReason.DAILY_CAP
        assert store.get_daily_notional(utc_day_key(NOW)) == pytest.approx(1.0)


class TestLiveSubmission:
    """Test live order submission against the mock gateway."""

    @pytest.mark.asyncio
    async def test_places_gtd_order(self, markets, signals, store, gateway):
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)

        assert result.status == MirrorStatus.PLACED
        assert result.order_id == "order-1"
        assert result.order_type == OrderType.GTD
        [request] = gateway.submitted
        assert request.token_id == NO_TOKEN
        assert request.side == OrderSide.BUY
        assert request.size == pytest.approx(2.0)
        assert request.tick_size == "0.01"
        # now + expiration safety + TTL
        assert request.expiration_s == NOW // 1000 + 120
        assert store.get_daily_notional(utc_day_key(NOW)) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_gtd_rejection_falls_back_to_gtc(self, markets, signals, store, gateway):
        gateway.responses.append({"success": False, "errorMsg": "invalid expiration value"})
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)

        assert result.status == MirrorStatus.PLACED
        assert result.order_type == OrderType.GTC
        assert [r.order_type for r in gateway.submitted] == [OrderType.GTD, OrderType.GTC]

    @pytest.mark.asyncio
    async def test_rejected_order(self, markets, signals, store, gateway):
        gateway.responses.append({"success": False, "errorMsg": "price out of range"})
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)

        assert result.status == MirrorStatus.FAILED
        assert result.reason_code == SkipReason.ORDER_REJECTED
        assert result.error_message == "price out of range"
        assert store.get_daily_notional(utc_day_key(NOW)) == 0.0

    @pytest.mark.asyncio
    async def test_balance_error_opens_cooldown(self, markets, signals, store, gateway):
        """Test that a balance failure suppresses later BUY mirrors."""
        gateway.responses.append(RuntimeError("not enough balance / allowance"))
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)

        first = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert first.status == MirrorStatus.FAILED
        assert first.reason_code == SkipReason.ORDER_ERROR
        assert engine.balance_breaker.is_open(NOW + 1)

        second = await engine.decide(make_trade(), 1.0, now_ms=NOW + 1)
        assert second.reason_code == SkipReason.BALANCE_COOLDOWN
        assert len(gateway.submitted) == 1

        after = await engine.decide(make_trade(), 1.0, now_ms=NOW + 900_000)
        assert after.status == MirrorStatus.PLACED

    @pytest.mark.asyncio
    async def test_auth_error_opens_backoff(self, markets, signals, store, gateway):
        gateway.responses.append(APIError("CLOB", 401, {"error": "Unauthorized"}))
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)

        first = await engine.decide(make_trade(), 1.0, now_ms=NOW)
        assert first.status == MirrorStatus.FAILED
        assert first.error_status == 401

        second = await engine.decide(make_trade(), 1.0, now_ms=NOW + 1)
        assert second.reason_code == SkipReason.AUTH_BACKOFF
        assert len(gateway.submitted) == 1

    @pytest.mark.asyncio
    async def test_allowance_too_low_skips_and_cools_down(self, markets, signals, store, gateway):
        gateway.allowance_micro = 500_000
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)

        assert result.status == MirrorStatus.SKIPPED
        assert result.reason_code == SkipReason.ALLOWANCE_TOO_LOW
        assert result.diagnostics["allowance"] == "0.5"
        assert gateway.submitted == []
        assert engine.balance_breaker.is_open(NOW + 1)

    @pytest.mark.asyncio
    async def test_reserved_collateral_does_not_cool_down(self, markets, signals, store, gateway):
        """Test that collateral held by our own open orders skips without a cooldown."""
        gateway.balance_micro = 2_000_000
        gateway.open_orders = [{"side": "BUY", "price": "0.5", "original_size": "3", "size_matched": "0"}]
        engine = build_engine(markets, signals, store, gateway=gateway, dry_run=False)
        result = await engine.decide(make_trade(), 1.0, now_ms=NOW)

        assert result.reason_code == SkipReason.RESERVED_BY_OPEN_ORDERS
        assert not engine.balance_breaker.is_open(NOW + 1)
