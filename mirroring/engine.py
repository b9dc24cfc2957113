"""
Mirror decision engine.

Turns one normalized Trade and its copy weight into a MirrorResult: either a
bounded, priced order (placed, or simulated in dry run) or a skip carrying a
stable reason code. Every step is a hard gate. Collaborator failures are
captured as CallResults at the call site, so ``decide`` never raises for
upstream errors.

The engine is constructed once per process and owns its mutable state: the
balance cooldown breaker, the auth backoff, and debug counters.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from api_clients.base import (
    MarketSnapshotProvider,
    OrderBook,
    OrderBookMeta,
    OrderRequest,
    OrderSide,
    OrderType,
    SignalSource,
    Trade,
    TradingGateway,
)
from api_clients.polymarket.gamma import parse_clob_token_ids
from risk_management.allowance import AllowanceGuard
from risk_management.circuit_breaker import AuthBackoff, BalanceCooldownBreaker
from risk_management.preflight import Preflight, PreflightResult, allowance_owner
from utils.logging_config import log_event
from utils.retry import CallResult, ErrorKind, RetryPolicy, guarded_call
from utils.timeparse import now_ms as current_ms, utc_day_key
from utils.validation import is_address, is_bytes32_hex, to_finite_float

from .market_guard import MarketFilterConfig, MarketGuard
from .models import MirrorResult, MirrorStatus, SkipReason
from .normalizer import validate_trade
from .pricing import (
    compute_gtd_expiration_s,
    count_decimals,
    limit_price_with_slippage,
    round_price_to_tick,
    round_size,
)


logger = logging.getLogger(__name__)

META_TTL_MS = 5 * 60 * 1000
DEBUG_LOG_LIMIT = 3
GTD_FALLBACK_MARKERS = ("gtd", "expiration")


@dataclass
class SizingConfig:
    """Notional and share sizing limits."""
    copy_ratio: float = 0.02
    max_usdc_per_trade: float = 50.0
    max_shares_per_trade: float = 200.0
    max_daily_usdc: Optional[float] = None
    slippage_pct: float = 0.02


@dataclass
class ExecutionConfig:
    """Order lifetime, breaker windows and the controlled account."""
    dry_run: bool = True
    order_ttl_s: int = 60
    expiration_safety_s: int = 60
    market_end_safety_s: int = 300
    balance_error_cooldown_ms: int = 900_000
    auth_backoff_ms: int = 300_000
    my_address: Optional[str] = None
    signature_type: int = 1
    funder_address: Optional[str] = None


@dataclass
class _Context:
    """Per-signal working state."""
    trade: Trade
    weight: float
    now_ms: int
    token_id: Optional[str] = None
    market: Optional[Dict[str, Any]] = None
    market_error: Optional[CallResult] = None
    ttl_s: int = 0
    diagnostics: Dict[str, Any] = field(default_factory=dict)


def _order_id(response: Dict[str, Any]) -> Optional[str]:
    for name in ("orderID", "orderId", "id"):
        if response.get(name):
            return str(response[name])
    return None


def _response_message(response: Dict[str, Any]) -> str:
    for name in ("errorMsg", "error", "message"):
        if response.get(name):
            return str(response[name])
    return "CLOB rejected order"


def _wants_gtc_fallback(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in GTD_FALLBACK_MARKERS)


class MirrorEngine:
    """Decides what to do with one signal; see ``decide``."""

    def __init__(
        self,
        markets: MarketSnapshotProvider,
        signals: SignalSource,
        store,
        gateway: Optional[TradingGateway] = None,
        sizing: Optional[SizingConfig] = None,
        execution: Optional[ExecutionConfig] = None,
        filters: Optional[MarketFilterConfig] = None,
        allowance_guard: Optional[AllowanceGuard] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.markets = markets
        self.signals = signals
        self.store = store
        self.gateway = gateway
        self.sizing = sizing or SizingConfig()
        self.execution = execution or ExecutionConfig()
        self.allowance_guard = allowance_guard
        self.retry_policy = retry_policy or RetryPolicy()

        self.market_guard = MarketGuard(
            filters,
            order_ttl_s=self.execution.order_ttl_s,
            expiration_safety_s=self.execution.expiration_safety_s,
            market_end_safety_s=self.execution.market_end_safety_s,
        )
        self.balance_breaker = BalanceCooldownBreaker(self.execution.balance_error_cooldown_ms)
        self.auth_backoff = AuthBackoff(self.execution.auth_backoff_ms)
        self.preflight = (
            Preflight(gateway, self.execution.signature_type, self.execution.funder_address, self.retry_policy)
            if gateway is not None
            else None
        )
        self.counters: Counter = Counter()
        self._debug_logged = 0

    @property
    def live(self) -> bool:
        return not self.execution.dry_run and self.gateway is not None

    def stats(self) -> Dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "balance_cooldown": self.balance_breaker.to_dict(),
            "auth_backoff": self.auth_backoff.to_dict(),
        }

    # =============================================================================
    # DECISION PIPELINE
    # =============================================================================

    async def decide(self, trade: Trade, weight: float, now_ms: Optional[int] = None) -> MirrorResult:
        """
        Decide skip vs. place for one signal.

        Args:
            trade: Normalized trade of a monitored wallet
            weight: Copy weight of that wallet from the current selection
            now_ms: Decision time (defaults to the wall clock)

        Returns:
            MirrorResult; the caller persists it under the signal key
        """
        ctx = _Context(trade=trade, weight=weight, now_ms=current_ms() if now_ms is None else now_ms)
        result = await self._decide(ctx)
        if result.token_id is None:
            result.token_id = ctx.token_id
        self.counters[result.reason_code.value] += 1
        return result

    async def _decide(self, ctx: _Context) -> MirrorResult:
        trade = ctx.trade
        invalid = validate_trade(trade)
        if invalid:
            return MirrorResult.skipped(SkipReason.INVALID_TRADE, "missing required trade fields", missing=invalid)

        skip = await self._resolve_token(ctx)
        if skip:
            return skip

        is_buy = trade.side == OrderSide.BUY
        if is_buy and self.balance_breaker.is_open(ctx.now_ms):
            return MirrorResult.skipped(
                SkipReason.BALANCE_COOLDOWN,
                "balance cooldown active",
                remaining_ms=self.balance_breaker.remaining_ms(ctx.now_ms),
            )
        if self.live and self.auth_backoff.is_open(ctx.now_ms):
            return MirrorResult.skipped(
                SkipReason.AUTH_BACKOFF,
                "auth backoff active",
                remaining_ms=self.auth_backoff.remaining_ms(ctx.now_ms),
            )

        ctx.ttl_s = self.execution.order_ttl_s
        if is_buy:
            skip = await self._check_market(ctx)
            if skip:
                return skip

        priced = await self._discover_price(ctx)
        if isinstance(priced, MirrorResult):
            return priced
        exec_price, meta = priced

        trade_notional = trade.price * trade.size
        if not trade_notional > 0:
            return MirrorResult.skipped(SkipReason.INVALID_TRADE_NOTIONAL, "invalid trade notional")
        if not ctx.weight > 0:
            return MirrorResult.skipped(SkipReason.NON_POSITIVE_WEIGHT, "non-positive weight", weight=ctx.weight)

        desired = min(trade_notional * self.sizing.copy_ratio * ctx.weight, self.sizing.max_usdc_per_trade)
        if not desired > 0:
            return MirrorResult.skipped(SkipReason.NON_POSITIVE_NOTIONAL, "non-positive desired notional")
        skip = self._check_daily_cap(desired, ctx.now_ms)
        if skip:
            return skip

        shares = min(desired / exec_price, self.sizing.max_shares_per_trade)
        if trade.side == OrderSide.SELL:
            held = await self._held_size(ctx)
            if isinstance(held, MirrorResult):
                return held
            shares = min(shares, held)

        shares = round_size(shares, count_decimals(meta.min_order_size))
        min_size = to_finite_float(meta.min_order_size) or 0.0
        if shares <= 0 or shares < min_size:
            return MirrorResult.skipped(
                SkipReason.SIZE_BELOW_MIN, "size below min", shares=shares, min_order_size=meta.min_order_size
            )

        limit_price = round_price_to_tick(
            limit_price_with_slippage(exec_price, self.sizing.slippage_pct, trade.side),
            meta.tick_size,
            trade.side,
        )
        if not limit_price > 0:
            return MirrorResult.skipped(SkipReason.INVALID_LIMIT_PRICE, "invalid limit price", limit_price=limit_price)

        notional = shares * limit_price
        skip = self._check_daily_cap(notional, ctx.now_ms)
        if skip:
            return skip

        self._debug_trace(ctx, exec_price, meta, shares, limit_price)

        if not self.live:
            self.store.add_daily_notional(utc_day_key(ctx.now_ms), notional)
            return MirrorResult(
                status=MirrorStatus.DRY_RUN,
                reason="dry run",
                reason_code=SkipReason.DRY_RUN,
                notional=notional,
                size=shares,
                limit_price=limit_price,
                token_id=ctx.token_id,
            )

        preflight = None
        if is_buy:
            preflight = await self._run_preflight(notional)
            if not preflight.ok:
                return self._preflight_result(preflight, ctx.now_ms)

        request = OrderRequest(
            token_id=ctx.token_id,
            side=trade.side,
            price=limit_price,
            size=shares,
            order_type=OrderType.GTD,
            tick_size=meta.tick_size,
            neg_risk=meta.neg_risk,
            expiration_s=compute_gtd_expiration_s(
                ctx.now_ms // 1000, ctx.ttl_s, self.execution.expiration_safety_s
            ),
        )
        return await self._submit(ctx, request, notional, preflight)

    # =============================================================================
    # GATES
    # =============================================================================

    async def _resolve_token(self, ctx: _Context) -> Optional[MirrorResult]:
        trade = ctx.trade
        token_ids = self.store.get_condition_token_ids(trade.condition_id)
        if not token_ids:
            fetched = await guarded_call(self.markets.get_market_metadata, trade.condition_id, policy=self.retry_policy)
            if fetched.ok:
                ctx.market = fetched.value
            else:
                ctx.market_error = fetched
            token_ids = parse_clob_token_ids((ctx.market or {}).get("clobTokenIds"))
            if not token_ids:
                token_ids = await self._clob_token_ids(trade.condition_id)
            if token_ids:
                self.store.set_condition_token_ids(trade.condition_id, token_ids)

        token_id = token_ids[trade.outcome_index] if token_ids and trade.outcome_index < len(token_ids) else None
        ctx.token_id = token_id
        summary = {
            "condition_id": trade.condition_id,
            "outcome_index": trade.outcome_index,
            "token_id": token_id,
            "token_ids_count": len(token_ids or []),
            "token_ids_sample": list(token_ids or [])[:3],
        }
        if ctx.market_error is not None:
            summary["lookup_error"] = ctx.market_error.message

        code = None
        if not token_id:
            code, reason = SkipReason.TOKEN_UNRESOLVED, "missing token id"
        elif token_id == trade.condition_id or is_bytes32_hex(token_id):
            code, reason = SkipReason.TOKEN_LOOKS_LIKE_CONDITION, "token id looks like a condition id"
        elif is_address(token_id):
            code, reason = SkipReason.TOKEN_LOOKS_LIKE_ADDRESS, "token id looks like an address"
        if code is None:
            return None
        log_event(logger, logging.WARNING, "trade skipped", {"reason": reason, **summary})
        return MirrorResult.skipped(code, reason, **summary)

    async def _clob_token_ids(self, condition_id: str) -> List[str]:
        """Secondary source: the CLOB market's ``tokens`` list."""
        fetched = await guarded_call(self.markets.get_clob_market, condition_id, policy=self.retry_policy)
        if not fetched.ok or not fetched.value:
            return []
        tokens = fetched.value.get("tokens") or []
        return [str(t.get("token_id")) for t in tokens if isinstance(t, dict) and t.get("token_id")]

    async def _check_market(self, ctx: _Context) -> Optional[MirrorResult]:
        condition_id = ctx.trade.condition_id
        if ctx.market is None and ctx.market_error is None:
            fetched = await guarded_call(self.markets.get_market_metadata, condition_id, policy=self.retry_policy)
            if fetched.ok:
                ctx.market = fetched.value
            else:
                ctx.market_error = fetched
        clob = await guarded_call(self.markets.get_clob_market, condition_id, policy=self.retry_policy)
        clob_market = clob.value if clob.ok else None

        check = self.market_guard.check(ctx.market, clob_market, ctx.now_ms)
        if not check.ok:
            details = dict(check.details)
            if ctx.market_error is not None:
                details["lookup_error"] = ctx.market_error.message
            return MirrorResult.skipped(check.code, check.reason, **details)
        ctx.ttl_s = check.ttl_s
        ctx.diagnostics["market_end_ms"] = check.end_ms
        return None

    async def _discover_price(self, ctx: _Context):
        """Executable price and book granularity, or a skip result."""
        side = ctx.trade.side
        book_result = await guarded_call(self.markets.get_order_book, ctx.token_id, policy=self.retry_policy)
        book: Optional[OrderBook] = book_result.value if book_result.ok else None

        exec_price = book.executable_price(side) if book is not None else None
        if exec_price is None or not exec_price > 0:
            fallback = await guarded_call(
                self.markets.get_indicative_price, ctx.token_id, side, policy=self.retry_policy
            )
            exec_price = to_finite_float(fallback.value) if fallback.ok else None
            if exec_price is None or not exec_price > 0:
                details = {"token_id": ctx.token_id, "side": side.value}
                if not book_result.ok:
                    details["book_error"] = book_result.message
                if not fallback.ok:
                    details["price_error"] = fallback.message
                log_event(logger, logging.WARNING, "trade skipped", {"reason": "invalid exec price", **details})
                return MirrorResult.skipped(SkipReason.PRICE_UNAVAILABLE, "invalid exec price", **details)

        meta = self._order_book_meta(ctx.token_id, book, ctx.now_ms)
        if meta is None:
            return MirrorResult.skipped(
                SkipReason.ORDERBOOK_META_UNAVAILABLE, "order book metadata unavailable", token_id=ctx.token_id
            )
        return exec_price, meta

    def _order_book_meta(self, token_id: str, book: Optional[OrderBook], now_ms: int) -> Optional[OrderBookMeta]:
        cached = self.store.get_token_meta(token_id)
        if cached is not None and now_ms - cached.updated_at_ms < META_TTL_MS:
            return cached
        if book is not None and book.tick_size and book.min_order_size:
            meta = OrderBookMeta(
                token_id=token_id,
                tick_size=str(book.tick_size),
                min_order_size=str(book.min_order_size),
                neg_risk=bool(book.neg_risk),
                updated_at_ms=now_ms,
            )
            self.store.set_token_meta(meta)
            return meta
        # stale entry or None
        return cached

    def _check_daily_cap(self, notional: float, now_ms: int) -> Optional[MirrorResult]:
        cap = self.sizing.max_daily_usdc
        if cap is None:
            return None
        day = utc_day_key(now_ms)
        spent = self.store.get_daily_notional(day)
        if spent + notional > cap:
            return MirrorResult.skipped(
                SkipReason.DAILY_CAP, "daily cap reached", day=day, spent=spent, notional=notional, cap=cap
            )
        return None

    async def _held_size(self, ctx: _Context):
        """Fresh held size for the exact (condition, outcome), or a result."""
        trade = ctx.trade
        owner = allowance_owner(
            self.execution.signature_type, self.execution.my_address, self.execution.funder_address
        )
        fetched = await guarded_call(self.signals.fetch_positions, owner, trade.condition_id, policy=self.retry_policy)
        if not fetched.ok:
            return MirrorResult(
                status=MirrorStatus.FAILED,
                reason="position lookup failed",
                reason_code=SkipReason.PREFLIGHT_ERROR,
                error_message=fetched.message,
                error_status=fetched.status,
                error_body=fetched.body,
            )
        held = sum(
            max(0.0, p.size)
            for p in fetched.value
            if p.condition_id == trade.condition_id and p.outcome_index == trade.outcome_index
        )
        if held <= 0:
            return MirrorResult.skipped(SkipReason.NO_POSITION, "no position to sell", owner=owner)
        return held

    async def _run_preflight(self, notional: float) -> PreflightResult:
        result = await self.preflight.run(notional)
        if result.code == SkipReason.ALLOWANCE_TOO_LOW and self.allowance_guard is not None:
            check = await self.allowance_guard.ensure_allowance(notional, reason="pre-trade")
            if check.ok:
                result = await self.preflight.run(notional)
        return result

    def _preflight_result(self, preflight: PreflightResult, now_ms: int) -> MirrorResult:
        diagnostics = preflight.diagnostics()
        if preflight.code == SkipReason.PREFLIGHT_ERROR:
            error = preflight.error
            if error is not None and error.kind == ErrorKind.AUTH:
                self.auth_backoff.trip(error.message, now_ms, {"source": "preflight"})
            return MirrorResult(
                status=MirrorStatus.FAILED,
                reason="preflight failed",
                reason_code=SkipReason.PREFLIGHT_ERROR,
                error_message=error.message if error else preflight.reason,
                error_status=error.status if error else None,
                error_body=error.body if error else None,
                diagnostics=diagnostics,
            )
        if preflight.code in (SkipReason.ALLOWANCE_TOO_LOW, SkipReason.INSUFFICIENT_COLLATERAL):
            self.balance_breaker.trip(preflight.code.value, now_ms, diagnostics)
        return MirrorResult(
            status=MirrorStatus.SKIPPED,
            reason=preflight.reason,
            reason_code=preflight.code,
            diagnostics=diagnostics,
        )

    # =============================================================================
    # SUBMISSION
    # =============================================================================

    async def _submit(
        self,
        ctx: _Context,
        request: OrderRequest,
        notional: float,
        preflight: Optional[PreflightResult],
    ) -> MirrorResult:
        diagnostics = preflight.diagnostics() if preflight is not None else {}
        outcome = await guarded_call(self.gateway.submit_order, request, policy=self.retry_policy)

        rejected_message = None
        if outcome.ok and outcome.value.get("success") is False:
            rejected_message = _response_message(outcome.value)
        fallback_message = outcome.message if not outcome.ok else rejected_message
        if fallback_message and _wants_gtc_fallback(fallback_message):
            log_event(logger, logging.WARNING, "GTD order failed, falling back to GTC", {"error": fallback_message})
            request = OrderRequest(
                token_id=request.token_id,
                side=request.side,
                price=request.price,
                size=request.size,
                order_type=OrderType.GTC,
                tick_size=request.tick_size,
                neg_risk=request.neg_risk,
            )
            outcome = await guarded_call(self.gateway.submit_order, request, policy=self.retry_policy)

        base = {
            "notional": notional,
            "size": request.size,
            "limit_price": request.price,
            "order_type": request.order_type,
            "token_id": request.token_id,
        }

        if not outcome.ok:
            self._trip_on_error(outcome, diagnostics, ctx.now_ms)
            return MirrorResult(
                status=MirrorStatus.FAILED,
                reason="order failed",
                reason_code=SkipReason.ORDER_ERROR,
                error_message=outcome.message,
                error_status=outcome.status,
                error_body=outcome.body,
                diagnostics=diagnostics,
                **base,
            )

        response = outcome.value or {}
        if response.get("success") is False:
            message = _response_message(response)
            self._trip_on_error(CallResult.failure(RuntimeError(message)), diagnostics, ctx.now_ms)
            return MirrorResult(
                status=MirrorStatus.FAILED,
                reason="order rejected",
                reason_code=SkipReason.ORDER_REJECTED,
                error_message=message,
                error_status=response.get("status"),
                error_body=response,
                diagnostics=diagnostics,
                **base,
            )

        self.store.add_daily_notional(utc_day_key(ctx.now_ms), notional)
        return MirrorResult(
            status=MirrorStatus.PLACED,
            reason="order placed",
            reason_code=SkipReason.ORDER_PLACED,
            order_id=_order_id(response),
            **base,
        )

    def _trip_on_error(self, failure: CallResult, diagnostics: Dict[str, Any], now_ms: int):
        if failure.kind == ErrorKind.AUTH:
            self.auth_backoff.trip(failure.message, now_ms, {"status": failure.status})
        elif failure.kind == ErrorKind.BALANCE:
            self.balance_breaker.trip(failure.message, now_ms, diagnostics)

    def _debug_trace(self, ctx: _Context, exec_price: float, meta: OrderBookMeta, shares: float, limit_price: float):
        if self._debug_logged >= DEBUG_LOG_LIMIT or not logger.isEnabledFor(logging.DEBUG):
            return
        self._debug_logged += 1
        log_event(
            logger,
            logging.DEBUG,
            "trade debug",
            {
                **ctx.trade.snippet(),
                "token_id": ctx.token_id,
                "exec_price": exec_price,
                "tick_size": meta.tick_size,
                "min_order_size": meta.min_order_size,
                "shares": shares,
                "limit_price": limit_price,
                "ttl_s": ctx.ttl_s,
            },
        )
