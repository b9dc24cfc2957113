"""
Mirror Orchestrator Engine.
Main orchestration class that wires the collaborators together and runs the
polling, selection, allowance, liveness and status loops.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from api_clients import PolymarketAPIClient
from api_clients.base import (
    ApprovalClient,
    MarketSnapshotProvider,
    SignalSource,
    Trade,
    TradingGateway,
    close_all,
)
from db.persistence import StateStore
from mirroring.engine import MirrorEngine
from mirroring.models import MirrorResult, MirrorStatus, SkipReason
from mirroring.normalizer import build_trade_key, normalize_trade
from risk_management.allowance import AllowanceCheckResult, AllowanceGuard
from trader_identification import LeaderSelection, LeaderSelector, ScoringEngine
from utils.limiter import ConcurrencyLimiter
from utils.logging_config import log_event, log_mirror_result
from utils.money import format_usdc_micro
from utils.retry import RetryPolicy
from utils.timeparse import now_ms, utc_day_key
from utils.validation import same_address

from .config import MirrorConfig
from .cursor import MirrorCursorStore


logger = logging.getLogger(__name__)

DEDUP_CACHE_LIMIT = 50_000
MIN_LOOP_INTERVAL_MS = 60_000


class GeoblockedError(RuntimeError):
    """This host is not allowed to trade."""


@dataclass
class FetchedTrades:
    """New trades of one wallet, oldest first, and the newest timestamp seen."""
    wallet: str
    trades: List[Trade] = field(default_factory=list)
    newest_ms: int = 0
    poisoned: int = 0


@dataclass
class OrchestratorState:
    """Mutable run state of the orchestrator."""
    is_running: bool = False
    trading_enabled: bool = True
    started_ms: int = 0
    last_signal_ms: int = 0
    last_order_ms: int = 0
    poll_count: int = 0
    skipped_while_disabled: int = 0
    last_disabled_log_ms: int = 0
    selection_count: int = 0


class MirrorOrchestrator:
    """
    Main orchestrator for the mirror bot.

    Coordinates the pipeline:
    1. Signal polling → paginated trade fetch per monitored wallet
    2. Normalization and dedup → one decision per unique signal key
    3. Selection → copy weight per wallet from the leader state machine
    4. Mirror engine → place, simulate or skip
    5. Persistence → processed keys, cursors, daily notional
    """

    def __init__(
        self,
        config: MirrorConfig,
        signals: Optional[SignalSource] = None,
        markets: Optional[MarketSnapshotProvider] = None,
        gateway: Optional[TradingGateway] = None,
        approvals: Optional[ApprovalClient] = None,
        store: Optional[StateStore] = None,
        cursor_store: Optional[MirrorCursorStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize the orchestrator; live collaborators are built in ``initialize``."""
        self.config = config
        self.state = OrchestratorState()
        self.retry_policy = retry_policy or RetryPolicy()

        self.api_client: Optional[PolymarketAPIClient] = None
        if signals is None or markets is None:
            self.api_client = PolymarketAPIClient(clob_host=config.clob_host, retry_policy=self.retry_policy)
        self.signals = signals or self.api_client
        self.markets = markets or self.api_client
        self.gateway = gateway
        self.approvals = approvals

        self.store = store or StateStore(config.state_db_path)
        self.cursors = cursor_store or MirrorCursorStore(
            config.polling.cursor_file,
            config.polling.bootstrap_lookback_ms,
            config.polling.start_from_now,
        )
        self.wallets = [w.lower() for w in config.target_wallets]
        self.scoring = ScoringEngine(
            self.signals, self.store, config.selection, concurrency=config.polling.poll_concurrency
        )
        self.selector = LeaderSelector(self.store, config.selection)
        self.selection = LeaderSelection(mode=config.selection.follow_mode, leaders=[], reason="not-evaluated")
        self.poll_limiter = ConcurrencyLimiter(config.polling.poll_concurrency)

        self.allowance_guard: Optional[AllowanceGuard] = None
        self.engine: Optional[MirrorEngine] = None

        self.counters: Counter = Counter()
        self._seen_keys: Set[str] = set()
        self._poll_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    # =========================================================================
    # Startup & Shutdown
    # =========================================================================

    def _build_live_collaborators(self):
        """Trading gateway and approval client for live mode (needs the live extra)."""
        if self.config.dry_run:
            return
        if self.gateway is None:
            from api_clients.polymarket.trading import PyClobTradingGateway

            self.gateway = PyClobTradingGateway(
                host=self.config.clob_host,
                private_key=self.config.private_key,
                chain_id=self.config.chain_id,
                signature_type=self.config.signature_type,
                funder=self.config.funder_address,
            )
        if self.approvals is None and self.config.rpc_url:
            from api_clients.polymarket.approval import Web3ApprovalClient

            self.approvals = Web3ApprovalClient(
                rpc_url=self.config.rpc_url,
                chain_id=self.config.chain_id,
                private_key=self.config.private_key,
            )

    def _build_engine(self):
        self.allowance_guard = AllowanceGuard(self.config.allowance, self.approvals)
        self.engine = MirrorEngine(
            markets=self.markets,
            signals=self.signals,
            store=self.store,
            gateway=self.gateway,
            sizing=self.config.sizing,
            execution=self.config.execution,
            filters=self.config.filters,
            allowance_guard=self.allowance_guard,
            retry_policy=self.retry_policy,
        )

    async def check_geoblock(self):
        """Refuse to start when the exchange reports this host as blocked."""
        probe = getattr(self.markets, "check_geoblock", None)
        if probe is None:
            return
        try:
            result = await probe()
        except Exception as e:
            logger.warning(f"Geoblock check failed: {e}")
            return
        if result.blocked:
            log_event(logger, logging.ERROR, "geoblocked", {"reason": result.reason or "not eligible"})
            raise GeoblockedError(result.reason or "geoblocked")
        logger.info("Geoblock check passed")

    async def initialize(self):
        """Load cursors, build collaborators and run the startup checks."""
        self.cursors.load()
        for wallet in self.wallets:
            self.cursors.ensure_cursor(wallet)

        await self.check_geoblock()
        self._build_live_collaborators()
        self._build_engine()

        log_event(
            logger,
            logging.INFO,
            "trading identity",
            {
                "my_address": self.config.my_address,
                "funder_address": self.config.funder_address,
                "signature_type": self.config.signature_type,
                "dry_run": self.config.dry_run,
            },
        )

        startup = await self.allowance_guard.ensure_allowance(reason="startup")
        if not self.config.dry_run:
            log_event(logger, logging.INFO, "allowance status", startup.to_dict())
        self.update_trading_enabled(startup)

    async def close(self):
        """Release sessions and the state store."""
        await close_all(self.api_client)
        self.store.close()

    # =========================================================================
    # Selection
    # =========================================================================

    async def evaluate_selection(self, now: Optional[int] = None) -> LeaderSelection:
        """Re-score the monitored wallets and run the selection state machine."""
        now = now_ms() if now is None else now
        scores = await self.scoring.compute_scores(self.wallets, now)
        self.selection = self.selector.select(scores, now)
        self.state.selection_count += 1
        log_event(logger, logging.INFO, "selection updated", self.selection.to_dict())
        return self.selection

    # =========================================================================
    # Signal Polling
    # =========================================================================

    async def fetch_new_trades(self, wallet: str) -> FetchedTrades:
        """
        Pull trades newer than the wallet's last-seen mark, oldest first.

        Pages are fetched newest-first until a page reaches already-seen
        history (judged by the oldest valid row) or comes back short. Malformed
        rows get a poison key so they are not re-examined on every poll. Rows
        whose proxy wallet is not the polled wallet are skipped.
        """
        polling = self.config.polling
        stored = self.store.get_last_seen(wallet)
        last_seen = max(stored, self.cursors.ensure_cursor(wallet))
        if stored == 0 and last_seen > 0:
            self.store.set_last_seen(wallet, last_seen)

        fetched = FetchedTrades(wallet=wallet, newest_ms=last_seen)
        for page in range(polling.trade_max_pages):
            rows = await self.signals.fetch_trades(
                wallet, limit=polling.trade_page_size, offset=page * polling.trade_page_size
            )
            if not rows:
                break
            oldest_ms = None
            for row in rows:
                signal = normalize_trade(row, wallet)
                if not signal.ok:
                    self._poison(signal)
                    fetched.poisoned += 1
                    continue
                trade = signal.trade
                oldest_ms = trade.timestamp_ms if oldest_ms is None else min(oldest_ms, trade.timestamp_ms)
                if not same_address(trade.proxy_wallet, wallet):
                    self.counters["not-target-wallet"] += 1
                    log_event(
                        logger,
                        logging.WARNING,
                        "trade skipped",
                        {"reason": "not-target-wallet", "wallet": wallet, "proxy_wallet": trade.proxy_wallet},
                    )
                    continue
                if trade.timestamp_ms > last_seen:
                    fetched.trades.append(trade)
                    fetched.newest_ms = max(fetched.newest_ms, trade.timestamp_ms)
                else:
                    self.counters["too-old"] += 1

            if oldest_ms is None or oldest_ms <= last_seen:
                break
            if len(rows) < polling.trade_page_size:
                break

        fetched.trades.sort(key=lambda t: t.timestamp_ms)
        return fetched

    def _poison(self, signal):
        key = signal.poison_key
        if not key or self.store.has_processed(key):
            return
        self.store.mark_processed(
            key,
            SkipReason.INVALID_TRADE.value,
            status=MirrorStatus.SKIPPED.value,
            result={"missing": signal.missing},
        )
        log_event(logger, logging.WARNING, "trade skipped", {"reason": "missing required trade fields", "key": key, "missing": signal.missing})

    def _claim(self, key: str) -> bool:
        """True the first time a signal key is seen (memory, then the store)."""
        if key in self._seen_keys:
            self.counters["duplicate"] += 1
            return False
        self._seen_keys.add(key)
        if len(self._seen_keys) > DEDUP_CACHE_LIMIT:
            self._seen_keys.clear()
        if self.store.has_processed(key):
            self.counters["duplicate"] += 1
            return False
        return True

    async def process_signal(self, trade: Trade, key: str, now: Optional[int] = None) -> Optional[MirrorResult]:
        """
        Run one new signal through the engine exactly once.

        Returns:
            The MirrorResult, or None when the signal was not mirrored
            (duplicate, or its wallet is not currently followed)
        """
        weight = self.selection.weight_for(trade.proxy_wallet)
        if not weight > 0:
            self.counters["not-selected"] += 1
            logger.debug(f"Signal {key} ignored: wallet {trade.proxy_wallet} not selected")
            return None
        if not self._claim(key):
            return None

        if not self.state.trading_enabled:
            self.state.skipped_while_disabled += 1
            result = MirrorResult.skipped(SkipReason.TRADING_DISABLED, "trading disabled (allowance too low)")
            self.store.mark_processed(key, result.reason_code.value, status=result.status.value, result=result.to_dict())
            return result

        try:
            result = await self.engine.decide(trade, weight, now)
        except Exception as e:
            logger.error(f"Mirror decision failed for {key}: {e}", exc_info=True)
            result = MirrorResult(
                status=MirrorStatus.FAILED,
                reason="mirror failed",
                reason_code=SkipReason.ORDER_ERROR,
                error_message=str(e),
            )

        self.store.mark_processed(key, result.reason_code.value, status=result.status.value, result=result.to_dict())
        self.counters[result.status.value] += 1
        log_mirror_result(logger, {**trade.snippet(), "key": key}, result.to_dict())

        wall = now_ms()
        if result.status != MirrorStatus.SKIPPED:
            self.state.last_signal_ms = wall
        if result.is_terminal_success:
            self.store.set_last_trade(key, trade.timestamp_ms)
            self.state.last_order_ms = wall
        if (
            result.status == MirrorStatus.SKIPPED
            and result.reason_code == SkipReason.ALLOWANCE_TOO_LOW
            and not self.config.dry_run
        ):
            self.state.trading_enabled = False
            logger.warning("Trading disabled until the allowance check passes")
        return result

    async def poll_wallet(self, wallet: str) -> List[MirrorResult]:
        """Fetch and process one wallet; errors are logged, never raised."""
        results: List[MirrorResult] = []
        try:
            fetched = await self.fetch_new_trades(wallet)
            for trade in fetched.trades:
                result = await self.process_signal(trade, build_trade_key(trade))
                if result is not None:
                    results.append(result)
            if fetched.trades:
                self.store.set_last_seen(wallet, fetched.newest_ms)
                self.cursors.update_cursor(wallet, fetched.newest_ms)
        except Exception as e:
            log_event(logger, logging.ERROR, "trade poll failed", {"wallet": wallet, "error": str(e)})
        return results

    async def poll_once(self) -> List[MirrorResult]:
        """One pass over every monitored wallet; overlapping passes are skipped."""
        if self._poll_lock.locked():
            logger.debug("Poll already in progress, skipping")
            return []
        async with self._poll_lock:
            self.state.poll_count += 1
            self.state.skipped_while_disabled = 0
            per_wallet = await self.poll_limiter.map(self.poll_wallet, self.wallets)
            try:
                self.cursors.persist()
            except OSError as e:
                logger.error(f"Failed to persist cursors: {e}")
            self._log_disabled_skips()
        return [r for results in per_wallet for r in results]

    def _log_disabled_skips(self):
        now = now_ms()
        if self.state.skipped_while_disabled and now - self.state.last_disabled_log_ms > self.allowance_interval_ms:
            log_event(
                logger,
                logging.WARNING,
                "trading disabled: skipping order placement",
                {"reason": "allowance too low", "skipped_trades": self.state.skipped_while_disabled},
            )
            self.state.last_disabled_log_ms = now

    # =========================================================================
    # Allowance, Liveness & Status
    # =========================================================================

    @property
    def allowance_interval_ms(self) -> int:
        return max(MIN_LOOP_INTERVAL_MS, self.config.polling.poll_ms)

    @property
    def liveness_interval_ms(self) -> int:
        return max(MIN_LOOP_INTERVAL_MS, self.config.polling.poll_ms * 5)

    @property
    def status_interval_ms(self) -> int:
        return max(MIN_LOOP_INTERVAL_MS, self.config.polling.status_log_ms, self.config.selection.eval_interval_ms)

    def update_trading_enabled(self, check: AllowanceCheckResult):
        if self.config.dry_run:
            self.state.trading_enabled = True
            return
        was_enabled = self.state.trading_enabled
        self.state.trading_enabled = check.ok
        if check.ok and not was_enabled:
            log_event(
                logger,
                logging.INFO,
                "USDC allowance sufficient; trading re-enabled",
                {"owner": check.owner, "allowance": format_usdc_micro(check.allowance_micro)},
            )

    async def check_allowance(self) -> AllowanceCheckResult:
        check = await self.allowance_guard.ensure_allowance(reason="interval")
        self.update_trading_enabled(check)
        return check

    def check_liveness(self, now: Optional[int] = None) -> bool:
        """False (and an error log) when signals arrive but no order succeeds."""
        now = now_ms() if now is None else now
        window = self.config.polling.no_order_liveness_ms
        last_signal = self.state.last_signal_ms
        last_order = self.state.last_order_ms
        if not self.state.trading_enabled or not last_signal or not window:
            return True
        if now - last_signal <= window and now - last_order > window:
            log_event(
                logger,
                logging.ERROR,
                "liveness watchdog: signals received but no successful order",
                {
                    "last_signal_ms": last_signal,
                    "last_order_ms": last_order or None,
                    "last_signal_age_ms": now - last_signal,
                    "last_order_age_ms": now - last_order if last_order else None,
                    "window_ms": window,
                },
            )
            return False
        return True

    def get_status(self) -> Dict[str, Any]:
        """Get orchestrator status summary."""
        now = now_ms()
        return {
            "is_running": self.state.is_running,
            "dry_run": self.config.dry_run,
            "mode": self.config.selection.follow_mode.value,
            "trading_enabled": self.state.trading_enabled,
            "selection": self.selection.to_dict(),
            "store": self.store.get_status_summary(utc_day_key(now)),
            "engine": self.engine.stats() if self.engine else {},
            "counters": dict(self.counters),
            "cursors": self.cursors.to_dict(),
            "poll_count": self.state.poll_count,
            "uptime_s": (now - self.state.started_ms) / 1000 if self.state.started_ms else 0,
        }

    def log_status(self):
        leader = self.store.get_leader_state()
        last_trade = self.store.get_last_trade()
        log_event(
            logger,
            logging.INFO,
            "status",
            {
                "mode": self.selection.mode.value,
                "current_leader": leader.get("current_leader"),
                "leader_since_ms": leader.get("since_ms"),
                "last_trade_key": last_trade.get("trade_key"),
                "last_trade_timestamp_ms": last_trade.get("timestamp_ms"),
                "trading_enabled": self.state.trading_enabled,
                "counters": dict(self.counters),
            },
        )

    # =========================================================================
    # Loops
    # =========================================================================

    async def _every(self, interval_ms: int, name: str, action):
        """Run ``action`` every ``interval_ms`` until stopped; errors are logged."""
        while self.state.is_running:
            try:
                await asyncio.sleep(interval_ms / 1000)
                result = action()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{name} error: {e}")

    async def _liveness_tick(self):
        if not self.check_liveness():
            await self.poll_once()

    async def run_once(self) -> List[MirrorResult]:
        """Initialize, evaluate selection and poll a single time."""
        await self.initialize()
        await self.evaluate_selection()
        return await self.poll_once()

    async def run(self):
        """Run until ``stop`` is called or the task is cancelled."""
        await self.initialize()
        self.state.is_running = True
        self.state.started_ms = now_ms()
        self._stop_event = asyncio.Event()

        await self.evaluate_selection()
        await self.poll_once()

        self._tasks = [
            asyncio.create_task(self._every(self.config.polling.poll_ms, "Poll", self.poll_once)),
            asyncio.create_task(self._every(self.config.selection.eval_interval_ms, "Selection", self.evaluate_selection)),
            asyncio.create_task(self._every(self.allowance_interval_ms, "Allowance check", self.check_allowance)),
            asyncio.create_task(self._every(self.liveness_interval_ms, "Liveness", self._liveness_tick)),
            asyncio.create_task(self._every(self.status_interval_ms, "Status", self.log_status)),
        ]
        logger.info(
            f"Mirror orchestrator started: {len(self.wallets)} wallet(s), "
            f"mode={self.config.selection.follow_mode.value}, dry_run={self.config.dry_run}"
        )
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        """Stop the loops and release resources."""
        self.state.is_running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("Mirror orchestrator stopped")
