"""
Trader scoring.

Scores every monitored wallet from its recent closed positions (realized ROI
and PnL) with a penalty for open losses. Wallets with too few closed positions
are ineligible and get the sentinel score.
"""

import logging
from typing import Dict, List, Optional

from api_clients.base import SignalSource, TraderScore
from utils.limiter import ConcurrencyLimiter
from utils.logging_config import log_event
from utils.timeparse import now_ms as current_ms

from .selection import SelectionConfig


logger = logging.getLogger(__name__)

INELIGIBLE_SCORE = -1e9
DAY_MS = 24 * 60 * 60 * 1000


class ScoringEngine:
    """Computes and records a TraderScore per wallet."""

    def __init__(
        self,
        signals: SignalSource,
        store=None,
        config: Optional[SelectionConfig] = None,
        concurrency: int = 4,
        display_names: Optional[Dict[str, str]] = None,
    ):
        self.signals = signals
        self.store = store
        self.config = config or SelectionConfig()
        self.limiter = ConcurrencyLimiter(concurrency)
        self.display_names = display_names or {}

    async def compute_scores(self, wallets: List[str], now_ms: Optional[int] = None) -> List[TraderScore]:
        """Score all wallets; one wallet's failure never affects the others."""
        now = current_ms() if now_ms is None else now_ms
        scores = await self.limiter.map(lambda wallet: self._score_wallet(wallet, now), wallets)
        if self.store is not None:
            for score in scores:
                self.store.save_score(score)
        return scores

    async def _score_wallet(self, wallet: str, now: int) -> TraderScore:
        try:
            return await self.score_wallet(wallet, now)
        except Exception as e:
            log_event(logger, logging.WARNING, "score computation failed", {"wallet": wallet, "error": str(e)})
            return TraderScore(
                wallet=wallet,
                score=INELIGIBLE_SCORE,
                eligible=False,
                timestamp_ms=now,
                display_name=self.display_names.get(wallet),
                error=str(e),
            )

    async def score_wallet(self, wallet: str, now: int) -> TraderScore:
        """Score a single wallet; fetch errors propagate."""
        cutoff = now - self.config.lookback_days * DAY_MS
        closed = await self.signals.fetch_closed_positions(wallet, since_ms=cutoff)
        recent = [p for p in closed if p.timestamp_ms is not None and p.timestamp_ms >= cutoff]

        realized = sum(p.realized_pnl for p in recent)
        total_bought = sum(p.total_bought for p in recent)
        sample = len(recent)
        roi = realized / max(1.0, total_bought)

        positions = await self.signals.fetch_positions(wallet)
        open_pnl = sum(p.cash_pnl or 0.0 for p in positions)

        eligible = sample >= self.config.min_closed_sample
        if eligible:
            score = roi * 100 + realized / 1000 - self.config.open_pnl_penalty_factor * max(0.0, -open_pnl)
        else:
            score = INELIGIBLE_SCORE

        return TraderScore(
            wallet=wallet,
            score=score,
            realized_pnl_sum=realized,
            total_bought_sum=total_bought,
            roi=roi,
            sample=sample,
            open_pnl_sum=open_pnl,
            eligible=eligible,
            timestamp_ms=now,
            display_name=self.display_names.get(wallet),
        )
