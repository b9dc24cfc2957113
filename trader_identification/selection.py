"""
Leader selection state machine.

Turns the latest trader scores into a copy weight per monitored wallet. In
LEADER mode one wallet is followed with weight 1 and switches are damped by a
minimum hold time, a score margin and per-wallet cooldowns; stop conditions
override the hold time. In TOPK mode the best K wallets share the weight in
proportion to their positive scores.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from api_clients.base import TraderScore
from utils.timeparse import now_ms as current_ms
from utils.validation import same_address


logger = logging.getLogger(__name__)


class FollowMode(Enum):
    """How many wallets are followed at once."""
    LEADER = "LEADER"
    TOPK = "TOPK"


@dataclass
class SelectionConfig:
    """Scoring and selection parameters."""

    follow_mode: FollowMode = FollowMode.LEADER
    topk: int = 2
    lookback_days: int = 30
    min_closed_sample: int = 5
    eval_interval_ms: int = 600_000
    min_hold_ms: int = 1_800_000
    switch_margin_pct: float = 0.1
    stop_score: float = -0.01
    stop_realized_pnl: float = -10.0
    cooldown_ms: int = 3_600_000
    open_pnl_penalty_factor: float = 0.25


@dataclass
class LeaderWeight:
    """One followed wallet and its share of the copy weight."""
    wallet: str
    score: float
    weight: float
    display_name: Optional[str] = None


@dataclass
class LeaderSelection:
    """Result of one selection tick."""

    mode: FollowMode
    leaders: List[LeaderWeight] = field(default_factory=list)
    reason: str = ""
    leader: Optional[TraderScore] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def weight_for(self, wallet: str) -> float:
        """Copy weight for ``wallet``; 0 when it is not selected."""
        for entry in self.leaders:
            if same_address(entry.wallet, wallet):
                return entry.weight
        return 0.0

    @property
    def wallets(self) -> List[str]:
        return [entry.wallet for entry in self.leaders]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "reason": self.reason,
            "leaders": [
                {"wallet": e.wallet, "display_name": e.display_name, "score": e.score, "weight": e.weight}
                for e in self.leaders
            ],
            "meta": dict(self.meta),
        }


def _single(score: TraderScore) -> List[LeaderWeight]:
    return [LeaderWeight(wallet=score.wallet, score=score.score, weight=1.0, display_name=score.display_name)]


class LeaderSelector:
    """
    Re-evaluates the followed wallets on every scoring tick.

    State (current leader, previous top-K set, switch-away timestamps) lives in
    the state store so selection survives restarts.
    """

    def __init__(self, store, config: Optional[SelectionConfig] = None):
        self.store = store
        self.config = config or SelectionConfig()

    def in_cooldown(self, wallet: str, now: int) -> bool:
        last = self.store.get_cooldown(wallet)
        return last > 0 and now - last < self.config.cooldown_ms

    def select(self, scores: List[TraderScore], now_ms: Optional[int] = None) -> LeaderSelection:
        """Select the followed wallet(s) from fresh scores."""
        now = current_ms() if now_ms is None else now_ms
        # sorted() is stable, ties keep encounter order
        candidates = sorted((s for s in scores if s.eligible), key=lambda s: s.score, reverse=True)

        if self.config.follow_mode == FollowMode.TOPK:
            selection = self._select_topk(candidates, now)
        else:
            selection = self._select_leader(candidates, now)

        logger.debug(f"Selection tick: mode={selection.mode.value} reason={selection.reason} leaders={selection.wallets}")
        return selection

    # =============================================================================
    # LEADER MODE
    # =============================================================================

    def _switch_to(self, best: TraderScore, previous: Optional[str], now: int, reason: str, meta: Dict[str, Any]) -> LeaderSelection:
        if previous:
            self.store.set_cooldown(previous, now)
        self.store.set_leader_state(best.wallet, now)
        logger.info(f"Leader switch: {previous or '-'} -> {best.wallet} ({reason}, score={best.score:.4f})")
        return LeaderSelection(
            mode=FollowMode.LEADER,
            leaders=_single(best),
            reason=reason,
            leader=best,
            meta={**meta, "previous_leader": previous},
        )

    def _select_leader(self, candidates: List[TraderScore], now: int) -> LeaderSelection:
        best = next((s for s in candidates if not self.in_cooldown(s.wallet, now)), None)
        state = self.store.get_leader_state()
        current = state.get("current_leader")
        since = int(state.get("since_ms") or 0)

        if not current:
            if best is None:
                return LeaderSelection(mode=FollowMode.LEADER, reason="no-eligible-leader")
            return self._switch_to(best, None, now, "initial-leader", {})

        current_score = next((s for s in candidates if same_address(s.wallet, current)), None)
        if current_score is None:
            if best is not None:
                return self._switch_to(best, current, now, "leader-ineligible-replaced", {})
            self.store.set_cooldown(current, now)
            self.store.set_leader_state(None, None)
            logger.warning(f"Leader {current} is no longer eligible and has no replacement")
            return LeaderSelection(
                mode=FollowMode.LEADER,
                reason="leader-ineligible",
                meta={"previous_leader": current},
            )

        stop_reason = None
        if current_score.score < self.config.stop_score:
            stop_reason = "stop-score-triggered"
        elif current_score.realized_pnl_sum < self.config.stop_realized_pnl:
            stop_reason = "stop-realized-pnl-triggered"

        hold_ms = now - since
        meta = {"hold_ms": hold_ms}
        challenger = best if best is not None and not same_address(best.wallet, current) else None

        if challenger is not None:
            if stop_reason:
                return self._switch_to(challenger, current, now, stop_reason, meta)
            threshold = current_score.score * (1 + self.config.switch_margin_pct)
            if hold_ms >= self.config.min_hold_ms:
                if challenger.score >= threshold:
                    return self._switch_to(challenger, current, now, "score-improvement", meta)
            elif challenger.score > current_score.score:
                return self._hold(current_score, "min-hold-not-satisfied", meta)

        if stop_reason:
            logger.warning(f"Stop condition for leader {current} ({stop_reason}) but no replacement is available")
            return self._hold(current_score, "stop-condition-no-replacement", {**meta, "stop": stop_reason})
        return self._hold(current_score, "holding-leader", meta)

    def _hold(self, current: TraderScore, reason: str, meta: Dict[str, Any]) -> LeaderSelection:
        return LeaderSelection(
            mode=FollowMode.LEADER,
            leaders=_single(current),
            reason=reason,
            leader=current,
            meta=meta,
        )

    # =============================================================================
    # TOP-K MODE
    # =============================================================================

    def _select_topk(self, candidates: List[TraderScore], now: int) -> LeaderSelection:
        previous = self.store.get_topk_state()
        available = [s for s in candidates if not self.in_cooldown(s.wallet, now)]
        selected = available[:max(1, self.config.topk)]
        positive = [s for s in selected if s.score > 0]
        total = sum(s.score for s in positive)

        if not positive or total <= 0:
            reason = "no-positive-scores" if selected else "no-eligible-leaders"
            for wallet in previous:
                self.store.set_cooldown(wallet, now)
            self.store.set_topk_state([])
            if previous:
                logger.warning(f"Top-K selection emptied ({reason}); cooling down {previous}")
            return LeaderSelection(mode=FollowMode.TOPK, reason=reason, meta={"previous": previous})

        leaders = [
            LeaderWeight(wallet=s.wallet, score=s.score, weight=s.score / total, display_name=s.display_name)
            for s in positive
        ]
        chosen = [entry.wallet for entry in leaders]
        dropped = [w for w in previous if not any(same_address(w, c) for c in chosen)]
        for wallet in dropped:
            self.store.set_cooldown(wallet, now)
        self.store.set_topk_state(chosen)
        if dropped:
            logger.info(f"Top-K dropped {dropped}")

        return LeaderSelection(
            mode=FollowMode.TOPK,
            leaders=leaders,
            reason="topk-selected",
            meta={"previous": previous, "dropped": dropped},
        )
