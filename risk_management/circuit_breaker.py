"""
Time-window circuit breakers for the mirror engine.

BalanceCooldownBreaker suppresses BUY mirrors for a fixed window after a
balance or allowance failure. AuthBackoff suppresses live submissions after
an authentication failure so a broken credential is not hammered.

Usage:
    breaker = BalanceCooldownBreaker(cooldown_ms=900_000)
    breaker.trip("not enough balance", now_ms)
    if breaker.is_open(now_ms):
        ...
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from utils.logging_config import log_risk_event
from utils.timeparse import now_ms as current_ms


logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Suppressing


@dataclass
class TimedBreaker:
    """Opens for ``window_ms`` each time it is tripped."""

    name: str
    window_ms: int
    open_until_ms: int = 0
    last_reason: Optional[str] = None
    trip_count: int = 0

    def state(self, now_ms: Optional[int] = None) -> CircuitState:
        now = current_ms() if now_ms is None else now_ms
        return CircuitState.OPEN if now < self.open_until_ms else CircuitState.CLOSED

    def is_open(self, now_ms: Optional[int] = None) -> bool:
        return self.state(now_ms) == CircuitState.OPEN

    def remaining_ms(self, now_ms: Optional[int] = None) -> int:
        now = current_ms() if now_ms is None else now_ms
        return max(0, self.open_until_ms - now)

    def trip(self, reason: str, now_ms: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        """Open the breaker; re-tripping extends the window from now."""
        now = current_ms() if now_ms is None else now_ms
        self.open_until_ms = max(self.open_until_ms, now + self.window_ms)
        self.last_reason = reason
        self.trip_count += 1
        log_risk_event(
            logger,
            self.name,
            {"reason": reason, "open_until_ms": self.open_until_ms, **(details or {})},
            f"suppressing for {self.window_ms // 1000}s",
        )

    def reset(self):
        self.open_until_ms = 0
        self.last_reason = None

    def to_dict(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        return {
            "state": self.state(now_ms).value,
            "remaining_ms": self.remaining_ms(now_ms),
            "last_reason": self.last_reason,
            "trip_count": self.trip_count,
        }


class BalanceCooldownBreaker(TimedBreaker):
    """Skips BUY mirrors after a balance or allowance failure."""

    def __init__(self, cooldown_ms: int = 900_000):
        super().__init__(name="balance-cooldown", window_ms=cooldown_ms)


class AuthBackoff(TimedBreaker):
    """Skips live submissions after an authentication failure."""

    def __init__(self, backoff_ms: int = 300_000):
        super().__init__(name="auth-backoff", window_ms=backoff_ms)
