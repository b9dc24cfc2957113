"""
Mirror Bot Orchestrator.
Coordinates signal polling, leader selection and the mirror engine.
"""

from .config import (
    ConfigError,
    MirrorConfig,
    PollingConfig,
)
from .cursor import MirrorCursorStore
from .engine import (
    FetchedTrades,
    GeoblockedError,
    MirrorOrchestrator,
    OrchestratorState,
)

__all__ = [
    # Configuration classes
    "ConfigError",
    "MirrorConfig",
    "PollingConfig",
    # Runtime
    "MirrorCursorStore",
    "FetchedTrades",
    "GeoblockedError",
    "MirrorOrchestrator",
    "OrchestratorState",
]
