"""
SQLite Persistence Layer for the mirror bot.

Holds everything that must survive a restart: processed signal keys (the
idempotency record), daily notional per UTC day, per-wallet switch-away
timestamps (cooldowns), leader / top-K selection state, score history, and
cached market metadata (condition tokens, order book granularity).
"""

import sqlite3
import json
import threading
import time
from typing import Any, Dict, List, Optional, Set
from contextlib import contextmanager
import logging

from api_clients.base import OrderBookMeta, TraderScore


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class StateStore:
    """
    SQLite state manager.

    Handles:
    - Idempotency keys with the reason each signal was settled
    - Daily notional accumulators
    - Cooldown (last switched away) timestamps
    - Leader and top-K selection state
    - Score audit trail
    - Condition token and order book metadata caches

    Hot reads (processed keys, token caches, last seen) are served from
    in-memory caches loaded at startup. Writes are last-writer-wins per key.
    """

    def __init__(self, db_path: str = "mirror_state.db"):
        """Initialize persistence layer."""
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")

        self._processed_cache: Set[str] = set()
        self._condition_cache: Dict[str, List[str]] = {}
        self._token_meta_cache: Dict[str, OrderBookMeta] = {}
        self._last_seen_cache: Dict[str, int] = {}

        self._ensure_database()
        self._load_caches()

    def _ensure_database(self):
        """Create tables if they don't exist."""
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA_SCRIPT)

    @contextmanager
    def _get_connection(self):
        """Serialized access to the connection; commits on success."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def _load_caches(self):
        with self._get_connection() as conn:
            for row in conn.execute("SELECT condition_id, token_ids FROM condition_tokens"):
                try:
                    token_ids = json.loads(row["token_ids"])
                except ValueError:
                    continue
                if isinstance(token_ids, list):
                    self._condition_cache[row["condition_id"]] = [str(t) for t in token_ids]

            for row in conn.execute("SELECT * FROM token_meta"):
                self._token_meta_cache[row["token_id"]] = OrderBookMeta(
                    token_id=row["token_id"],
                    tick_size=row["tick_size"],
                    min_order_size=row["min_order_size"],
                    neg_risk=bool(row["neg_risk"]),
                    updated_at_ms=row["updated_at_ms"],
                )

            for row in conn.execute("SELECT wallet, last_seen_ms FROM last_seen"):
                self._last_seen_cache[row["wallet"]] = row["last_seen_ms"]

    # =============================================================================
    # IDEMPOTENCY
    # =============================================================================

    def has_processed(self, key: str) -> bool:
        """True when a signal key was already settled."""
        if key in self._processed_cache:
            return True
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT trade_key FROM processed_trades WHERE trade_key = ?", (key,)
            ).fetchone()
        if row:
            self._processed_cache.add(key)
        return row is not None

    def mark_processed(
        self,
        key: str,
        reason: str,
        status: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ):
        """Record a settled signal with its reason and, optionally, the full result."""
        self._processed_cache.add(key)
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO processed_trades (
                    trade_key, processed_at_ms, reason, status, result_json
                ) VALUES (?, ?, ?, ?, ?)
            """,
                (
                    key,
                    _now_ms(),
                    reason,
                    status,
                    json.dumps(result, default=str) if result is not None else None,
                ),
            )

    def get_processed(self, key: str) -> Optional[Dict[str, Any]]:
        """Audit record of a processed key."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM processed_trades WHERE trade_key = ?", (key,)
            ).fetchone()
        if not row:
            return None
        record = dict(row)
        if record.get("result_json"):
            record["result"] = json.loads(record.pop("result_json"))
        return record

    # =============================================================================
    # DAILY NOTIONAL
    # =============================================================================

    def get_daily_notional(self, day: str) -> float:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT notional FROM daily_notional WHERE day = ?", (day,)
            ).fetchone()
        return float(row["notional"]) if row else 0.0

    def add_daily_notional(self, day: str, amount: float) -> float:
        """Accumulate notional for a UTC day; returns the new total."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO daily_notional (day, notional) VALUES (?, ?)
                ON CONFLICT(day) DO UPDATE SET notional = notional + excluded.notional
            """,
                (day, amount),
            )
            row = conn.execute(
                "SELECT notional FROM daily_notional WHERE day = ?", (day,)
            ).fetchone()
        return float(row["notional"])

    # =============================================================================
    # COOLDOWNS AND SELECTION STATE
    # =============================================================================

    def get_cooldown(self, wallet: str) -> int:
        """Last time ``wallet`` was switched away from (0 when never)."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT last_switched_away_ms FROM switches WHERE wallet = ?", (wallet,)
            ).fetchone()
        return int(row["last_switched_away_ms"]) if row else 0

    def set_cooldown(self, wallet: str, timestamp_ms: int):
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO switches (wallet, last_switched_away_ms) VALUES (?, ?)",
                (wallet, timestamp_ms),
            )

    def get_leader_state(self) -> Dict[str, Any]:
        """Current leader and since when; empty when no leader is held."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT current_leader, since_ms FROM leader_state WHERE id = 1"
            ).fetchone()
        if not row or not row["current_leader"]:
            return {}
        return {"current_leader": row["current_leader"], "since_ms": row["since_ms"]}

    def set_leader_state(self, wallet: Optional[str], since_ms: Optional[int]):
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO leader_state (id, current_leader, since_ms) VALUES (1, ?, ?)",
                (wallet, since_ms),
            )

    def get_topk_state(self) -> List[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT leaders_json FROM topk_state WHERE id = 1").fetchone()
        if not row or not row["leaders_json"]:
            return []
        try:
            leaders = json.loads(row["leaders_json"])
        except ValueError:
            return []
        return [str(w) for w in leaders] if isinstance(leaders, list) else []

    def set_topk_state(self, wallets: List[str]):
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO topk_state (id, leaders_json, updated_at_ms) VALUES (1, ?, ?)",
                (json.dumps(list(wallets)), _now_ms()),
            )

    def save_score(self, score: TraderScore):
        """Append a score to the audit trail."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO scores (
                    wallet, score, realized_pnl_sum, total_bought_sum, roi,
                    sample, open_pnl_sum, eligible, timestamp_ms
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    score.wallet,
                    score.score,
                    score.realized_pnl_sum,
                    score.total_bought_sum,
                    score.roi,
                    score.sample,
                    score.open_pnl_sum,
                    1 if score.eligible else 0,
                    score.timestamp_ms,
                ),
            )

    def get_latest_scores(self) -> List[Dict[str, Any]]:
        """Most recent score row per wallet."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT s.* FROM scores s
                JOIN (
                    SELECT wallet, MAX(id) AS max_id FROM scores GROUP BY wallet
                ) latest ON latest.max_id = s.id
                ORDER BY s.score DESC
            """
            ).fetchall()
        return [dict(row) for row in rows]

    # =============================================================================
    # MARKET METADATA CACHES
    # =============================================================================

    def get_condition_token_ids(self, condition_id: str) -> Optional[List[str]]:
        return self._condition_cache.get(condition_id)

    def set_condition_token_ids(self, condition_id: str, token_ids: List[str]):
        self._condition_cache[condition_id] = list(token_ids)
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO condition_tokens (condition_id, token_ids, updated_at_ms) VALUES (?, ?, ?)",
                (condition_id, json.dumps(list(token_ids)), _now_ms()),
            )

    def get_token_meta(self, token_id: str) -> Optional[OrderBookMeta]:
        return self._token_meta_cache.get(token_id)

    def set_token_meta(self, meta: OrderBookMeta):
        self._token_meta_cache[meta.token_id] = meta
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO token_meta (
                    token_id, tick_size, min_order_size, neg_risk, updated_at_ms
                ) VALUES (?, ?, ?, ?, ?)
            """,
                (meta.token_id, meta.tick_size, meta.min_order_size, 1 if meta.neg_risk else 0, meta.updated_at_ms),
            )

    # =============================================================================
    # POLLING PROGRESS
    # =============================================================================

    def get_last_seen(self, wallet: str) -> int:
        return self._last_seen_cache.get(wallet, 0)

    def set_last_seen(self, wallet: str, timestamp_ms: int):
        self._last_seen_cache[wallet] = timestamp_ms
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO last_seen (wallet, last_seen_ms) VALUES (?, ?)",
                (wallet, timestamp_ms),
            )

    def get_last_trade(self) -> Dict[str, Any]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT trade_key, timestamp_ms FROM last_trade WHERE id = 1").fetchone()
        return dict(row) if row else {}

    def set_last_trade(self, key: str, timestamp_ms: int):
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO last_trade (id, trade_key, timestamp_ms) VALUES (1, ?, ?)",
                (key, timestamp_ms),
            )

    def get_status_summary(self, day: str) -> Dict[str, Any]:
        """Snapshot for the status command and the periodic status log."""
        with self._get_connection() as conn:
            processed = conn.execute("SELECT COUNT(*) AS n FROM processed_trades").fetchone()["n"]
            by_status = conn.execute(
                "SELECT COALESCE(status, 'unknown') AS status, COUNT(*) AS n FROM processed_trades GROUP BY status"
            ).fetchall()
        return {
            "leader": self.get_leader_state(),
            "topk": self.get_topk_state(),
            "daily_notional": self.get_daily_notional(day),
            "day": day,
            "processed_signals": processed,
            "processed_by_status": {row["status"]: row["n"] for row in by_status},
            "last_trade": self.get_last_trade(),
        }


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

_SCHEMA_SCRIPT = """
-- Settled signal keys
CREATE TABLE IF NOT EXISTS processed_trades (
    trade_key TEXT PRIMARY KEY,
    processed_at_ms INTEGER NOT NULL,
    reason TEXT,
    status TEXT,
    result_json TEXT
);

-- Notional mirrored per UTC day
CREATE TABLE IF NOT EXISTS daily_notional (
    day TEXT PRIMARY KEY,
    notional REAL NOT NULL
);

-- Last time each wallet was switched away from
CREATE TABLE IF NOT EXISTS switches (
    wallet TEXT PRIMARY KEY,
    last_switched_away_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS leader_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    current_leader TEXT,
    since_ms INTEGER
);

CREATE TABLE IF NOT EXISTS topk_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    leaders_json TEXT,
    updated_at_ms INTEGER
);

-- Score audit trail
CREATE TABLE IF NOT EXISTS scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet TEXT NOT NULL,
    score REAL NOT NULL,
    realized_pnl_sum REAL NOT NULL,
    total_bought_sum REAL NOT NULL,
    roi REAL NOT NULL,
    sample INTEGER NOT NULL,
    open_pnl_sum REAL NOT NULL,
    eligible INTEGER NOT NULL,
    timestamp_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS condition_tokens (
    condition_id TEXT PRIMARY KEY,
    token_ids TEXT NOT NULL,
    updated_at_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS token_meta (
    token_id TEXT PRIMARY KEY,
    tick_size TEXT NOT NULL,
    min_order_size TEXT NOT NULL,
    neg_risk INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS last_seen (
    wallet TEXT PRIMARY KEY,
    last_seen_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS last_trade (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    trade_key TEXT,
    timestamp_ms INTEGER
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_scores_wallet ON scores(wallet);
CREATE INDEX IF NOT EXISTS idx_processed_status ON processed_trades(status);
"""
