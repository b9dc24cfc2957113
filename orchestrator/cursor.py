"""
Per-wallet poll cursors persisted to a small JSON file.

On a fresh start each wallet begins ``bootstrap_lookback_ms`` in the past, or at
"now" when ``start_from_now`` is set (existing cursors are then discarded).
"""

import json
import logging
import os
from typing import Dict, Optional

from utils.timeparse import now_ms, to_ms


logger = logging.getLogger(__name__)

CURSOR_FILE_VERSION = 1


class MirrorCursorStore:
    """Newest processed trade timestamp per monitored wallet."""

    def __init__(self, path: str, bootstrap_lookback_ms: int = 60_000, start_from_now: bool = False):
        self.path = path
        self.bootstrap_lookback_ms = bootstrap_lookback_ms
        self.start_from_now = start_from_now
        self._cursors: Dict[str, int] = {}
        self._dirty = False
        self._base_ms = 0

    @property
    def base_ms(self) -> int:
        return self._base_ms

    def load(self, now: Optional[int] = None):
        now = now_ms() if now is None else now
        self._base_ms = now if self.start_from_now else max(0, now - self.bootstrap_lookback_ms)
        self._cursors.clear()
        if self.start_from_now:
            self._dirty = True
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Cursor file {self.path} unreadable, starting from bootstrap window: {e}")
            return

        cursors = payload.get("cursors") if isinstance(payload, dict) else None
        if not isinstance(cursors, dict):
            return
        for wallet, value in cursors.items():
            ts = to_ms(value)
            if ts is not None:
                self._cursors[wallet.lower()] = ts
        logger.info(f"Loaded {len(self._cursors)} cursor(s) from {self.path}")

    def ensure_cursor(self, wallet: str) -> int:
        """Existing cursor, or the base timestamp (recorded) for a new wallet."""
        key = wallet.lower()
        if key not in self._cursors:
            self._cursors[key] = self._base_ms
            self._dirty = True
        return self._cursors[key]

    def get_cursor(self, wallet: str) -> Optional[int]:
        return self._cursors.get(wallet.lower())

    def update_cursor(self, wallet: str, timestamp_ms) -> bool:
        """Advance the cursor; it never moves backwards."""
        ts = to_ms(timestamp_ms)
        if ts is None:
            return False
        key = wallet.lower()
        if ts > self._cursors.get(key, self._base_ms):
            self._cursors[key] = ts
            self._dirty = True
            return True
        return False

    def persist(self, now: Optional[int] = None) -> bool:
        """Write the file when cursors changed (temp file, then atomic replace)."""
        if not self._dirty:
            return False
        payload = {
            "version": CURSOR_FILE_VERSION,
            "updatedAtMs": now_ms() if now is None else now,
            "cursors": dict(self._cursors),
        }
        resolved = os.path.abspath(self.path)
        os.makedirs(os.path.dirname(resolved), exist_ok=True)
        tmp_path = f"{resolved}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, resolved)
        self._dirty = False
        return True

    def to_dict(self) -> Dict[str, int]:
        return dict(self._cursors)
