from __future__ import annotations

import copy
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional


log = logging.getLogger("auxcord")

USERS = "users"
SONOS_SESSIONS = "sonos_sessions"
SPOTIFY_SESSIONS = "spotify_sessions"
TABLES = (USERS, SONOS_SESSIONS, SPOTIFY_SESSIONS)


class SessionStore:
    """Record store for hosts and their provider sessions.

    Rows are plain dicts keyed by an auto-incrementing ``id``; session rows
    also carry the owning ``user_id``. Every write happens under one lock and
    is flushed to ``path`` when one is configured, so concurrent writers
    (host actions, background loops, token refreshes) never overwrite each
    other with a stale snapshot.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._tables: dict[str, list[dict]] = {name: [] for name in TABLES}
        self._next_ids: dict[str, int] = {name: 1 for name in TABLES}
        self.load()

    def load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
        except json.JSONDecodeError:
            log.warning("Session store %s is invalid; starting empty", self._path)
            return
        if not isinstance(raw, dict):
            return
        with self._lock:
            for name in TABLES:
                rows = raw.get(name)
                if not isinstance(rows, list):
                    continue
                valid = [row for row in rows if isinstance(row, dict) and isinstance(row.get("id"), int)]
                self._tables[name] = sorted(valid, key=lambda row: row["id"])
                highest = max((row["id"] for row in valid), default=0)
                next_ids = raw.get("next_ids") if isinstance(raw.get("next_ids"), dict) else {}
                try:
                    stored_next = int(next_ids.get(name, 0))
                except (TypeError, ValueError):
                    stored_next = 0
                self._next_ids[name] = max(highest + 1, stored_next)

    def _save_locked(self) -> None:
        if not self._path:
            return
        payload: dict[str, Any] = {name: self._tables[name] for name in TABLES}
        payload["next_ids"] = dict(self._next_ids)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    def _insert_locked(self, table: str, record: dict) -> dict:
        row = dict(record)
        row["id"] = self._next_ids[table]
        row.setdefault("created_at", int(time.time()))
        self._next_ids[table] += 1
        self._tables[table].append(row)
        return row

    # Users

    def create_user(self) -> int:
        with self._lock:
            row = self._insert_locked(USERS, {})
            self._save_locked()
            return row["id"]

    def user_ids(self) -> list[int]:
        with self._lock:
            return [row["id"] for row in self._tables[USERS]]

    def delete_user(self, user_id: int) -> None:
        with self._lock:
            self._tables[USERS] = [row for row in self._tables[USERS] if row["id"] != user_id]
            self._save_locked()

    # Session rows

    def get(self, table: str, user_id: int) -> Optional[dict]:
        with self._lock:
            for row in self._tables[table]:
                if row.get("user_id") == user_id:
                    return copy.deepcopy(row)
        return None

    def insert(self, table: str, user_id: int, record: dict) -> dict:
        with self._lock:
            row = self._insert_locked(table, {**record, "user_id": user_id})
            self._save_locked()
            return copy.deepcopy(row)

    def update(self, table: str, user_id: int, changes: dict) -> int:
        """Apply ``changes`` to every row owned by ``user_id``; returns rows touched."""
        touched = 0
        with self._lock:
            for row in self._tables[table]:
                if row.get("user_id") != user_id:
                    continue
                row.update({k: v for k, v in changes.items() if k not in {"id", "user_id"}})
                row["updated_at"] = int(time.time())
                touched += 1
            if touched:
                self._save_locked()
        return touched

    def delete(self, table: str, user_id: int) -> None:
        with self._lock:
            self._tables[table] = [row for row in self._tables[table] if row.get("user_id") != user_id]
            self._save_locked()

    def delete_row(self, table: str, row_id: int) -> None:
        with self._lock:
            self._tables[table] = [row for row in self._tables[table] if row["id"] != row_id]
            self._save_locked()

    def find(self, table: str, **filters: Any) -> list[dict]:
        with self._lock:
            matches = [
                copy.deepcopy(row)
                for row in self._tables[table]
                if all(row.get(key) == value for key, value in filters.items())
            ]
        return sorted(matches, key=lambda row: row["id"])
