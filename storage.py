"""Per-identity persisted state — SQLite key/value store plus one alarm per identity.

Values are JSON documents. Every call opens its own connection so the
store can be used from worker threads via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def ensure_schema(path: str) -> None:
    """Create state tables if they don't exist."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                instance TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (instance, key)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS alarms (
                instance TEXT PRIMARY KEY,
                fire_at REAL NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class StateDB:
    """SQLite file shared by all identities; hands out per-identity views."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        ensure_schema(self.path)

    def for_instance(self, instance_id: str) -> InstanceStorage:
        return InstanceStorage(self, instance_id)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    # --- Sync primitives (run in a worker thread) ---

    def _get(self, instance: str, key: str) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM kv WHERE instance = ? AND key = ?",
                (instance, key),
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def _put(self, instance: str, key: str, value: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO kv (instance, key, value) VALUES (?, ?, ?) "
                "ON CONFLICT(instance, key) DO UPDATE SET value = excluded.value",
                (instance, key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def _get_alarm(self, instance: str) -> float | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT fire_at FROM alarms WHERE instance = ?", (instance,),
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def _set_alarm(self, instance: str, fire_at: float) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO alarms (instance, fire_at) VALUES (?, ?) "
                "ON CONFLICT(instance) DO UPDATE SET fire_at = excluded.fire_at",
                (instance, fire_at),
            )
            conn.commit()
        finally:
            conn.close()

    def _delete_alarm(self, instance: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM alarms WHERE instance = ?", (instance,))
            conn.commit()
        finally:
            conn.close()


class InstanceStorage:
    """Key/value and alarm access scoped to one identity."""

    def __init__(self, db: StateDB, instance_id: str):
        self.db = db
        self.instance_id = instance_id

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await asyncio.to_thread(self.db._get, self.instance_id, key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Corrupt value for %s/%s, using default", self.instance_id, key)
            return default

    async def put(self, key: str, value: Any) -> None:
        raw = json.dumps(value, ensure_ascii=False)
        await asyncio.to_thread(self.db._put, self.instance_id, key, raw)

    async def get_alarm(self) -> datetime | None:
        ts = await asyncio.to_thread(self.db._get_alarm, self.instance_id)
        if ts is None:
            return None
        return datetime.fromtimestamp(ts, tz=UTC)

    async def set_alarm(self, when: datetime) -> None:
        await asyncio.to_thread(self.db._set_alarm, self.instance_id, when.timestamp())

    async def delete_alarm(self) -> None:
        await asyncio.to_thread(self.db._delete_alarm, self.instance_id)
