"""Snapshot cache: scope key → JSON snapshot with TTL and version stamp.

Writes are version-conditional: a snapshot is only stored if its
source_version is >= the version already cached (or the cached row expired).
A write that loses the race raises StaleScopeError so the caller can log it.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from chainpulse.clock import iso, utcnow
from chainpulse.exceptions import StaleScopeError, StoreError
from chainpulse.models import AggregateSnapshot, snapshot_from_dict

_SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshot_cache (
    cache_key      TEXT PRIMARY KEY,
    source_version INTEGER NOT NULL,
    data           TEXT NOT NULL,
    computed_at    TEXT NOT NULL,
    expires_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_expires ON snapshot_cache(expires_at);
"""


class SnapshotCache:
    """Async SQLite-backed snapshot cache."""

    def __init__(
        self,
        db_path: str,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        except Exception as e:
            raise StoreError(f"Failed to open snapshot cache: {e}") from e

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "SnapshotCache":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def set_if_newer(self, snapshot: AggregateSnapshot) -> None:
        """
        Store `snapshot` under its scope unless a newer version is cached.

        Raises:
            StaleScopeError: A live entry with a higher source_version exists.
        """
        assert self._conn is not None
        now = self._clock()
        expires_at = iso(now + timedelta(seconds=self.ttl_seconds))

        async with self._write_lock:
            async with self._conn.execute(
                """
                INSERT INTO snapshot_cache (cache_key, source_version, data, computed_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    source_version = excluded.source_version,
                    data = excluded.data,
                    computed_at = excluded.computed_at,
                    expires_at = excluded.expires_at
                WHERE excluded.source_version >= snapshot_cache.source_version
                   OR snapshot_cache.expires_at <= ?
                """,
                (
                    snapshot.scope,
                    snapshot.source_version,
                    json.dumps(snapshot.to_dict()),
                    snapshot.computed_at,
                    expires_at,
                    iso(now),
                ),
            ) as cursor:
                written = cursor.rowcount == 1
            await self._conn.commit()

        if not written:
            current = await self.current_version(snapshot.scope)
            raise StaleScopeError(snapshot.scope, snapshot.source_version, current or 0)

    async def get(self, scope: str) -> AggregateSnapshot | None:
        """Cached snapshot for `scope`, or None if missing or expired."""
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT data FROM snapshot_cache WHERE cache_key = ? AND expires_at > ?",
            (scope, iso(self._clock())),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return snapshot_from_dict(json.loads(row["data"]))

    async def current_version(self, scope: str) -> int | None:
        """source_version of the live entry for `scope`."""
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT source_version FROM snapshot_cache WHERE cache_key = ? AND expires_at > ?",
            (scope, iso(self._clock())),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["source_version"]) if row else None

    async def keys(self) -> list[str]:
        assert self._conn is not None
        keys = []
        async with self._conn.execute(
            "SELECT cache_key FROM snapshot_cache WHERE expires_at > ? ORDER BY cache_key",
            (iso(self._clock()),),
        ) as cursor:
            async for row in cursor:
                keys.append(row["cache_key"])
        return keys

    async def prune(self) -> int:
        """Evict expired entries. Returns rows deleted."""
        assert self._conn is not None
        async with self._write_lock:
            async with self._conn.execute(
                "DELETE FROM snapshot_cache WHERE expires_at <= ?",
                (iso(self._clock()),),
            ) as cursor:
                deleted = cursor.rowcount
            await self._conn.commit()
        return deleted
