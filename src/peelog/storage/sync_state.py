"""Persisted sync cursors and cached analytics responses."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from peelog.core.schemas import SyncCursor, format_timestamp, parse_timestamp
from peelog.storage.database import Database

logger = logging.getLogger(__name__)


class SyncCursorStore:
    """Last successful full and incremental sync instants per user."""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, user_id: str) -> SyncCursor:
        row = await self.db.fetch_one("SELECT * FROM sync_cursors WHERE user_id = ?", (user_id,))
        if row is None:
            return SyncCursor(user_id=user_id)
        return SyncCursor(
            user_id=user_id,
            last_full_sync_at=parse_timestamp(row["last_full_sync_at"]) if row["last_full_sync_at"] else None,
            last_incremental_sync_at=(
                parse_timestamp(row["last_incremental_sync_at"]) if row["last_incremental_sync_at"] else None
            ),
        )

    async def record(self, user_id: str, at: datetime, full: bool) -> SyncCursor:
        column = "last_full_sync_at" if full else "last_incremental_sync_at"
        await self.db.execute(
            f"""INSERT INTO sync_cursors (user_id, {column}) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET {column} = excluded.{column}""",
            (user_id, format_timestamp(at)),
        )
        return await self.get(user_id)

    async def clear(self, user_id: str) -> None:
        await self.db.execute("DELETE FROM sync_cursors WHERE user_id = ?", (user_id,))


@dataclass
class CachedPayload:
    payload: Any
    fetched_at: datetime


class AnalyticsCache:
    """Last remote analytics response per (user, metric, range)."""

    def __init__(self, db: Database):
        self.db = db

    async def load(self, user_id: str, metric: str, range_key: str) -> CachedPayload | None:
        row = await self.db.fetch_one(
            "SELECT payload, fetched_at FROM analytics_cache WHERE user_id = ? AND metric = ? AND range_key = ?",
            (user_id, metric, range_key),
        )
        if row is None:
            return None
        try:
            return CachedPayload(json.loads(row["payload"]), parse_timestamp(row["fetched_at"]))
        except (TypeError, ValueError) as e:
            # A bad cache entry only costs a refetch
            logger.warning(f"Dropping unreadable analytics cache {metric}/{range_key}: {e}")
            await self.invalidate(user_id, metric, range_key)
            return None

    async def store(self, user_id: str, metric: str, range_key: str, payload: Any, fetched_at: datetime) -> None:
        await self.db.upsert(
            "analytics_cache",
            {
                "user_id": user_id,
                "metric": metric,
                "range_key": range_key,
                "payload": json.dumps(payload),
                "fetched_at": format_timestamp(fetched_at),
            },
        )

    async def invalidate(self, user_id: str, metric: str | None = None, range_key: str | None = None) -> None:
        query = "DELETE FROM analytics_cache WHERE user_id = ?"
        params: tuple[Any, ...] = (user_id,)
        if metric is not None:
            query += " AND metric = ?"
            params += (metric,)
        if range_key is not None:
            query += " AND range_key = ?"
            params += (range_key,)
        await self.db.execute(query, params)
