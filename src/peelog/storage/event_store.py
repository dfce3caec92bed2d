"""Local event log, owned per user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from peelog.core.schemas import Event, MigrationState, SyncState, format_timestamp, utcnow
from peelog.storage.database import Database, Transaction

logger = logging.getLogger(__name__)

_VISIBLE = f"sync_state != '{SyncState.PENDING_DELETE.value}'"


def _owner_clause(owner_id: str | None) -> tuple[str, tuple[Any, ...]]:
    # No active user means only unowned events are visible
    if owner_id is None:
        return "owner_id IS NULL", ()
    return "owner_id = ?", (owner_id,)


def _in_clause(ids: list[str]) -> str:
    return ", ".join("?" * len(ids))


@dataclass
class MergeResult:
    """Effect of applying one batch of remote events."""

    inserted: int = 0
    updated: int = 0
    removed: int = 0
    preserved: int = 0

    @property
    def changed(self) -> int:
        return self.inserted + self.updated + self.removed


class EventStore:
    """Append-only event log with owner-scoped queries.

    Events are never edited in place. Deleting an event that was already
    uploaded marks it ``pending_delete`` so sync can propagate the deletion;
    events that never left the device are removed outright.
    """

    def __init__(self, db: Database):
        self.db = db

    async def add(self, event: Event) -> Event:
        await self.db.insert("events", event.to_db_dict())
        logger.debug(f"Event {event.id} added for owner {event.owner_id}")
        return event

    async def get(self, event_id: str) -> Event | None:
        row = await self.db.fetch_one("SELECT * FROM events WHERE id = ?", (event_id,))
        return Event.from_db_row(row) if row else None

    async def list_events(
        self,
        owner_id: str | None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[Event]:
        """Visible events for an owner, optionally bounded to [start, end]."""
        owner_sql, params = _owner_clause(owner_id)
        clauses = [owner_sql, _VISIBLE]
        if start is not None:
            clauses.append("timestamp >= ?")
            params += (format_timestamp(start),)
        if end is not None:
            clauses.append("timestamp <= ?")
            params += (format_timestamp(end),)

        query = f"SELECT * FROM events WHERE {' AND '.join(clauses)} ORDER BY timestamp {'DESC' if newest_first else 'ASC'}"
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)

        rows = await self.db.fetch_all(query, params)
        return [Event.from_db_row(row) for row in rows]

    async def list_with_location(self, owner_id: str | None) -> list[Event]:
        owner_sql, params = _owner_clause(owner_id)
        rows = await self.db.fetch_all(
            f"""SELECT * FROM events
                WHERE {owner_sql} AND {_VISIBLE}
                  AND latitude IS NOT NULL AND longitude IS NOT NULL
                ORDER BY timestamp DESC""",
            params,
        )
        return [Event.from_db_row(row) for row in rows]

    async def count(self, owner_id: str | None) -> int:
        owner_sql, params = _owner_clause(owner_id)
        row = await self.db.fetch_one(
            f"SELECT COUNT(*) AS total FROM events WHERE {owner_sql} AND {_VISIBLE}", params
        )
        return row["total"] if row else 0

    async def delete(self, event_id: str) -> Event | None:
        """Delete an event by explicit user action.

        Returns the event as it was, or None if no such event exists.
        """
        async with self.db.transaction() as tx:
            row = await tx.fetch_one("SELECT * FROM events WHERE id = ?", (event_id,))
            if row is None:
                return None
            event = Event.from_db_row(row)

            if event.sync_state is SyncState.PENDING_UPLOAD:
                await tx.execute("DELETE FROM events WHERE id = ?", (event_id,))
            else:
                await tx.execute(
                    "UPDATE events SET sync_state = ?, updated_at = ? WHERE id = ?",
                    (SyncState.PENDING_DELETE.value, format_timestamp(utcnow()), event_id),
                )
        logger.info(f"Event {event_id} deleted ({event.sync_state.value})")
        return event

    async def purge_owner(self, owner_id: str) -> int:
        """Remove every local event of an owner (account deletion cascade)."""
        removed = await self.db.execute_rowcount("DELETE FROM events WHERE owner_id = ?", (owner_id,))
        logger.info(f"Purged {removed} events for owner {owner_id}")
        return removed

    async def pending_uploads(self, owner_id: str, limit: int | None = None) -> list[Event]:
        query = "SELECT * FROM events WHERE owner_id = ? AND sync_state = ? ORDER BY timestamp ASC"
        params: tuple[Any, ...] = (owner_id, SyncState.PENDING_UPLOAD.value)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        rows = await self.db.fetch_all(query, params)
        return [Event.from_db_row(row) for row in rows]

    async def pending_deletes(self, owner_id: str) -> list[str]:
        rows = await self.db.fetch_all(
            "SELECT id FROM events WHERE owner_id = ? AND sync_state = ?",
            (owner_id, SyncState.PENDING_DELETE.value),
        )
        return [row["id"] for row in rows]

    async def mark_synced(self, event_ids: Iterable[str]) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        return await self.db.execute_rowcount(
            f"UPDATE events SET sync_state = ? WHERE sync_state = ? AND id IN ({_in_clause(ids)})",
            (SyncState.SYNCED.value, SyncState.PENDING_UPLOAD.value, *ids),
        )

    async def finalize_deletes(self, event_ids: Iterable[str]) -> int:
        """Drop tombstones whose deletion the remote service acknowledged."""
        ids = list(event_ids)
        if not ids:
            return 0
        return await self.db.execute_rowcount(
            f"DELETE FROM events WHERE sync_state = ? AND id IN ({_in_clause(ids)})",
            (SyncState.PENDING_DELETE.value, *ids),
        )

    async def merge_remote(
        self,
        owner_id: str,
        events: list[Event],
        deleted_ids: Iterable[str] = (),
        authoritative: bool = False,
    ) -> MergeResult:
        """Apply remote events in a single transaction.

        Remote records win on id collision, except rows that still have a
        local change pending. With ``authoritative`` (a full remote set),
        synced local rows the remote no longer has are removed as well.
        """
        result = MergeResult()
        deleted = list(deleted_ids)

        async with self.db.transaction() as tx:
            pending = await self._pending_ids(tx, owner_id)

            for remote in events:
                if remote.id in pending:
                    result.preserved += 1
                    continue

                existing = await tx.fetch_one("SELECT * FROM events WHERE id = ?", (remote.id,))
                row = remote.to_db_dict()
                row.update(
                    owner_id=owner_id,
                    sync_state=SyncState.SYNCED.value,
                    migration_state=(existing or {}).get("migration_state") or MigrationState.NONE.value,
                )
                if existing is None:
                    result.inserted += 1
                elif _differs(existing, row):
                    result.updated += 1
                else:
                    continue

                columns = ", ".join(row.keys())
                await tx.execute(
                    f"INSERT OR REPLACE INTO events ({columns}) VALUES ({_in_clause(list(row))})",
                    tuple(row.values()),
                )

            if deleted:
                result.removed += await tx.execute(
                    f"""DELETE FROM events
                        WHERE owner_id = ? AND sync_state != ? AND id IN ({_in_clause(deleted)})""",
                    (owner_id, SyncState.PENDING_UPLOAD.value, *deleted),
                )

            if authoritative:
                remote_ids = {e.id for e in events}
                rows = await tx.fetch_all(
                    "SELECT id FROM events WHERE owner_id = ? AND sync_state = ?",
                    (owner_id, SyncState.SYNCED.value),
                )
                stale = [r["id"] for r in rows if r["id"] not in remote_ids]
                if stale:
                    result.removed += await tx.execute(
                        f"DELETE FROM events WHERE id IN ({_in_clause(stale)})", tuple(stale)
                    )

        logger.info(
            f"Merged remote events for {owner_id}: +{result.inserted} ~{result.updated} "
            f"-{result.removed} (kept {result.preserved} pending)"
        )
        return result

    async def _pending_ids(self, tx: Transaction, owner_id: str) -> set[str]:
        rows = await tx.fetch_all(
            "SELECT id FROM events WHERE owner_id = ? AND sync_state != ?",
            (owner_id, SyncState.SYNCED.value),
        )
        return {row["id"] for row in rows}

    # Guest migration support

    async def guest_events(self, guest_id: str | None) -> list[Event]:
        """Events owned by the guest or by nobody, still awaiting migration."""
        rows = await self.db.fetch_all(
            """SELECT * FROM events
               WHERE (owner_id = ? OR owner_id IS NULL) AND sync_state != ?
               ORDER BY timestamp ASC""",
            (guest_id, SyncState.PENDING_DELETE.value),
        )
        return [Event.from_db_row(row) for row in rows]

    async def reassign_owner(self, event_ids: Iterable[str], new_owner: str, from_owner: str | None) -> int:
        """Move events to a new owner, touching only rows still held by ``from_owner`` or unowned."""
        ids = list(event_ids)
        if not ids:
            return 0
        return await self.db.execute_rowcount(
            f"""UPDATE events
                SET owner_id = ?, migration_state = ?, sync_state = ?, updated_at = ?
                WHERE (owner_id = ? OR owner_id IS NULL) AND id IN ({_in_clause(ids)})""",
            (
                new_owner,
                MigrationState.REASSIGNED.value,
                SyncState.PENDING_UPLOAD.value,
                format_timestamp(utcnow()),
                from_owner,
                *ids,
            ),
        )

    async def migrated_events(self, owner_id: str, state: MigrationState) -> list[Event]:
        rows = await self.db.fetch_all(
            "SELECT * FROM events WHERE owner_id = ? AND migration_state = ? ORDER BY timestamp ASC",
            (owner_id, state.value),
        )
        return [Event.from_db_row(row) for row in rows]

    async def set_migration_state(self, event_ids: Iterable[str], state: MigrationState) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        return await self.db.execute_rowcount(
            f"UPDATE events SET migration_state = ? WHERE id IN ({_in_clause(ids)})",
            (state.value, *ids),
        )


def _differs(existing: dict[str, Any], incoming: dict[str, Any]) -> bool:
    keys = ("timestamp", "quality", "notes", "latitude", "longitude", "location_name", "owner_id", "sync_state")
    return any(existing.get(k) != incoming.get(k) for k in keys)
