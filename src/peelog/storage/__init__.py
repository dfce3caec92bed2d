"""Storage layer: database, event log, users and sync state."""

from peelog.storage.database import Database
from peelog.storage.event_store import EventStore, MergeResult
from peelog.storage.sync_state import AnalyticsCache, SyncCursorStore
from peelog.storage.user_store import UserStore

__all__ = [
    "AnalyticsCache",
    "Database",
    "EventStore",
    "MergeResult",
    "SyncCursorStore",
    "UserStore",
]
