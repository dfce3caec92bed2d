"""Event synchronization with the remote store."""

from peelog.sync.coordinator import SyncCoordinator, SyncPhase, SyncReason, SyncResult, SyncStatus

__all__ = ["SyncCoordinator", "SyncPhase", "SyncReason", "SyncResult", "SyncStatus"]
