from dataclasses import dataclass, field
from typing import Optional


@dataclass
class FailedSyncItem:
    """A queued mutation the server will never accept; it has left the queue."""

    item: dict
    status: Optional[int]
    reason: str


@dataclass
class SyncState:
    is_online: bool = True
    is_syncing: bool = False
    pending_changes: int = 0
    last_sync_time: Optional[float] = None
    sync_error: Optional[str] = None
    failed_items: list = field(default_factory=list)
