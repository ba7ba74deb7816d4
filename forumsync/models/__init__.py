"""Database models"""

from forumsync.models.backfill_state import BackfillState
from forumsync.models.base import Base
from forumsync.models.status_cache import StatusCache
from forumsync.models.sync_mapping import SyncMapping
from forumsync.models.synced_comment import SyncedComment

__all__ = [
    "Base",
    "SyncMapping",
    "StatusCache",
    "SyncedComment",
    "BackfillState",
]
