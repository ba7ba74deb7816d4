"""Dashboard and statistics endpoints"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from forumsync.config import settings
from forumsync.models.base import get_db
from forumsync.scheduler import scheduler
from forumsync.services.mapping_store import MappingStore

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats")
def get_dashboard_stats(db: Session = Depends(get_db)):
    """Get dashboard statistics"""
    store = MappingStore(db)
    counts = store.counts()

    states = {s.channel_id: s for s in store.list_backfill_states()}
    channel_stats = []
    for channel in settings.channels:
        state = states.get(str(channel.channel_id))
        channel_stats.append(
            {
                "channel_id": str(channel.channel_id),
                "channel_type": channel.channel_type.value,
                "linear_team_id": channel.linear_team_id,
                "backfill_completed": bool(state and state.completed),
                "backfill_last_thread_id": state.last_thread_id if state else None,
            }
        )

    return {
        "total_mappings": counts["mappings"],
        "mappings_by_channel_type": counts["mappings_by_channel_type"],
        "synced_comments": counts["synced_comments"],
        "cached_statuses": counts["cached_statuses"],
        "poll_cursor": scheduler.poll_cursor,
        "last_poll": scheduler.last_tick,
        "channels": channel_stats,
    }
