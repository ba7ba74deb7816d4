"""Sync management endpoints"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from forumsync.config import ChannelType, settings
from forumsync.errors import PollerNotStarted
from forumsync.models.base import get_db
from forumsync.scheduler import scheduler
from forumsync.services.mapping_store import MappingStore

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncMappingResponse(BaseModel):
    id: int
    discord_thread_id: str
    linear_issue_id: str
    linear_identifier: str
    channel_type: ChannelType
    created_at: datetime

    class Config:
        from_attributes = True


class SyncedCommentResponse(BaseModel):
    linear_comment_id: str
    linear_issue_id: str
    discord_message_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class BackfillStateResponse(BaseModel):
    channel_id: str
    completed: bool
    last_thread_id: Optional[str] = None
    updated_at: datetime

    class Config:
        from_attributes = True


@router.get("/mappings", response_model=List[SyncMappingResponse])
def list_mappings(
    channel_type: Optional[ChannelType] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List thread <-> issue mappings, newest first"""
    return MappingStore(db).list_mappings(channel_type=channel_type, limit=limit)


@router.get("/mappings/{thread_id}", response_model=SyncMappingResponse)
def get_mapping(thread_id: str, db: Session = Depends(get_db)):
    """Get the mapping for one Discord thread"""
    mapping = MappingStore(db).get_mapping_by_thread(thread_id)
    if not mapping:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return mapping


@router.get("/comments", response_model=List[SyncedCommentResponse])
def list_synced_comments(
    linear_issue_id: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List mirrored Linear comments"""
    return MappingStore(db).list_synced_comments(linear_issue_id=linear_issue_id, limit=limit)


@router.get("/backfill", response_model=List[BackfillStateResponse])
def list_backfill_states(db: Session = Depends(get_db)):
    """List per-channel backfill progress"""
    return MappingStore(db).list_backfill_states()


@router.post("/backfill/{channel_id}/reset", response_model=BackfillStateResponse)
def reset_backfill(channel_id: int, db: Session = Depends(get_db)):
    """Make a channel eligible for a full re-scan on the next backfill run"""
    if not settings.is_monitored_channel(channel_id):
        raise HTTPException(status_code=404, detail="Channel is not configured")
    return MappingStore(db).reset_backfill_state(channel_id)


@router.post("/poll")
def trigger_poll():
    """Run one Linear poll tick now"""
    try:
        stats = scheduler.poll_now()
    except PollerNotStarted as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "success", "cursor": scheduler.poll_cursor, "stats": stats}
