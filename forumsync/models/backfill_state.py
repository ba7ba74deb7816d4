"""Backfill state model"""
from sqlalchemy import Boolean, Column, DateTime, String

from forumsync.models.base import Base, utcnow


class BackfillState(Base):
    """Per-channel backfill progress.

    completed=False with a last_thread_id means a run was interrupted after
    syncing that thread; completed=True means later runs skip the channel.
    """

    __tablename__ = "backfill_state"

    channel_id = Column(String, primary_key=True)
    completed = Column(Boolean, nullable=False, default=False)
    last_thread_id = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<BackfillState(channel={self.channel_id}, completed={self.completed})>"
