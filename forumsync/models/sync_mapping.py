"""Sync mapping model"""
from sqlalchemy import Column, DateTime, Enum, Integer, String, UniqueConstraint

from forumsync.config import ChannelType
from forumsync.models.base import Base, utcnow


class SyncMapping(Base):
    """Binding between a Discord forum thread and the Linear issue created from it.

    Rows are written once by forward sync and never updated or deleted; the
    existence of a row is what marks a thread as synced.
    """

    __tablename__ = "sync_mappings"
    __table_args__ = (
        UniqueConstraint("discord_thread_id", name="uq_sync_mappings_discord_thread_id"),
        UniqueConstraint("linear_issue_id", name="uq_sync_mappings_linear_issue_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Discord side (snowflake kept as text)
    discord_thread_id = Column(String, nullable=False)

    # Linear side
    linear_issue_id = Column(String, nullable=False)
    linear_identifier = Column(String, nullable=False)  # e.g. "ABC-123"

    channel_type = Column(
        Enum(ChannelType, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
    )

    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<SyncMapping(thread={self.discord_thread_id}, issue={self.linear_identifier})>"
