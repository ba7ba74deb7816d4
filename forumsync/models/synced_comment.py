"""Synced comment model"""
from sqlalchemy import Column, DateTime, String

from forumsync.models.base import Base, utcnow


class SyncedComment(Base):
    """A Linear comment that has already been posted into its Discord thread"""

    __tablename__ = "synced_comments"

    linear_comment_id = Column(String, primary_key=True)
    linear_issue_id = Column(String, nullable=False, index=True)
    discord_message_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<SyncedComment(comment={self.linear_comment_id}, message={self.discord_message_id})>"
