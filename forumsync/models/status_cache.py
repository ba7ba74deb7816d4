"""Linear status cache model"""
from sqlalchemy import Column, DateTime, String

from forumsync.models.base import Base, utcnow


class StatusCache(Base):
    """Last workflow state we announced in Discord for an issue"""

    __tablename__ = "linear_status_cache"

    linear_issue_id = Column(String, primary_key=True)
    status_name = Column(String, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<StatusCache(issue={self.linear_issue_id}, status='{self.status_name}')>"
