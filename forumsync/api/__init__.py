"""API routes"""

from forumsync.api import dashboard, sync

__all__ = ["sync", "dashboard"]
