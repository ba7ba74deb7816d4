"""Error kinds raised by the sync engine"""

from typing import Optional


class ForumSyncError(Exception):
    """Base class for sync engine errors"""


class RemoteAPIError(ForumSyncError):
    """A Discord or Linear call failed (network, auth, rate limit or rejection)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.message = message
        self.status_code = status_code
        detail = f"{service} API error: {message}"
        if status_code is not None:
            detail = f"{service} API error (HTTP {status_code}): {message}"
        super().__init__(detail)


class PersistenceError(ForumSyncError):
    """A read or write against the mapping store failed."""


class RaceConditionTimeout(ForumSyncError):
    """The thread's starter message was still not fetchable after all retries."""


class ConfigurationError(ForumSyncError):
    """Missing mapping or channel binding for an entity we expected to recognize."""


class PollerNotStarted(ForumSyncError):
    """A poll was requested before the startup backfill finished and the poller was scheduled."""
