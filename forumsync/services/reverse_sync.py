"""Linear issue -> Discord thread synchronization"""

import logging

from sqlalchemy.orm import Session

from forumsync.errors import ConfigurationError
from forumsync.services.discord_client import DiscordClient
from forumsync.services.linear_client import LinearClient, LinearComment
from forumsync.services.mapping_store import MappingStore

logger = logging.getLogger(__name__)


def format_status_message(identifier: str, status_name: str) -> str:
    return f"**{identifier}** status changed to **{status_name}**"


def format_comment_message(identifier: str, comment: LinearComment) -> str:
    """Render a Linear comment as a Discord block quote attributed to its author."""
    body = (comment.body or "").strip() or "(empty comment)"
    quoted = "\n".join(f"> {line}" if line else ">" for line in body.splitlines())
    return f"💬 **{comment.author_name}** commented on **{identifier}**:\n{quoted}"


class StatusSyncService:
    """Announces Linear workflow state changes in the mapped Discord thread."""

    def __init__(self, db: Session, discord: DiscordClient):
        self.store = MappingStore(db)
        self.discord = discord

    def sync_status(self, linear_issue_id: str, identifier: str, status_name: str) -> str:
        """Post the new status and remember it; returns the Discord message id."""
        mapping = self.store.get_mapping_by_issue(linear_issue_id)
        if mapping is None:
            raise ConfigurationError(f"No mapping for issue {identifier}")

        message_id = self.discord.create_message(
            mapping.discord_thread_id, format_status_message(identifier, status_name)
        )
        self.store.upsert_cached_status(linear_issue_id, status_name)

        logger.info(f"Posted status update for {identifier} ({status_name}) to thread {mapping.discord_thread_id}")
        return message_id


class CommentSyncService:
    """Mirrors Linear comments into the mapped Discord thread, once each."""

    def __init__(self, db: Session, linear: LinearClient, discord: DiscordClient):
        self.store = MappingStore(db)
        self.linear = linear
        self.discord = discord

    def sync_comments(self, linear_issue_id: str, identifier: str) -> int:
        """Post every not-yet-mirrored comment; returns how many were posted."""
        mapping = self.store.get_mapping_by_issue(linear_issue_id)
        if mapping is None:
            return 0

        # No remote cursor: the full list is fetched and deduped locally each time.
        comments = self.linear.get_issue_comments(linear_issue_id)

        posted = 0
        for comment in comments:
            if not comment.id or self.store.is_comment_synced(comment.id):
                continue
            message_id = self.discord.create_message(
                mapping.discord_thread_id, format_comment_message(identifier, comment)
            )
            if not self.store.record_synced_comment(comment.id, linear_issue_id, message_id):
                logger.warning(f"Comment {comment.id} on {identifier} was recorded concurrently")
            posted += 1

        if posted:
            logger.info(f"Mirrored {posted} comment(s) from {identifier} to thread {mapping.discord_thread_id}")
        return posted
