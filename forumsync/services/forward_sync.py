"""Discord thread -> Linear issue synchronization"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from forumsync.config import ChannelConfig
from forumsync.errors import ConfigurationError, PersistenceError, RaceConditionTimeout
from forumsync.services.discord_client import ChatMessage, ChatThread, DiscordClient
from forumsync.services.linear_client import LinearClient, LinearIssue
from forumsync.services.mapping_store import MappingStore

logger = logging.getLogger(__name__)

PLACEHOLDER_BODY = "(No message content available)"


@dataclass
class ForwardSyncResult:
    status: str  # "created", "adopted", "skipped" or "duplicate"
    thread_id: str
    issue: Optional[LinearIssue] = None


def thread_url(guild_id, parent_id, thread_id) -> str:
    return f"https://discord.com/channels/{guild_id}/{parent_id}/{thread_id}"


def resolve_label_ids(thread: ChatThread, channel: ChannelConfig) -> List[str]:
    """Primary channel label followed by labels mapped from the thread's forum tags."""
    label_ids = [channel.linear_label_id]
    for tag_id in thread.applied_tags:
        mapped = channel.tag_label_map.get(str(tag_id))
        # Unmapped tags are ignored.
        if mapped and mapped not in label_ids:
            label_ids.append(mapped)
    return label_ids


def build_description(body: str, url: str, attachment_links: List[str]) -> str:
    description = f"{body}\n\n---\n[Discord Thread]({url})"
    if attachment_links:
        description += "\n\n**Attachments:**\n" + "\n".join(attachment_links)
    return description


class ForwardSyncService:
    """Creates one Linear issue per Discord forum thread, idempotently."""

    def __init__(
        self,
        db: Session,
        linear: LinearClient,
        discord: DiscordClient,
        *,
        first_message_attempts: int = 3,
        first_message_retry_delay: float = 2.0,
        verify_backlink: bool = False,
    ):
        self.db = db
        self.store = MappingStore(db)
        self.linear = linear
        self.discord = discord
        self.first_message_attempts = first_message_attempts
        self.first_message_retry_delay = first_message_retry_delay
        self.verify_backlink = verify_backlink

    def _fetch_first_message(self, thread_id: str) -> ChatMessage:
        """Fetch the starter message, retrying while the thread-create event outruns it."""
        for attempt in range(self.first_message_attempts):
            if attempt > 0:
                time.sleep(self.first_message_retry_delay)
            try:
                message = self.discord.get_first_message(thread_id)
            except Exception as e:
                logger.warning(
                    f"Failed to fetch first message of thread {thread_id} (attempt {attempt + 1}): {e}"
                )
                continue
            if message is not None:
                return message
            logger.warning(f"No message found in thread {thread_id} yet (attempt {attempt + 1})")
        raise RaceConditionTimeout(
            f"First message of thread {thread_id} unavailable after "
            f"{self.first_message_attempts} attempts"
        )

    def _upload_attachment(self, url: str, filename: str) -> str:
        data, content_type = self.linear.download_attachment(url)
        upload = self.linear.request_file_upload(filename, content_type, len(data))
        return self.linear.upload_file(upload, data, content_type)

    def _mirror_attachments(self, thread_id: str, message: Optional[ChatMessage]) -> List[str]:
        """Upload attachments best-effort; a failed attachment is skipped, never fatal."""
        links: List[str] = []
        if message is None:
            return links
        for attachment in message.attachments:
            try:
                asset_url = self._upload_attachment(attachment.url, attachment.filename)
            except Exception as e:
                logger.warning(
                    f"Failed to upload attachment '{attachment.filename}' from thread {thread_id}, skipping: {e}"
                )
                continue
            links.append(f"![{attachment.filename}]({asset_url})")
        return links

    def _find_existing_issue(self, channel: ChannelConfig, url: str) -> Optional[LinearIssue]:
        try:
            return self.linear.find_issue_by_description(channel.linear_team_id, url)
        except Exception as e:
            # Fall back to normal creation; the mapping check already passed.
            logger.warning(f"Back-link lookup failed for {url}: {e}")
            return None

    def _confirm(self, thread_id: str, issue: LinearIssue):
        self.discord.create_message(thread_id, f"Tracked as **[{issue.identifier}]({issue.url})** in Linear")

    def sync_thread(self, thread: ChatThread, channel: ChannelConfig) -> ForwardSyncResult:
        """Sync one forum thread into a Linear issue"""
        thread_id = str(thread.id)

        # Existing mapping: delivered twice, or already handled by backfill.
        if self.store.get_mapping_by_thread(thread_id) is not None:
            logger.info(f"Thread {thread_id} already synced, skipping")
            return ForwardSyncResult(status="skipped", thread_id=thread_id)

        if not thread.parent_id:
            raise ConfigurationError(f"Thread {thread_id} has no parent channel")

        try:
            message: Optional[ChatMessage] = self._fetch_first_message(thread_id)
        except RaceConditionTimeout as e:
            logger.warning(f"{e}; using placeholder body")
            message = None

        body = message.content if message is not None and message.content else PLACEHOLDER_BODY
        label_ids = resolve_label_ids(thread, channel)
        attachment_links = self._mirror_attachments(thread_id, message)

        url = thread_url(channel.guild_id, thread.parent_id, thread_id)
        description = build_description(body, url, attachment_links)

        status = "created"
        issue = self._find_existing_issue(channel, url) if self.verify_backlink else None
        if issue is not None:
            logger.info(f"Thread {thread_id} already has issue {issue.identifier} in Linear, adopting it")
            status = "adopted"
        else:
            issue = self.linear.create_issue(channel.linear_team_id, thread.name, description, label_ids)
            logger.info(
                f"Created Linear issue {issue.identifier} from thread {thread_id} "
                f"(team {channel.linear_team_id})"
            )

        try:
            inserted = self.store.create_mapping(
                thread_id, issue.id, issue.identifier, channel.channel_type
            )
        except PersistenceError:
            logger.error(
                f"Issue {issue.identifier} was created for thread {thread_id} but the mapping "
                f"could not be stored; a later run may create a duplicate"
            )
            raise

        if not inserted:
            logger.warning(
                f"Thread {thread_id} was mapped concurrently; issue {issue.identifier} is an orphaned duplicate"
            )
            return ForwardSyncResult(status="duplicate", thread_id=thread_id, issue=issue)

        self._confirm(thread_id, issue)
        return ForwardSyncResult(status=status, thread_id=thread_id, issue=issue)
