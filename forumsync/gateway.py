"""Discord gateway listener for live forum-thread events"""

import asyncio
import logging
from typing import Optional

import discord

from forumsync.config import ChannelConfig, settings
from forumsync.models.base import SessionLocal
from forumsync.scheduler import forward_sync_options
from forumsync.services.discord_client import ChatThread
from forumsync.services.forward_sync import ForwardSyncResult, ForwardSyncService

logger = logging.getLogger(__name__)


def to_chat_thread(thread: discord.Thread) -> ChatThread:
    return ChatThread(
        id=str(thread.id),
        parent_id=str(thread.parent_id) if thread.parent_id is not None else None,
        name=thread.name,
        applied_tags=[str(tag.id) for tag in getattr(thread, "applied_tags", None) or []],
    )


class ForumGateway(discord.Client):
    """Forwards newly created forum threads to forward sync."""

    def __init__(self, scheduler, session_factory=SessionLocal, **options):
        intents = discord.Intents.none()
        intents.guilds = True
        super().__init__(intents=intents, **options)
        # Shares the scheduler's REST clients; each keeps a requests.Session per thread.
        self.sync_scheduler = scheduler
        self.session_factory = session_factory

    async def on_ready(self):
        logger.info(f"Discord bot connected as {self.user}")

    async def on_thread_create(self, thread: discord.Thread):
        if thread.parent_id is None:
            return
        channel = settings.channel_config(thread.parent_id)
        if channel is None:
            return

        logger.info(f"New forum post detected: thread {thread.id} '{thread.name}' in {thread.parent_id}")
        # Forward sync blocks on HTTP and retry sleeps; keep it off the event loop.
        await asyncio.to_thread(self.sync_thread, to_chat_thread(thread), channel)

    def sync_thread(self, thread: ChatThread, channel: ChannelConfig) -> Optional[ForwardSyncResult]:
        """Sync a live thread; failures are logged and the event dropped."""
        db = self.session_factory()
        try:
            service = ForwardSyncService(
                db,
                self.sync_scheduler.linear,
                self.sync_scheduler.discord,
                **forward_sync_options(),
            )
            return service.sync_thread(thread, channel)
        except Exception as e:
            logger.error(f"Failed to sync thread {thread.id} to Linear: {e}")
            return None
        finally:
            db.close()
