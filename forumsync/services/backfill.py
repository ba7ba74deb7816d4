"""Historical backfill of existing forum threads"""

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from forumsync.config import ChannelConfig
from forumsync.services.discord_client import ChatThread, DiscordClient
from forumsync.services.forward_sync import ForwardSyncService
from forumsync.services.linear_client import LinearClient
from forumsync.services.mapping_store import MappingStore

logger = logging.getLogger(__name__)


def pending_threads(
    threads: List[ChatThread], channel_id: Any, resume_after: Optional[str]
) -> List[ChatThread]:
    """Threads of one forum channel in creation order, past the resume cursor."""
    selected = [t for t in threads if t.parent_id is not None and str(t.parent_id) == str(channel_id)]
    selected.sort(key=lambda t: t.order_key)
    if resume_after:
        try:
            cursor = int(resume_after)
        except ValueError:
            logger.warning(f"Ignoring unreadable backfill cursor {resume_after!r} for channel {channel_id}")
            cursor = 0
        selected = [t for t in selected if t.order_key > cursor]
    return selected


class BackfillService:
    """Drives forward sync over threads that existed before the bot was running."""

    def __init__(
        self,
        db: Session,
        linear: LinearClient,
        discord: DiscordClient,
        channels: List[ChannelConfig],
        *,
        delay_seconds: float = 0.5,
        forward_options: Optional[Dict[str, Any]] = None,
    ):
        self.db = db
        self.store = MappingStore(db)
        self.linear = linear
        self.discord = discord
        self.channels = channels
        self.delay_seconds = delay_seconds
        self.forward = ForwardSyncService(db, linear, discord, **(forward_options or {}))

    def run(self) -> Dict[str, Dict[str, Any]]:
        """Backfill every configured channel; one failing channel never blocks the rest."""
        results: Dict[str, Dict[str, Any]] = {}
        for channel in self.channels:
            channel_key = str(channel.channel_id)
            try:
                state = self.store.get_backfill_state(channel_key)
                if state is not None and state.completed:
                    logger.info(
                        f"Backfill already completed for channel {channel_key} ({channel.channel_type.value}), skipping"
                    )
                    results[channel_key] = {"status": "skipped"}
                    continue

                logger.info(f"Starting backfill for channel {channel_key} ({channel.channel_type.value})")
                stats = self.backfill_channel(channel)
                self.store.upsert_backfill_state(channel_key, completed=True, last_thread_id=None)
                logger.info(f"Backfill completed for channel {channel_key}: {stats}")
                results[channel_key] = {"status": "completed", "stats": stats}
            except Exception as e:
                # Left unmarked: the whole channel is re-scanned on the next run.
                logger.warning(f"Backfill failed for channel {channel_key}: {e}")
                results[channel_key] = {"status": "failed", "error": str(e)}
        return results

    def backfill_channel(self, channel: ChannelConfig) -> Dict[str, int]:
        channel_key = str(channel.channel_id)
        stats = {"synced": 0, "already_mapped": 0, "failed": 0}

        state = self.store.get_backfill_state(channel_key)
        resume_after = state.last_thread_id if state is not None else None

        threads = pending_threads(
            self.discord.get_active_threads(channel.guild_id), channel.channel_id, resume_after
        )
        if resume_after:
            logger.info(f"Resuming backfill of channel {channel_key} after thread {resume_after}")

        # Once a thread fails, the cursor stays behind it for the rest of this run.
        cursor_blocked = False
        for index, thread in enumerate(threads):
            if index > 0 and self.delay_seconds:
                # Throttle outbound API calls between threads.
                time.sleep(self.delay_seconds)

            # The live event path may have synced it already.
            if self.store.get_mapping_by_thread(thread.id) is not None:
                stats["already_mapped"] += 1
                continue

            try:
                self.forward.sync_thread(thread, channel)
            except Exception as e:
                logger.warning(f"Failed to backfill thread {thread.id} ('{thread.name}'), continuing: {e}")
                stats["failed"] += 1
                cursor_blocked = True
                continue

            stats["synced"] += 1
            if not cursor_blocked:
                # Persist progress after every thread for crash resilience.
                self.store.upsert_backfill_state(channel_key, completed=False, last_thread_id=thread.id)

        return stats
