"""Background scheduler: startup backfill followed by periodic Linear polling"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from forumsync.config import settings
from forumsync.errors import PollerNotStarted
from forumsync.models.base import SessionLocal, utcnow
from forumsync.services.backfill import BackfillService
from forumsync.services.discord_client import DiscordClient
from forumsync.services.linear_client import LinearClient, LinearIssueStatus
from forumsync.services.mapping_store import MappingStore
from forumsync.services.reverse_sync import CommentSyncService, StatusSyncService

logger = logging.getLogger(__name__)

POLL_JOB_ID = "linear_poll"
BOOTSTRAP_JOB_ID = "bootstrap"


class SyncScheduler:
    """Runs the backfill once, then polls Linear for changes on an interval.

    The poll cursor is owned by this object and only moved by `_poll_job`
    (and `poll_now`), both serialized by `_poll_lock`.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        linear: Optional[LinearClient] = None,
        discord: Optional[DiscordClient] = None,
        channels=None,
        interval_seconds: Optional[int] = None,
    ):
        self.scheduler = BackgroundScheduler()
        self.session_factory = session_factory
        self._linear = linear
        self._discord = discord
        self._channels = channels
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self.poll_cursor: Optional[datetime] = None
        self.last_tick: Dict[str, Any] = {}
        self.backfill_results: Dict[str, Any] = {}
        self._poll_lock = threading.Lock()

    @property
    def channels(self):
        return self._channels if self._channels is not None else settings.channels

    @property
    def linear(self) -> LinearClient:
        if self._linear is None:
            self._linear = LinearClient(settings.linear_api_key, api_url=settings.linear_api_url)
        return self._linear

    @property
    def discord(self) -> DiscordClient:
        if self._discord is None:
            self._discord = DiscordClient(settings.discord_token, api_url=settings.discord_api_url)
        return self._discord

    def team_ids(self) -> List[str]:
        seen: List[str] = []
        for channel in self.channels:
            if channel.linear_team_id not in seen:
                seen.append(channel.linear_team_id)
        return seen

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        # Backfill runs first; the poller is only scheduled once it returns.
        self.scheduler.add_job(func=self._bootstrap_job, id=BOOTSTRAP_JOB_ID, replace_existing=True)

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")

    def run_backfill(self) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            service = BackfillService(
                db,
                self.linear,
                self.discord,
                list(self.channels),
                delay_seconds=settings.backfill_delay_seconds,
                forward_options=forward_sync_options(),
            )
            self.backfill_results = service.run()
            return self.backfill_results
        finally:
            db.close()

    def _bootstrap_job(self):
        if settings.backfill_enabled:
            logger.info("Running backfill...")
            try:
                self.run_backfill()
            except Exception as e:
                logger.error(f"Backfill failed, continuing with live sync: {e}")
        self.schedule_poller()

    def schedule_poller(self):
        """Start polling for changes made from now on."""
        # History before this point is covered by the backfill.
        self.poll_cursor = utcnow()
        self.scheduler.add_job(
            func=self._poll_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            f"Scheduled Linear poll every {self.interval_seconds}s for {len(self.team_ids())} team(s)"
        )

    def _poll_job(self):
        """Job function: run one tick and carry the cursor forward"""
        try:
            self.poll_now()
        except Exception as e:
            logger.error(f"Linear poll failed: {e}")

    def poll_now(self) -> Dict[str, Any]:
        with self._poll_lock:
            # Unset until schedule_poller runs, i.e. while the backfill is still going.
            if self.poll_cursor is None:
                raise PollerNotStarted("Linear polling starts once the backfill has finished")
            since = self.poll_cursor
            self.poll_cursor, stats = self.poll_once(since)
            self.last_tick = {"since": since, "finished_at": utcnow(), "stats": stats}
            return stats

    def poll_once(self, since: datetime) -> Tuple[datetime, Dict[str, int]]:
        """Poll every team once; returns (next cursor, stats).

        The cursor advances to this tick's start when at least one team was
        fetched successfully. A team that failed is retried next tick against
        the widened window rather than its own old one.
        """
        tick_started = utcnow()
        stats = {
            "teams_ok": 0,
            "teams_failed": 0,
            "issues_seen": 0,
            "status_posts": 0,
            "comment_posts": 0,
            "errors": 0,
        }

        db = self.session_factory()
        try:
            store = MappingStore(db)
            status_sync = StatusSyncService(db, self.discord)
            comment_sync = CommentSyncService(db, self.linear, self.discord)

            for team_id in self.team_ids():
                try:
                    issues = self.linear.get_updated_issues(team_id, since)
                except Exception as e:
                    logger.error(f"Failed to poll Linear team {team_id} for updates: {e}")
                    stats["teams_failed"] += 1
                    continue
                stats["teams_ok"] += 1
                if issues:
                    logger.info(f"Polled {len(issues)} updated issue(s) from team {team_id}")

                for issue in issues:
                    stats["issues_seen"] += 1
                    try:
                        self._sync_issue(issue, store, status_sync, comment_sync, stats)
                    except Exception as e:
                        try:
                            db.rollback()
                        except Exception as rollback_error:
                            logger.warning(f"Rollback after failed issue sync failed: {rollback_error}")
                        logger.error(f"Failed to sync updates of {issue.identifier}: {e}")
                        stats["errors"] += 1
        finally:
            db.close()

        if stats["teams_ok"] > 0:
            return tick_started, stats
        # Nothing fetched: retry the same window next tick.
        return since, stats

    def _sync_issue(
        self,
        issue: LinearIssueStatus,
        store: MappingStore,
        status_sync: StatusSyncService,
        comment_sync: CommentSyncService,
        stats: Dict[str, int],
    ):
        # Only issues we created are mirrored.
        if store.get_mapping_by_issue(issue.id) is None:
            return

        cached = store.get_cached_status(issue.id)
        if issue.status_name and cached != issue.status_name:
            logger.info(f"Status change detected for {issue.identifier}: {cached} -> {issue.status_name}")
            try:
                status_sync.sync_status(issue.id, issue.identifier, issue.status_name)
                stats["status_posts"] += 1
            except Exception as e:
                logger.error(f"Failed to sync status of {issue.identifier} to Discord: {e}")
                stats["errors"] += 1

        # Comments are discovered independently of status changes.
        stats["comment_posts"] += comment_sync.sync_comments(issue.id, issue.identifier)


def forward_sync_options() -> Dict[str, Any]:
    return {
        "first_message_attempts": settings.first_message_attempts,
        "first_message_retry_delay": settings.first_message_retry_delay_seconds,
        "verify_backlink": settings.verify_backlink_before_create,
    }


# Global scheduler instance
scheduler = SyncScheduler()
