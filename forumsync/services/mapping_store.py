"""Persistent mapping, dedup and cursor store"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from forumsync.config import ChannelType
from forumsync.errors import PersistenceError
from forumsync.models import BackfillState, StatusCache, SyncedComment, SyncMapping
from forumsync.models.base import utcnow

logger = logging.getLogger(__name__)


class MappingStore:
    """Thread <-> issue mappings plus the auxiliary dedup and cursor tables.

    Inserts that guard idempotency are conditional: a duplicate key is
    reported as ``False`` rather than raised, since the live event path and
    backfill can race on the same thread.
    """

    def __init__(self, db: Session):
        self.db = db

    def _rollback_quietly(self):
        try:
            self.db.rollback()
        except Exception:
            pass

    def _insert_if_absent(self, row: Any) -> bool:
        """Commit a new row, swallowing duplicate-key races."""
        try:
            self.db.add(row)
            self.db.commit()
            return True
        except IntegrityError:
            # Another worker created the row first.
            self._rollback_quietly()
            return False
        except SQLAlchemyError as e:
            self._rollback_quietly()
            raise PersistenceError(f"Failed to insert {row!r}: {e}") from e

    def _query_first(self, model, *criteria):
        try:
            return self.db.query(model).filter(*criteria).first()
        except SQLAlchemyError as e:
            self._rollback_quietly()
            raise PersistenceError(f"Failed to read {model.__tablename__}: {e}") from e

    def _commit(self, what: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self._rollback_quietly()
            raise PersistenceError(f"Failed to write {what}: {e}") from e

    # Sync mappings

    def get_mapping_by_thread(self, discord_thread_id: Any) -> Optional[SyncMapping]:
        return self._query_first(SyncMapping, SyncMapping.discord_thread_id == str(discord_thread_id))

    def get_mapping_by_issue(self, linear_issue_id: str) -> Optional[SyncMapping]:
        return self._query_first(SyncMapping, SyncMapping.linear_issue_id == str(linear_issue_id))

    def create_mapping(
        self,
        discord_thread_id: Any,
        linear_issue_id: str,
        linear_identifier: str,
        channel_type: ChannelType,
    ) -> bool:
        """Insert a mapping; returns False when the thread or issue is already mapped."""
        row = SyncMapping(
            discord_thread_id=str(discord_thread_id),
            linear_issue_id=str(linear_issue_id),
            linear_identifier=linear_identifier,
            channel_type=ChannelType(channel_type),
        )
        return self._insert_if_absent(row)

    def list_mappings(
        self, channel_type: Optional[ChannelType] = None, limit: int = 100
    ) -> List[SyncMapping]:
        query = self.db.query(SyncMapping).order_by(SyncMapping.created_at.desc())
        if channel_type is not None:
            query = query.filter(SyncMapping.channel_type == ChannelType(channel_type))
        return query.limit(limit).all()

    # Status cache

    def get_cached_status(self, linear_issue_id: str) -> Optional[str]:
        row = self._query_first(StatusCache, StatusCache.linear_issue_id == str(linear_issue_id))
        return row.status_name if row else None

    def upsert_cached_status(self, linear_issue_id: str, status_name: str):
        row = self._query_first(StatusCache, StatusCache.linear_issue_id == str(linear_issue_id))
        if row is None:
            if self._insert_if_absent(
                StatusCache(linear_issue_id=str(linear_issue_id), status_name=status_name)
            ):
                return
            # Lost an insert race; fall through and update the winner's row.
            row = self._query_first(
                StatusCache, StatusCache.linear_issue_id == str(linear_issue_id)
            )
        row.status_name = status_name
        row.updated_at = utcnow()
        self._commit(f"status cache for {linear_issue_id}")

    # Synced comments

    def is_comment_synced(self, linear_comment_id: str) -> bool:
        row = self._query_first(
            SyncedComment, SyncedComment.linear_comment_id == str(linear_comment_id)
        )
        return row is not None

    def record_synced_comment(
        self, linear_comment_id: str, linear_issue_id: str, discord_message_id: Any
    ) -> bool:
        row = SyncedComment(
            linear_comment_id=str(linear_comment_id),
            linear_issue_id=str(linear_issue_id),
            discord_message_id=str(discord_message_id),
        )
        return self._insert_if_absent(row)

    def list_synced_comments(
        self, linear_issue_id: Optional[str] = None, limit: int = 100
    ) -> List[SyncedComment]:
        query = self.db.query(SyncedComment).order_by(SyncedComment.created_at.desc())
        if linear_issue_id:
            query = query.filter(SyncedComment.linear_issue_id == str(linear_issue_id))
        return query.limit(limit).all()

    # Backfill cursors

    def get_backfill_state(self, channel_id: Any) -> Optional[BackfillState]:
        return self._query_first(BackfillState, BackfillState.channel_id == str(channel_id))

    def upsert_backfill_state(
        self, channel_id: Any, completed: bool, last_thread_id: Optional[Any] = None
    ):
        last = str(last_thread_id) if last_thread_id is not None else None
        row = self.get_backfill_state(channel_id)
        if row is None:
            if self._insert_if_absent(
                BackfillState(channel_id=str(channel_id), completed=completed, last_thread_id=last)
            ):
                return
            row = self.get_backfill_state(channel_id)
        row.completed = completed
        row.last_thread_id = last
        row.updated_at = utcnow()
        self._commit(f"backfill state for channel {channel_id}")

    def reset_backfill_state(self, channel_id: Any) -> BackfillState:
        """Make a channel eligible for a full re-scan on the next backfill run."""
        self.upsert_backfill_state(channel_id, completed=False, last_thread_id=None)
        return self.get_backfill_state(channel_id)

    def list_backfill_states(self) -> List[BackfillState]:
        return self.db.query(BackfillState).order_by(BackfillState.channel_id).all()

    # Stats

    def counts(self) -> Dict[str, Any]:
        by_type = dict(
            self.db.query(SyncMapping.channel_type, func.count(SyncMapping.id))
            .group_by(SyncMapping.channel_type)
            .all()
        )
        return {
            "mappings": sum(by_type.values()),
            "mappings_by_channel_type": {
                getattr(k, "value", k): v for k, v in by_type.items()
            },
            "synced_comments": self.db.query(SyncedComment).count(),
            "cached_statuses": self.db.query(StatusCache).count(),
        }
