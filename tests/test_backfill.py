import unittest
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _make_session_factory():
    from forumsync.models.base import init_db

    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _channel(channel_id=500, guild_id=900, channel_type="feature"):
    from forumsync.config import ChannelConfig

    return ChannelConfig(
        channel_id=channel_id,
        guild_id=guild_id,
        channel_type=channel_type,
        linear_team_id="team-1",
        linear_label_id=f"label-{channel_type}",
    )


def _thread(thread_id, parent_id="500"):
    from forumsync.services.discord_client import ChatThread

    return ChatThread(id=str(thread_id), parent_id=parent_id, name=f"Thread {thread_id}")


class _FakeDiscord:
    def __init__(self, threads_by_guild):
        self.threads_by_guild = threads_by_guild

    def get_active_threads(self, guild_id):
        threads = self.threads_by_guild[guild_id]
        if isinstance(threads, Exception):
            raise threads
        return list(threads)


class _FakeForward:
    """Stands in for ForwardSyncService: records calls and writes mappings."""

    def __init__(self, store, failing=()):
        self.store = store
        self.failing = set(failing)
        self.synced = []

    def sync_thread(self, thread, channel):
        if thread.id in self.failing:
            raise RuntimeError(f"Linear rejected {thread.id}")
        self.synced.append(thread.id)
        self.store.create_mapping(thread.id, f"issue-{thread.id}", f"ABC-{thread.id}", channel.channel_type)


class PendingThreadsTests(unittest.TestCase):
    def test_filters_sorts_and_resumes(self):
        from forumsync.services.backfill import pending_threads

        threads = [_thread(30), _thread(10), _thread(20), _thread(15, parent_id="999")]

        self.assertEqual([t.id for t in pending_threads(threads, 500, None)], ["10", "20", "30"])
        self.assertEqual([t.id for t in pending_threads(threads, 500, "10")], ["20", "30"])
        self.assertEqual(pending_threads(threads, 500, "30"), [])

    def test_numeric_order_not_lexical(self):
        from forumsync.services.backfill import pending_threads

        threads = [_thread(100), _thread(99)]
        self.assertEqual([t.id for t in pending_threads(threads, 500, None)], ["99", "100"])


class BackfillServiceTests(unittest.TestCase):
    def setUp(self):
        from forumsync.services.mapping_store import MappingStore

        self.db = _make_session_factory()()
        self.store = MappingStore(self.db)

    def tearDown(self):
        self.db.close()

    def _service(self, discord, channels, failing=()):
        from forumsync.services.backfill import BackfillService

        service = BackfillService(self.db, linear=None, discord=discord, channels=channels, delay_seconds=0.5)
        service.forward = _FakeForward(self.store, failing=failing)
        return service

    def test_resumes_after_persisted_cursor(self):
        self.store.upsert_backfill_state(500, completed=False, last_thread_id="1")
        discord = _FakeDiscord({900: [_thread(1), _thread(2), _thread(3)]})
        service = self._service(discord, [_channel()])

        with patch("forumsync.services.backfill.time.sleep") as sleep:
            results = service.run()

        self.assertEqual(service.forward.synced, ["2", "3"])
        self.assertEqual(sleep.call_count, 1)
        sleep.assert_called_with(0.5)
        self.assertEqual(results["500"]["status"], "completed")
        state = self.store.get_backfill_state(500)
        self.assertTrue(state.completed)
        self.assertIsNone(state.last_thread_id)

    def test_completed_channel_is_skipped(self):
        self.store.upsert_backfill_state(500, completed=True)
        discord = _FakeDiscord({900: RuntimeError("should not be listed")})
        service = self._service(discord, [_channel()])

        results = service.run()

        self.assertEqual(results["500"], {"status": "skipped"})
        self.assertEqual(service.forward.synced, [])

    def test_cursor_never_passes_failed_thread(self):
        discord = _FakeDiscord({900: [_thread(1), _thread(2), _thread(3)]})
        service = self._service(discord, [_channel()], failing={"2"})

        with patch("forumsync.services.backfill.time.sleep"):
            stats = service.backfill_channel(_channel())

        self.assertEqual(stats, {"synced": 2, "already_mapped": 0, "failed": 1})
        self.assertEqual(service.forward.synced, ["1", "3"])
        state = self.store.get_backfill_state(500)
        self.assertFalse(state.completed)
        self.assertEqual(state.last_thread_id, "1")

    def test_other_forums_and_mapped_threads_are_skipped(self):
        self.store.create_mapping("2", "issue-live", "ABC-live", "feature")
        discord = _FakeDiscord({900: [_thread(1), _thread(2), _thread(5, parent_id="777")]})
        service = self._service(discord, [_channel()])

        with patch("forumsync.services.backfill.time.sleep"):
            stats = service.backfill_channel(_channel())

        self.assertEqual(service.forward.synced, ["1"])
        self.assertEqual(stats["already_mapped"], 1)
        self.assertEqual(self.store.get_mapping_by_thread("2").linear_issue_id, "issue-live")

    def test_channel_failure_does_not_block_other_channels(self):
        from forumsync.errors import RemoteAPIError

        discord = _FakeDiscord(
            {
                900: RemoteAPIError("Discord", "missing access", 403),
                901: [_thread(7, parent_id="600")],
            }
        )
        channels = [_channel(), _channel(channel_id=600, guild_id=901, channel_type="bug")]
        service = self._service(discord, channels)

        with patch("forumsync.services.backfill.time.sleep"):
            results = service.run()

        self.assertEqual(results["500"]["status"], "failed")
        self.assertIsNone(self.store.get_backfill_state(500))
        self.assertEqual(results["600"]["status"], "completed")
        self.assertTrue(self.store.get_backfill_state(600).completed)
        self.assertEqual(service.forward.synced, ["7"])


if __name__ == "__main__":
    unittest.main()
