import unittest
from unittest.mock import Mock, patch

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


def _settings():
    from forumsync.config import ChannelConfig, Settings

    return Settings(
        _env_file=None,
        channels=[
            ChannelConfig(
                channel_id=500,
                guild_id=900,
                channel_type="feature",
                linear_team_id="team-1",
                linear_label_id="label-feature",
            )
        ],
    )


class OpsApiTests(unittest.TestCase):
    def setUp(self):
        from fastapi.testclient import TestClient

        from forumsync.main import app
        from forumsync.models.base import get_db
        from forumsync.services.mapping_store import MappingStore

        self.Session = _make_session_factory()

        def _override_get_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        self.app = app
        self.app.dependency_overrides[get_db] = _override_get_db
        # Lifespan is not entered: no scheduler or gateway is started.
        self.client = TestClient(app)

        self.db = self.Session()
        self.store = MappingStore(self.db)

        self.settings = _settings()
        self.scheduler = Mock()
        self.scheduler.poll_cursor = None
        self.scheduler.last_tick = {}
        patches = [
            patch("forumsync.api.sync.settings", self.settings),
            patch("forumsync.api.sync.scheduler", self.scheduler),
            patch("forumsync.api.dashboard.settings", self.settings),
            patch("forumsync.api.dashboard.scheduler", self.scheduler),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def tearDown(self):
        self.db.close()
        self.app.dependency_overrides.clear()

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_mappings_listed_and_fetched(self):
        self.store.create_mapping("1001", "issue-1", "ABC-1", "feature")
        self.store.create_mapping("1002", "issue-2", "ABC-2", "bug")

        listed = self.client.get("/api/sync/mappings", params={"channel_type": "bug"})
        self.assertEqual(listed.status_code, 200)
        self.assertEqual([m["linear_identifier"] for m in listed.json()], ["ABC-2"])

        one = self.client.get("/api/sync/mappings/1001")
        self.assertEqual(one.status_code, 200)
        self.assertEqual(one.json()["channel_type"], "feature")

        self.assertEqual(self.client.get("/api/sync/mappings/404404").status_code, 404)

    def test_synced_comments_listed(self):
        self.store.record_synced_comment("c1", "issue-1", "m1")
        self.store.record_synced_comment("c2", "issue-2", "m2")

        response = self.client.get("/api/sync/comments", params={"linear_issue_id": "issue-2"})

        self.assertEqual([c["linear_comment_id"] for c in response.json()], ["c2"])

    def test_backfill_reset(self):
        self.store.upsert_backfill_state(500, completed=True)

        response = self.client.post("/api/sync/backfill/500/reset")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["completed"])

        states = self.client.get("/api/sync/backfill").json()
        self.assertEqual([(s["channel_id"], s["completed"]) for s in states], [("500", False)])

        self.assertEqual(self.client.post("/api/sync/backfill/999/reset").status_code, 404)

    def test_manual_poll(self):
        self.scheduler.poll_now.return_value = {"teams_ok": 1, "status_posts": 2}

        response = self.client.post("/api/sync/poll")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["stats"]["status_posts"], 2)
        self.scheduler.poll_now.assert_called_once_with()

    def test_manual_poll_failure_is_500(self):
        self.scheduler.poll_now.side_effect = RuntimeError("linear down")

        response = self.client.post("/api/sync/poll")

        self.assertEqual(response.status_code, 500)
        self.assertIn("linear down", response.json()["detail"])

    def test_manual_poll_refused_during_backfill(self):
        from forumsync.errors import PollerNotStarted

        self.scheduler.poll_now.side_effect = PollerNotStarted("Linear polling starts once the backfill has finished")

        response = self.client.post("/api/sync/poll")

        self.assertEqual(response.status_code, 409)
        self.assertIn("backfill", response.json()["detail"])

    def test_dashboard_stats(self):
        self.store.create_mapping("1001", "issue-1", "ABC-1", "feature")
        self.store.upsert_backfill_state(500, completed=False, last_thread_id="1001")

        stats = self.client.get("/api/dashboard/stats").json()

        self.assertEqual(stats["total_mappings"], 1)
        self.assertEqual(stats["mappings_by_channel_type"], {"feature": 1})
        self.assertEqual(stats["channels"][0]["backfill_last_thread_id"], "1001")
        self.assertFalse(stats["channels"][0]["backfill_completed"])


if __name__ == "__main__":
    unittest.main()
