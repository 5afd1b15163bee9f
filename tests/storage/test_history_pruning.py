from convo_compactor.models import LogEntry, SessionStatus
from convo_compactor.storage import prune_history, recover_interrupted
from tests.storage.base import KEY, StoreTestCase, make_artifact, make_session


class PruningTests(StoreTestCase):
    def test_retention_days_prunes_old_terminal_sessions(self) -> None:
        self._sessions.insert(make_session("old", status=SessionStatus.COMPLETED, started_at="2000-01-01T00:00:00.000+00:00"))
        self._sessions.append_log("old", LogEntry("2000-01-01T00:00:00.000+00:00", "info", "done"))
        self._sessions.insert(make_session("stuck", status=SessionStatus.PROCESSING, started_at="2000-01-01T00:00:00.000+00:00"))
        self._sessions.insert(make_session("recent", status=SessionStatus.COMPLETED))

        removed = prune_history(self._store, max_sessions_per_key=20, retention_days=1)

        self.assertEqual(1, removed)
        self.assertIsNone(self._sessions.get("old"))
        self.assertIsNotNone(self._sessions.get("stuck"))
        self.assertIsNotNone(self._sessions.get("recent"))
        orphan_logs = self._store.execute("SELECT COUNT(*) AS c FROM session_logs WHERE session_id = 'old'").fetchone()
        self.assertEqual(0, int(orphan_logs["c"]))

    def test_max_sessions_per_key_keeps_most_recent(self) -> None:
        for day in (1, 2, 3):
            self._sessions.insert(
                make_session(f"s{day}", status=SessionStatus.FAILED, started_at=f"2099-01-0{day}T00:00:00.000+00:00")
            )

        removed = prune_history(self._store, max_sessions_per_key=2, retention_days=36500)

        self.assertEqual(1, removed)
        rows = self._store.execute("SELECT id FROM sessions ORDER BY id ASC").fetchall()
        self.assertEqual(["s2", "s3"], [str(r["id"]) for r in rows])

    def test_artifacts_are_never_pruned(self) -> None:
        self._cache.save(make_artifact(created_at="2000-01-01T00:00:00.000+00:00"))
        prune_history(self._store, max_sessions_per_key=1, retention_days=1)
        self.assertIsNotNone(self._cache.get(KEY))

    def test_recover_interrupted(self) -> None:
        self._sessions.insert(make_session("left-over", status=SessionStatus.PROCESSING))
        self.assertEqual(1, recover_interrupted(self._store))
        self.assertEqual(0, recover_interrupted(self._store))
        self.assertIs(SessionStatus.FAILED, self._sessions.get("left-over").status)
