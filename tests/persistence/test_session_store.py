import os
import time
import unittest

from agent_runtime.persistence import Session

from tests.persistence.base import WorkspaceTestCase


class SessionStoreTests(WorkspaceTestCase):
    def _session(self, start_time: str, **kwargs) -> Session:
        session = Session(role="control", model="gpt-4o", store=self._store, start_time=start_time, **kwargs)
        session.save()
        return session

    def test_files_live_under_workspace(self) -> None:
        session = self._session("2026-01-01T00:00:00.000Z")

        self.assertEqual(self._workspace / ".agent_runtime" / "sessions", self._store.directory)
        self.assertTrue(self._store.exists(session.id))
        self.assertEqual([], list(self._store.directory.glob("*.tmp")))

    def test_read_missing(self) -> None:
        self.assertIsNone(self._store.read("session-missing"))
        self.assertFalse(self._store.exists("session-missing"))

    def test_list_summaries_newest_first(self) -> None:
        older = self._session("2026-01-01T00:00:00.000Z", chain_id="CHAIN-1")
        newer = self._session("2026-02-01T00:00:00.000Z")
        newer.add_message({"role": "user", "content": "hi"})
        newer.update_token_usage(7, 3)

        summaries = self._store.list_summaries()

        self.assertEqual([newer.id, older.id], [s.id for s in summaries])
        self.assertEqual(10, summaries[0].total_tokens)
        self.assertEqual(1, summaries[0].message_count)
        self.assertEqual("CHAIN-1", summaries[1].chain_id)
        self.assertEqual("running", summaries[1].status)

    def test_list_summaries_skips_unreadable_files(self) -> None:
        self._session("2026-01-01T00:00:00.000Z")
        (self._store.directory / "broken.json").write_text("{not json", encoding="utf-8")
        (self._store.directory / "partial.json").write_text('{"id": "x"}', encoding="utf-8")

        self.assertEqual(1, len(self._store.list_summaries()))

    def test_list_summaries_without_directory(self) -> None:
        self.assertEqual([], self._store.list_summaries())

    def test_cleanup_removes_old_files(self) -> None:
        old = self._session("2025-01-01T00:00:00.000Z")
        recent = self._session("2026-01-01T00:00:00.000Z")
        forty_days_ago = time.time() - 40 * 86_400
        os.utime(self._store.path_for(old.id), (forty_days_ago, forty_days_ago))

        deleted = self._store.cleanup(30)

        self.assertEqual(1, deleted)
        self.assertFalse(self._store.exists(old.id))
        self.assertTrue(self._store.exists(recent.id))

    def test_cleanup_without_directory(self) -> None:
        self.assertEqual(0, self._store.cleanup(30))


if __name__ == "__main__":
    unittest.main()
