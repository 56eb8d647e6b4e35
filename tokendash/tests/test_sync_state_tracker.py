import os
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from tokendash.db.repositories.sync_state import SqliteSyncStateRepository
from tokendash.db.sqlite_migrations import run_migrations
from tokendash.services.sync_state import SyncStateTracker, tail_hash


class SyncStateTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteSyncStateRepository(self.db)
        self.tracker = SyncStateTracker(self.repo)
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "session.jsonl"
        self.path.write_bytes(b"line-one\nline-two\n")

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self._tmp.cleanup()

    async def _record_full(self, lines: int = 2):
        decision = await self.tracker.should_process(self.path)
        size = self.path.stat().st_size
        await self.tracker.record_progress(self.path, decision, size, lines, 0)
        return decision

    def _bump_mtime(self) -> None:
        stat = self.path.stat()
        os.utime(self.path, (stat.st_atime, stat.st_mtime + 10))

    async def test_new_file_is_processed_from_start(self) -> None:
        decision = await self.tracker.should_process(self.path)
        self.assertTrue(decision.process)
        self.assertEqual(decision.resume_offset, 0)
        self.assertEqual(decision.reason, "new")

    async def test_unchanged_file_is_skipped(self) -> None:
        await self._record_full()
        decision = await self.tracker.should_process(self.path)
        self.assertFalse(decision.process)
        self.assertEqual(decision.reason, "unchanged")

    async def test_force_always_rescans(self) -> None:
        await self._record_full()
        decision = await self.tracker.should_process(self.path, force=True)
        self.assertTrue(decision.process)
        self.assertEqual((decision.resume_offset, decision.reason), (0, "forced"))

    async def test_appended_file_resumes_at_offset(self) -> None:
        await self._record_full()
        original_size = self.path.stat().st_size
        with self.path.open("ab") as handle:
            handle.write(b"line-three\n")
        self._bump_mtime()

        decision = await self.tracker.should_process(self.path)
        self.assertTrue(decision.process)
        self.assertEqual(decision.reason, "appended")
        self.assertEqual(decision.resume_offset, original_size)

        await self.tracker.record_progress(self.path, decision, self.path.stat().st_size, 1, 0)
        state = await self.repo.get_sync_state(str(self.path))
        self.assertEqual(state["lines_processed"], 3)
        self.assertEqual(state["processed_offset"], self.path.stat().st_size)

    async def test_rewritten_file_rescans_from_start(self) -> None:
        await self._record_full()
        self.path.write_bytes(b"LINE-ONE\nline-two\nline-three\n")
        self._bump_mtime()

        decision = await self.tracker.should_process(self.path)
        self.assertTrue(decision.process)
        self.assertEqual((decision.resume_offset, decision.reason), (0, "rewritten"))

    async def test_truncated_file_rescans_from_start(self) -> None:
        await self._record_full()
        self.path.write_bytes(b"x\n")
        self._bump_mtime()

        decision = await self.tracker.should_process(self.path)
        self.assertEqual((decision.resume_offset, decision.reason), (0, "rewritten"))

    async def test_missing_file_raises_oserror(self) -> None:
        with self.assertRaises(OSError):
            await self.tracker.should_process(Path(self._tmp.name) / "gone.jsonl")

    def test_tail_hash_of_start_is_empty(self) -> None:
        self.assertEqual(tail_hash(self.path, 0), "")
        self.assertNotEqual(tail_hash(self.path, 9), "")


if __name__ == "__main__":
    unittest.main()
