import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import aiosqlite
from fastapi import HTTPException

from tokendash.db.sqlite_migrations import run_migrations
from tokendash.db.sync_engine import SyncEngine
from tokendash.routers import api as api_router


def _entry(uuid: str, session_id: str, timestamp: str, role: str, tokens: tuple[int, int], model=None) -> str:
    return json.dumps({
        "uuid": uuid,
        "sessionId": session_id,
        "cwd": "/home/u/myproj",
        "timestamp": timestamp,
        "isSidechain": uuid.endswith("-side"),
        "type": role,
        "message": {
            "role": role,
            "model": model,
            "content": f"{role} says hi",
            "usage": {"input_tokens": tokens[0], "output_tokens": tokens[1]},
        },
    })


class ApiRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

        self._tmp = tempfile.TemporaryDirectory()
        logs_dir = Path(self._tmp.name)
        project_dir = logs_dir / "-home-u-myproj"
        project_dir.mkdir()
        (project_dir / "a.jsonl").write_text(
            "\n".join([
                _entry("m-1", "sess-a", "2024-03-01T10:00:00Z", "user", (10, 0)),
                _entry("m-2", "sess-a", "2024-03-01T10:01:00Z", "assistant", (100, 40), "claude-sonnet"),
                _entry("m-3-side", "sess-a", "2024-03-01T10:02:00Z", "assistant", (5, 5), "claude-haiku"),
                _entry("m-4", "sess-b", "2024-03-01T12:00:00Z", "user", (1, 0)),
            ]) + "\n",
            encoding="utf-8",
        )
        await SyncEngine(self.db, logs_dir).resync()

        self._patch = patch.object(api_router.connection, "get_connection", AsyncMock(return_value=self.db))
        self._patch.start()

    async def asyncTearDown(self) -> None:
        self._patch.stop()
        await self.db.close()
        self._tmp.cleanup()

    async def test_list_sessions_orders_by_recent_activity(self) -> None:
        payload = await api_router.list_sessions(limit=50, offset=0)
        self.assertEqual(payload.count, 2)
        self.assertEqual([s.id for s in payload.sessions], ["sess-b", "sess-a"])

        first = payload.sessions[1]
        self.assertEqual(first.project_name, "myproj")
        self.assertEqual(first.total_tokens, 160)
        self.assertEqual(first.duration, 120)
        self.assertFalse(first.is_active)

    async def test_recent_sessions_respects_limit(self) -> None:
        payload = await api_router.get_recent_sessions(limit=1)
        self.assertEqual(len(payload.sessions), 1)
        self.assertEqual(payload.count, 2)

    async def test_session_detail_paginates_messages(self) -> None:
        detail = await api_router.get_session("sess-a", page=1, page_size=2, plan="pro")
        self.assertEqual(detail.session.id, "sess-a")
        self.assertEqual([m.id for m in detail.messages.messages], ["m-1", "m-2"])
        self.assertEqual(detail.messages.total, 3)
        self.assertEqual(detail.messages.total_pages, 2)
        self.assertTrue(detail.messages.has_next)
        self.assertFalse(detail.messages.has_previous)
        self.assertEqual(detail.token_usage.plan, "pro")

        last = await api_router.get_session("sess-a", page=2, page_size=2, plan="pro")
        self.assertEqual([m.id for m in last.messages.messages], ["m-3-side"])
        self.assertFalse(last.messages.has_next)

    async def test_unknown_session_is_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await api_router.get_session("missing", page=1, page_size=50, plan="pro")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_session_activity_breakdown(self) -> None:
        activity = await api_router.get_session_activity("sess-a")
        by_role = {bucket.key: bucket for bucket in activity.by_role}
        self.assertEqual(by_role["assistant"].message_count, 2)
        self.assertEqual(by_role["assistant"].total_tokens, 150)
        self.assertEqual({bucket.key for bucket in activity.by_model}, {"claude-sonnet", "claude-haiku", "unknown"})
        self.assertEqual(activity.sidechain_messages, 1)
        self.assertEqual(activity.first_message_at, "2024-03-01T10:00:00.000000Z")

    async def test_unknown_plan_is_400(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await api_router.get_token_usage(plan="platinum")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_token_usage_for_lapsed_window(self) -> None:
        usage = await api_router.get_token_usage(plan="max5")
        self.assertEqual(usage.usage_limit, 35000)
        self.assertEqual(usage.total_tokens, 0)
        self.assertEqual(usage.available_tokens, 35000)
        self.assertEqual(usage.window_start, "2024-03-01T10:00:00.000000Z")

        available = await api_router.get_available_tokens(plan="max5")
        self.assertEqual(available.available_tokens, 35000)
        self.assertEqual(available.used_tokens, 0)

    async def test_session_windows_listing(self) -> None:
        payload = await api_router.list_session_windows(limit=50, offset=0)
        self.assertEqual(payload.count, 1)
        window = payload.windows[0]
        self.assertEqual(window.total_tokens, 161)
        self.assertEqual(window.message_count, 4)
        self.assertEqual(window.session_count, 2)


if __name__ == "__main__":
    unittest.main()
