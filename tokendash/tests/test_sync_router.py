import types
import unittest

from fastapi import BackgroundTasks, HTTPException

from tokendash.db.sync_engine import SyncInProgressError, SyncSourceError
from tokendash.routers import sync as sync_router


class _FakeSyncEngine:
    def __init__(self, *, syncing: bool = False, error: Exception | None = None) -> None:
        self.logs_dir = "/tmp/logs"
        self.is_syncing = syncing
        self.error = error
        self.started_ops: list[dict] = []
        self.resync_calls: list[dict] = []

    async def get_observability_snapshot(self):
        return {"syncInFlight": self.is_syncing, "activeOperationCount": 0, "activeOperations": [], "recentOperations": [], "trackedOperationCount": 1}

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "completed"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}

    async def start_operation(self, kind, trigger="api", metadata=None):
        self.started_ops.append({"kind": kind, "trigger": trigger, "metadata": metadata or {}})
        return "OP-STARTED"

    async def resync(self, force=False, wait=True, operation_id=None, trigger="api"):
        self.resync_calls.append({"force": force, "wait": wait, "operation_id": operation_id, "trigger": trigger})
        if self.error:
            raise self.error
        return {"operation_id": operation_id or "OP-FOREGROUND", "files_synced": 1, "lines_processed": 2}


class SyncRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, engine):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(sync_engine=engine)
            )
        )

    async def test_background_sync_returns_operation_id(self) -> None:
        engine = _FakeSyncEngine()
        background = BackgroundTasks()

        payload = await sync_router.sync_logs(
            self._request(engine),
            background,
            sync_router.SyncRequest(force=True, background=True),
        )

        self.assertEqual(payload["mode"], "background")
        self.assertEqual(payload["operationId"], "OP-STARTED")
        self.assertEqual(len(background.tasks), 1)
        self.assertEqual(engine.started_ops[0]["metadata"], {"force": True})
        self.assertEqual(engine.resync_calls, [])

    async def test_foreground_sync_returns_stats(self) -> None:
        engine = _FakeSyncEngine()

        payload = await sync_router.sync_logs(
            self._request(engine),
            BackgroundTasks(),
            sync_router.SyncRequest(background=False, trigger="manual"),
        )

        self.assertEqual(payload["mode"], "foreground")
        self.assertEqual(payload["stats"]["lines_processed"], 2)
        self.assertEqual(payload["operationId"], "OP-FOREGROUND")
        self.assertEqual(engine.resync_calls[0], {"force": False, "wait": False, "operation_id": None, "trigger": "manual"})

    async def test_background_task_never_queues_behind_running_sync(self) -> None:
        engine = _FakeSyncEngine()
        background = BackgroundTasks()
        await sync_router.sync_logs(self._request(engine), background, sync_router.SyncRequest(force=True))

        await background()

        self.assertEqual(
            engine.resync_calls,
            [{"force": True, "wait": False, "operation_id": "OP-STARTED", "trigger": "api"}],
        )

    async def test_background_race_is_recorded_not_raised(self) -> None:
        engine = _FakeSyncEngine(error=SyncInProgressError("busy"))
        background = BackgroundTasks()
        payload = await sync_router.sync_logs(self._request(engine), background, sync_router.SyncRequest())
        self.assertEqual(payload["mode"], "background")

        await background()

        self.assertEqual(engine.resync_calls[0]["wait"], False)

    async def test_sync_while_running_is_conflict(self) -> None:
        engine = _FakeSyncEngine(syncing=True)
        with self.assertRaises(HTTPException) as ctx:
            await sync_router.sync_logs(self._request(engine), BackgroundTasks(), None)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(engine.started_ops, [])

    async def test_foreground_race_maps_to_conflict(self) -> None:
        engine = _FakeSyncEngine(error=SyncInProgressError("busy"))
        with self.assertRaises(HTTPException) as ctx:
            await sync_router.sync_logs(
                self._request(engine), BackgroundTasks(), sync_router.SyncRequest(background=False)
            )
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_missing_log_root_is_server_error(self) -> None:
        engine = _FakeSyncEngine(error=SyncSourceError("log directory not found"))
        with self.assertRaises(HTTPException) as ctx:
            await sync_router.sync_logs(
                self._request(engine), BackgroundTasks(), sync_router.SyncRequest(background=False)
            )
        self.assertEqual(ctx.exception.status_code, 500)

    async def test_missing_engine_is_unavailable(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await sync_router.get_sync_status(self._request(None))
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_status_includes_operations(self) -> None:
        payload = await sync_router.get_sync_status(self._request(_FakeSyncEngine()))
        self.assertEqual(payload["logsDir"], "/tmp/logs")
        self.assertFalse(payload["syncInFlight"])
        self.assertIn("operations", payload)

    async def test_operation_lookup(self) -> None:
        engine = _FakeSyncEngine()
        listing = await sync_router.list_sync_operations(self._request(engine), limit=5)
        self.assertEqual(listing["count"], 1)

        operation = await sync_router.get_sync_operation(self._request(engine), "OP-1")
        self.assertEqual(operation["id"], "OP-1")

        with self.assertRaises(HTTPException) as ctx:
            await sync_router.get_sync_operation(self._request(engine), "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
