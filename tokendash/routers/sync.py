"""Resync trigger + sync observability API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel

from tokendash.db.sync_engine import SyncInProgressError, SyncSourceError
from tokendash.db.sync_scheduler import sync_scheduler

logger = logging.getLogger("tokendash.api.sync")

sync_router = APIRouter(prefix="/api", tags=["sync"])


class SyncRequest(BaseModel):
    force: bool = False
    background: bool = True
    trigger: str = "api"


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


async def _run_background_sync(sync_engine, *, force: bool, operation_id: str, trigger: str) -> None:
    # Never queue: a second trigger racing the first is recorded as skipped.
    try:
        await sync_engine.resync(force=force, wait=False, operation_id=operation_id, trigger=trigger)
    except SyncInProgressError:
        logger.info(f"Background sync {operation_id} skipped: another sync is in progress")
    except SyncSourceError as exc:
        logger.error(f"Background sync {operation_id} aborted: {exc}")


@sync_router.post("/sync-logs")
async def sync_logs(request: Request, background_tasks: BackgroundTasks, body: SyncRequest | None = None):
    """Trigger a resync of all transcript logs."""
    body = body or SyncRequest()
    sync_engine = _get_sync_engine(request)
    if sync_engine.is_syncing:
        raise HTTPException(status_code=409, detail="A log sync is already in progress")

    if body.background:
        operation_id = await sync_engine.start_operation(
            "resync",
            trigger=body.trigger,
            metadata={"force": bool(body.force)},
        )
        background_tasks.add_task(
            _run_background_sync,
            sync_engine,
            force=body.force,
            operation_id=operation_id,
            trigger=body.trigger,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Log sync started",
            "operationId": operation_id,
        }

    try:
        stats = await sync_engine.resync(force=body.force, wait=False, trigger=body.trigger)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except SyncSourceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    operation_id = str(stats.get("operation_id") or "")
    return {
        "status": "ok",
        "mode": "foreground",
        "message": "Log sync completed",
        "operationId": operation_id,
        "stats": stats,
    }


@sync_router.get("/sync/status")
async def get_sync_status(request: Request):
    """Return sync engine + scheduler status, including live operations."""
    sync_engine = _get_sync_engine(request)
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "logsDir": str(sync_engine.logs_dir),
        "syncInFlight": sync_engine.is_syncing,
        "scheduler": "running" if sync_scheduler.is_running else "stopped",
        "operations": observability,
    }


@sync_router.get("/sync/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync operations."""
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/sync/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    """Get one sync operation by ID."""
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation
