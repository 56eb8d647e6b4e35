"""tokendash FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokendash import config
from tokendash.routers.api import sessions_router, usage_router
from tokendash.routers.sync import sync_router

from tokendash.db import connection, sqlite_migrations, sync_engine
from tokendash.db.sync_scheduler import sync_scheduler
from tokendash.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("tokendash")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("tokendash backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await sqlite_migrations.run_migrations(db)

    # 3. Initialize Sync Engine
    sync = sync_engine.SyncEngine(
        db,
        config.LOGS_DIR,
        window_hours=config.WINDOW_HOURS,
        session_idle_minutes=config.SESSION_IDLE_MINUTES,
    )
    app.state.sync_engine = sync

    # 4. Periodic resync (first tick shortly after startup)
    logger.info(f"Watching transcript logs under {config.LOGS_DIR}")
    await sync_scheduler.start(
        sync,
        config.SYNC_INTERVAL_SECONDS,
        initial_delay=config.STARTUP_SYNC_DELAY_SECONDS,
    )

    yield

    logger.info("tokendash backend shutting down")
    await sync_scheduler.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="tokendash API",
    description="Session and token-usage API for AI coding assistant transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(sessions_router)
app.include_router(usage_router)
app.include_router(sync_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "scheduler": "running" if sync_scheduler.is_running else "stopped",
    }
