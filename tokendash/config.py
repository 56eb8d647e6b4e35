"""tokendash Backend Configuration."""
import json
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_plan_limits(name: str, default: dict[str, int]) -> dict[str, int]:
    value = os.getenv(name)
    if not value:
        return dict(default)
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return dict(default)
    if not isinstance(parsed, dict):
        return dict(default)
    limits = dict(default)
    for plan, limit in parsed.items():
        try:
            limits[str(plan).strip().lower()] = int(limit)
        except (TypeError, ValueError):
            continue
    return limits


# Project root (one level up from tokendash/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Source logs: one subdirectory per project, each holding *.jsonl transcripts
LOGS_DIR = Path(os.getenv("TOKENDASH_LOGS_DIR", str(Path.home() / ".claude" / "projects"))).expanduser()

# Database
DB_PATH = Path(os.getenv("TOKENDASH_DB_PATH", str(PROJECT_ROOT / "data" / "tokendash.db"))).expanduser()

# Aggregation
WINDOW_HOURS = _env_int("TOKENDASH_WINDOW_HOURS", 5)
SESSION_IDLE_MINUTES = _env_int("TOKENDASH_SESSION_IDLE_MINUTES", 30)
DEFAULT_PLAN = os.getenv("TOKENDASH_DEFAULT_PLAN", "pro").strip().lower() or "pro"
PLAN_LIMITS = _env_plan_limits(
    "TOKENDASH_PLAN_LIMITS",
    {"pro": 7000, "max5": 35000, "max20": 140000},
)

# Sync scheduling (0 disables the periodic resync)
SYNC_INTERVAL_SECONDS = _env_int("TOKENDASH_SYNC_INTERVAL_SECONDS", 300)
STARTUP_SYNC_DELAY_SECONDS = _env_int("TOKENDASH_STARTUP_SYNC_DELAY_SECONDS", 2)

# Observability
OTEL_ENABLED = _env_bool("TOKENDASH_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("TOKENDASH_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("TOKENDASH_OTEL_SERVICE_NAME", "tokendash-backend")
PROM_PORT = _env_int("TOKENDASH_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("TOKENDASH_HOST", "0.0.0.0")
PORT = int(os.getenv("TOKENDASH_PORT", "8080"))

# CORS
FRONTEND_ORIGIN = os.getenv("TOKENDASH_FRONTEND_ORIGIN", "http://localhost:3000")
