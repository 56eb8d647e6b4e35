"""Pydantic models for parsed log entries and API payloads."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokendash.date_utils import parse_timestamp


# ── Source log records ──────────────────────────────────────────────

class LogUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    service_tier: Optional[str] = None

    @field_validator(
        "input_tokens",
        "output_tokens",
        "cache_creation_input_tokens",
        "cache_read_input_tokens",
        mode="before",
    )
    @classmethod
    def _null_count_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class LogMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    role: Optional[str] = None
    model: Optional[str] = None
    content: Any = None
    usage: Optional[LogUsage] = None


class LogEntry(BaseModel):
    """One decoded line of an assistant transcript."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uuid: str = Field(min_length=1)
    parent_uuid: Optional[str] = Field(default=None, alias="parentUuid")
    session_id: str = Field(min_length=1, alias="sessionId")
    cwd: Optional[str] = None
    timestamp: datetime
    is_sidechain: bool = Field(default=False, alias="isSidechain")
    user_type: Optional[str] = Field(default=None, alias="userType")
    type: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")
    message: Optional[LogMessage] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime:
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ValueError(f"unparseable timestamp: {value!r}")
        return parsed

    @field_validator("is_sidechain", mode="before")
    @classmethod
    def _null_sidechain(cls, value: Any) -> Any:
        return False if value is None else value


# ── Stored / API models ─────────────────────────────────────────────

class Session(BaseModel):
    id: str
    project_name: str
    project_path: str
    start_time: str
    end_time: Optional[str] = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    message_count: int = 0
    status: str = "active"
    created_at: str = ""
    duration: int = 0  # seconds
    is_active: bool = False
    last_activity: str = ""


class SessionList(BaseModel):
    sessions: list[Session]
    count: int


class Message(BaseModel):
    id: str
    session_id: str
    session_window_id: Optional[str] = None
    parent_uuid: Optional[str] = None
    is_sidechain: bool = False
    user_type: Optional[str] = None
    message_type: Optional[str] = None
    message_role: Optional[str] = None
    model: Optional[str] = None
    content: Optional[str] = None
    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0
    service_tier: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: str
    created_at: str = ""


class PaginatedMessages(BaseModel):
    messages: list[Message]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool


class SessionWindow(BaseModel):
    id: str
    window_start: str
    window_end: str
    reset_time: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    message_count: int = 0
    session_count: int = 0
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""


class SessionWindowList(BaseModel):
    windows: list[SessionWindow]
    count: int


class TokenUsage(BaseModel):
    plan: str
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    usage_limit: int = 0
    available_tokens: int = 0
    usage_rate: float = 0.0  # tokens per minute of elapsed window time
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    reset_time: Optional[str] = None
    active_sessions: int = 0
    total_messages: int = 0


class AvailableTokens(BaseModel):
    available_tokens: int
    plan: str
    usage_limit: int
    used_tokens: int


class SessionDetail(BaseModel):
    session: Session
    messages: PaginatedMessages
    token_usage: TokenUsage


class ActivityBucket(BaseModel):
    key: str
    message_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class SessionActivity(BaseModel):
    session_id: str
    by_role: list[ActivityBucket] = Field(default_factory=list)
    by_model: list[ActivityBucket] = Field(default_factory=list)
    sidechain_messages: int = 0
    first_message_at: Optional[str] = None
    last_message_at: Optional[str] = None
