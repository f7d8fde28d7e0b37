"""Pydantic models for session state."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class BrowserState(str, Enum):
    """Lifecycle of the pooled browser process."""

    ABSENT = "absent"
    LAUNCHING = "launching"
    READY = "ready"
    CLOSING = "closing"


class SessionStatus(BaseModel):
    """Current state of one streaming session."""

    id: str
    state: SessionState = SessionState.CONNECTING
    created_at: str = Field(default="", serialization_alias="createdAt")
    profile_dir: Optional[str] = Field(default=None, serialization_alias="profileDir")


class BrowserSnapshot(BaseModel):
    mode: str
    state: BrowserState = BrowserState.ABSENT
    launches: int = 0
    active_leases: int = Field(default=0, serialization_alias="activeLeases")


class HealthStatus(BaseModel):
    status: str = "healthy"
    timestamp: str
    server: str
    sessions: int = 0
    browser: BrowserSnapshot
    proxy: dict = Field(default_factory=dict)
    normalizer: str = "semantic"
    features: list[str] = Field(default_factory=list)
