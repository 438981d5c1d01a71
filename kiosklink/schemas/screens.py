from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
import enum


class Screen(BaseModel):
    """A screen row as returned by the store (any subset of columns)."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Opaque store-assigned identifier")
    code: Optional[str] = Field(None, description="Short pairing code")
    name: Optional[str] = Field(None, description="Device hostname, if any")
    assigned_path: Optional[str] = Field(None, description="Content route; null means awaiting assignment")
    last_seen: Optional[datetime] = None
    current_page: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


class ScreenInsert(BaseModel):
    """Payload for registering a new screen."""

    code: str
    last_seen: datetime
    user_agent: Optional[str] = None
    name: Optional[str] = None


class ScreenHeartbeat(BaseModel):
    """Liveness fields written by every heartbeat."""

    last_seen: datetime
    current_page: Optional[str] = None
    user_agent: Optional[str] = None
    name: Optional[str] = None


class DeviceState(str, enum.Enum):
    """Device state for the current page load."""
    BOOTING = "booting"
    REGISTERING = "registering"
    WAITING = "waiting"
    STALLED = "stalled"
    ASSIGNED = "assigned"
    NAVIGATING = "navigating"


class DeviceStatusResponse(BaseModel):
    """Response schema for the local device status endpoint."""

    state: DeviceState
    current_path: Optional[str] = None
    screen_id: Optional[str] = None
    code: Optional[str] = None
    hostname: Optional[str] = None
