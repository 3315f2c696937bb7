from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LocationUpdateIn(BaseModel):
    """Body of POST /api/location/update, as sent by the agent."""

    model_config = ConfigDict(extra="allow")

    entityId: str = Field(..., min_length=1, max_length=256)
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)
    speed: Optional[float] = Field(None, ge=0.0)
    accuracy: Optional[float] = Field(None, ge=0.0)
    capturedAt: Optional[str] = None


class LocationUpdateOut(BaseModel):
    success: bool
    message: str
    receivedAt: str


class LocationHistoryOut(BaseModel):
    locations: List[Dict[str, Any]]
    count: int


class HealthOut(BaseModel):
    status: str
    timestamp: str
