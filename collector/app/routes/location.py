from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from ..schemas import HealthOut, LocationHistoryOut, LocationUpdateIn, LocationUpdateOut
from ..store import LocationHistory

logger = logging.getLogger("geobeacon.collector")

router = APIRouter(tags=["location"])


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _history(request: Request) -> LocationHistory:
    return request.app.state.history


@router.post("/api/location/update", response_model=LocationUpdateOut)
def location_update(req: LocationUpdateIn, request: Request) -> LocationUpdateOut:
    received_at = _utcnow_iso()
    record = req.model_dump()
    record["receivedAt"] = received_at
    _history(request).add(record)

    logger.info(
        "location update entity=%s lat=%.6f lon=%.6f captured_at=%s",
        req.entityId,
        req.lat,
        req.lon,
        req.capturedAt,
    )
    return LocationUpdateOut(success=True, message="Location update received", receivedAt=received_at)


@router.get("/api/location/history", response_model=LocationHistoryOut)
def location_history(request: Request) -> LocationHistoryOut:
    locations = _history(request).snapshot()
    return LocationHistoryOut(locations=locations, count=len(locations))


@router.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    return HealthOut(status="ok", timestamp=_utcnow_iso())
