from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping


class PayloadError(ValueError):
    """Raised when a wire payload cannot be parsed."""


def parse_dt(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_speed(speed: float | None) -> float:
    """Unknown, negative or non-finite speeds count as stationary."""

    if speed is None or isinstance(speed, bool):
        return 0.0
    try:
        value = float(speed)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value < 0.0:
        return 0.0
    return value


@dataclass(frozen=True)
class LocationSample:
    latitude: float
    longitude: float
    captured_at: datetime
    speed_mps: float = 0.0
    accuracy_m: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "captured_at", as_utc(self.captured_at))
        object.__setattr__(self, "speed_mps", normalize_speed(self.speed_mps))


@dataclass(frozen=True)
class Payload:
    """Wire-ready projection of an accepted sample."""

    entity_id: str
    lat: float
    lon: float
    speed: float
    accuracy: float | None
    captured_at: str

    @property
    def captured_at_dt(self) -> datetime:
        return parse_dt(self.captured_at)

    def to_json(self) -> Dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "lat": self.lat,
            "lon": self.lon,
            "speed": self.speed,
            "accuracy": self.accuracy,
            "capturedAt": self.captured_at,
        }

    @classmethod
    def from_json(cls, raw: Mapping[str, Any]) -> Payload:
        if not isinstance(raw, Mapping):
            raise PayloadError("payload must be an object")

        entity_id = raw.get("entityId")
        if not isinstance(entity_id, str) or not entity_id:
            raise PayloadError("payload missing entityId")

        lat = _require_number(raw, "lat")
        lon = _require_number(raw, "lon")
        speed = normalize_speed(raw.get("speed"))

        accuracy_raw = raw.get("accuracy")
        accuracy = None if accuracy_raw is None else _require_number(raw, "accuracy")

        captured_at = raw.get("capturedAt")
        if not isinstance(captured_at, str) or not captured_at.strip():
            raise PayloadError("payload missing capturedAt")
        try:
            parse_dt(captured_at)
        except ValueError as exc:
            raise PayloadError(f"payload capturedAt is not ISO-8601: {captured_at!r}") from exc

        return cls(
            entity_id=entity_id,
            lat=lat,
            lon=lon,
            speed=speed,
            accuracy=accuracy,
            captured_at=captured_at,
        )


def make_payload(sample: LocationSample, *, entity_id: str) -> Payload:
    return Payload(
        entity_id=entity_id,
        lat=float(sample.latitude),
        lon=float(sample.longitude),
        speed=sample.speed_mps,
        accuracy=None if sample.accuracy_m is None else float(sample.accuracy_m),
        captured_at=sample.captured_at.isoformat(),
    )


def _require_number(raw: Mapping[str, Any], key: str) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"payload field {key!r} must be a number")
    return float(value)
