from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from beacon.models import LocationSample, Payload, PayloadError, make_payload


def test_make_payload_projects_sample_to_wire_shape() -> None:
    sample = LocationSample(
        latitude=51.5,
        longitude=-0.12,
        captured_at=datetime(2026, 3, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2))),
        speed_mps=None,  # type: ignore[arg-type]
        accuracy_m=4.5,
    )

    payload = make_payload(sample, entity_id="entity-7")

    assert payload.to_json() == {
        "entityId": "entity-7",
        "lat": 51.5,
        "lon": -0.12,
        "speed": 0.0,
        "accuracy": 4.5,
        "capturedAt": "2026-03-01T12:00:00+00:00",
    }
    assert payload.captured_at_dt == datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_negative_speed_is_clamped_to_zero() -> None:
    sample = LocationSample(latitude=0.0, longitude=0.0, captured_at=datetime.now(timezone.utc), speed_mps=-2.0)
    assert sample.speed_mps == 0.0


def test_from_json_accepts_zulu_timestamps() -> None:
    payload = Payload.from_json(
        {
            "entityId": "e",
            "lat": 0,
            "lon": 1,
            "speed": 2.5,
            "accuracy": None,
            "capturedAt": "2026-03-01T12:00:00Z",
        }
    )
    assert payload.lon == 1.0
    assert payload.accuracy is None
    assert payload.captured_at_dt.tzinfo is not None


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"entityId": "e", "lat": "1", "lon": 0, "capturedAt": "2026-03-01T12:00:00Z"},
        {"entityId": "e", "lat": 1, "lon": 0},
        {"entityId": "e", "lat": 1, "lon": 0, "capturedAt": "yesterday"},
        {"entityId": "", "lat": 1, "lon": 0, "capturedAt": "2026-03-01T12:00:00Z"},
    ],
)
def test_from_json_rejects_malformed_payloads(raw) -> None:
    with pytest.raises(PayloadError):
        Payload.from_json(raw)
