from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from beacon.interval_policy import (
    DEFAULT_INTERVAL_POLICY,
    IntervalPolicyError,
    load_interval_policy,
    minimum_interval,
    parse_interval_policy,
)


@pytest.mark.parametrize(
    ("speed", "expected"),
    [
        (0.0, timedelta(minutes=15)),
        (0.49, timedelta(minutes=15)),
        (0.5, timedelta(minutes=5)),
        (1.99, timedelta(minutes=5)),
        (2.0, timedelta(minutes=2)),
        (5.99, timedelta(minutes=2)),
        (6.0, timedelta(minutes=1)),
        (40.0, timedelta(minutes=1)),
    ],
)
def test_band_boundaries_are_inclusive_on_the_lower_bound(speed: float, expected: timedelta) -> None:
    assert minimum_interval(speed) == expected


@pytest.mark.parametrize("speed", [None, -3.0, float("nan"), float("-inf")])
def test_missing_or_invalid_speed_counts_as_stationary(speed) -> None:
    assert minimum_interval(speed) == timedelta(minutes=15)


def test_interval_never_increases_with_speed() -> None:
    speeds = [i * 0.05 for i in range(0, 400)]
    intervals = [minimum_interval(s) for s in speeds]
    for slower, faster in zip(intervals, intervals[1:]):
        assert slower >= faster


def test_band_for_reports_band_name() -> None:
    assert DEFAULT_INTERVAL_POLICY.band_for(1.0).name == "walking"
    assert DEFAULT_INTERVAL_POLICY.band_for(12.0).name == "vehicle"


def test_load_interval_policy_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "bands.yaml"
    path.write_text(
        "\n".join(
            [
                "bands:",
                "  - {name: parked, min_speed_mps: 0, interval_s: 1800}",
                "  - {name: moving, min_speed_mps: 1.0, interval_s: 90}",
            ]
        ),
        encoding="utf-8",
    )

    policy = load_interval_policy(path)

    assert [b.name for b in policy.bands] == ["parked", "moving"]
    assert policy.minimum_interval(0.2) == timedelta(minutes=30)
    assert policy.minimum_interval(3.0) == timedelta(seconds=90)


def test_missing_policy_file_raises(tmp_path: Path) -> None:
    with pytest.raises(IntervalPolicyError):
        load_interval_policy(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "bands",
    [
        [],
        [{"name": "a", "min_speed_mps": 1.0, "interval_s": 60}],
        [
            {"name": "a", "min_speed_mps": 0.0, "interval_s": 60},
            {"name": "b", "min_speed_mps": 2.0, "interval_s": 120},
        ],
        [
            {"name": "a", "min_speed_mps": 0.0, "interval_s": 120},
            {"name": "b", "min_speed_mps": 0.0, "interval_s": 60},
        ],
        [{"name": "a", "min_speed_mps": 0.0, "interval_s": "soon"}],
    ],
)
def test_parse_interval_policy_rejects_invalid_bands(bands) -> None:
    with pytest.raises(IntervalPolicyError):
        parse_interval_policy({"bands": bands}, origin="test")
