from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

import yaml

from .models import normalize_speed


class IntervalPolicyError(ValueError):
    """Invalid interval policy configuration."""


@dataclass(frozen=True)
class SpeedBand:
    name: str
    min_speed_mps: float
    interval_s: float

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.interval_s)


@dataclass(frozen=True)
class IntervalPolicy:
    """Step function from speed to the minimum reporting interval.

    Bands are sorted by ascending `min_speed_mps`; a speed belongs to the last
    band whose lower bound (inclusive) it reaches.
    """

    bands: tuple[SpeedBand, ...]

    def band_for(self, speed_mps: float | None) -> SpeedBand:
        speed = normalize_speed(speed_mps)
        selected = self.bands[0]
        for band in self.bands:
            if speed >= band.min_speed_mps:
                selected = band
            else:
                break
        return selected

    def minimum_interval(self, speed_mps: float | None) -> timedelta:
        return self.band_for(speed_mps).interval


DEFAULT_INTERVAL_POLICY = IntervalPolicy(
    bands=(
        SpeedBand(name="still", min_speed_mps=0.0, interval_s=15 * 60),
        SpeedBand(name="walking", min_speed_mps=0.5, interval_s=5 * 60),
        SpeedBand(name="cycling", min_speed_mps=2.0, interval_s=2 * 60),
        SpeedBand(name="vehicle", min_speed_mps=6.0, interval_s=60),
    )
)


def minimum_interval(speed_mps: float | None) -> timedelta:
    return DEFAULT_INTERVAL_POLICY.minimum_interval(speed_mps)


def load_interval_policy(path: Path) -> IntervalPolicy:
    if not path.exists():
        raise IntervalPolicyError(f"interval policy file does not exist: {path}")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise IntervalPolicyError(f"failed to parse interval policy at {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise IntervalPolicyError(f"interval policy at {path} must be a YAML object")
    return parse_interval_policy(loaded, origin=str(path))


def parse_interval_policy(raw: Mapping[str, Any], *, origin: str) -> IntervalPolicy:
    """Parse `{"bands": [{"name", "min_speed_mps", "interval_s"}, ...]}`.

    Bands must start at 0 m/s, have strictly ascending thresholds and
    non-increasing intervals (faster never reports less often).
    """

    raw_bands = raw.get("bands")
    if not isinstance(raw_bands, list) or not raw_bands:
        raise IntervalPolicyError(f"{origin}: 'bands' must be a non-empty list")

    bands: list[SpeedBand] = []
    for idx, item in enumerate(raw_bands):
        if not isinstance(item, Mapping):
            raise IntervalPolicyError(f"{origin}: bands[{idx}] must be an object")
        name = str(item.get("name") or f"band_{idx}").strip()
        min_speed = _as_non_negative(item.get("min_speed_mps"), f"{origin}: bands[{idx}].min_speed_mps")
        interval_s = _as_non_negative(item.get("interval_s"), f"{origin}: bands[{idx}].interval_s")
        bands.append(SpeedBand(name=name, min_speed_mps=min_speed, interval_s=interval_s))

    if bands[0].min_speed_mps != 0.0:
        raise IntervalPolicyError(f"{origin}: first band must start at min_speed_mps=0")

    for prev, cur in zip(bands, bands[1:]):
        if cur.min_speed_mps <= prev.min_speed_mps:
            raise IntervalPolicyError(
                f"{origin}: band {cur.name!r} threshold must be greater than {prev.name!r}"
            )
        if cur.interval_s > prev.interval_s:
            raise IntervalPolicyError(
                f"{origin}: band {cur.name!r} interval must not exceed {prev.name!r}"
            )

    return IntervalPolicy(bands=tuple(bands))


def _as_non_negative(value: Any, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise IntervalPolicyError(f"{label} must be a number")
    if value < 0:
        raise IntervalPolicyError(f"{label} must be >= 0")
    return float(value)
