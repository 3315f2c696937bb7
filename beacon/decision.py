from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator

from .geo import haversine_distance_m
from .interval_policy import DEFAULT_INTERVAL_POLICY, IntervalPolicy
from .models import LocationSample, Payload, as_utc

DISTANCE_THRESHOLD_M = 10.0


@dataclass(frozen=True)
class DeliveryState:
    """Last position the collector is known to have accepted."""

    latitude: float
    longitude: float
    sent_at: datetime

    @classmethod
    def from_payload(cls, payload: Payload) -> DeliveryState:
        return cls(latitude=payload.lat, longitude=payload.lon, sent_at=payload.captured_at_dt)


class DeliveryStateHolder:
    """Process-wide owner of the current DeliveryState.

    Sample sources hold `locked()` across decide-then-deliver so two sources
    cannot both pass the throttle against the same stale state. The lock is
    re-entrant because the delivery pipeline calls `set()` while the tracker
    still holds it.
    """

    def __init__(self, initial: DeliveryState | None = None) -> None:
        self._lock = threading.RLock()
        self._state = initial

    @contextmanager
    def locked(self) -> Iterator[DeliveryState | None]:
        with self._lock:
            yield self._state

    def get(self) -> DeliveryState | None:
        with self._lock:
            return self._state

    def set(self, state: DeliveryState) -> None:
        with self._lock:
            self._state = state


@dataclass(frozen=True)
class Decision:
    send: bool
    reason: str
    distance_m: float | None = None
    elapsed: timedelta | None = None
    interval: timedelta | None = None


def evaluate_sample(
    sample: LocationSample,
    state: DeliveryState | None,
    *,
    policy: IntervalPolicy = DEFAULT_INTERVAL_POLICY,
    distance_threshold_m: float = DISTANCE_THRESHOLD_M,
) -> Decision:
    """Apply the distance floor and the time floor; both must be met."""

    if state is None:
        return Decision(send=True, reason="first_sample")

    distance_m = haversine_distance_m(state.latitude, state.longitude, sample.latitude, sample.longitude)

    # Sensor clocks can regress; never let a negative gap count as elapsed time.
    elapsed = as_utc(sample.captured_at) - as_utc(state.sent_at)
    if elapsed < timedelta(0):
        elapsed = timedelta(0)

    interval = policy.minimum_interval(sample.speed_mps)

    if distance_m < distance_threshold_m:
        reason = "distance_floor"
    elif elapsed < interval:
        reason = "time_floor"
    else:
        return Decision(send=True, reason="moved", distance_m=distance_m, elapsed=elapsed, interval=interval)

    return Decision(send=False, reason=reason, distance_m=distance_m, elapsed=elapsed, interval=interval)


def should_send(
    sample: LocationSample,
    state: DeliveryState | None,
    *,
    policy: IntervalPolicy = DEFAULT_INTERVAL_POLICY,
    distance_threshold_m: float = DISTANCE_THRESHOLD_M,
) -> bool:
    return evaluate_sample(
        sample,
        state,
        policy=policy,
        distance_threshold_m=distance_threshold_m,
    ).send
