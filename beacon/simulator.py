from __future__ import annotations

import argparse
import logging
import math
import queue
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

from dotenv import load_dotenv

from .config import AgentConfigError, load_agent_config_from_env
from .connectivity import ConnectivityConfigError, build_connectivity_monitor_from_env
from .interval_policy import IntervalPolicyError
from .models import LocationSample
from .observability import configure_logging
from .runtime import build_runtime

logger = logging.getLogger("geobeacon.simulator")

_METERS_PER_DEGREE_LAT = 111_320.0

# (speed m/s, label) cycled through so every interval band gets exercised.
_PHASES: tuple[tuple[float, str], ...] = (
    (0.0, "still"),
    (1.4, "walking"),
    (4.5, "cycling"),
    (13.0, "vehicle"),
)


def synthetic_track(
    *,
    start_lat: float,
    start_lon: float,
    start_at: datetime,
    step_s: float,
    phase_steps: int,
    rng: random.Random,
) -> Iterator[LocationSample]:
    """Endless track that cycles still -> walking -> cycling -> vehicle."""

    lat = start_lat
    lon = start_lon
    heading = rng.uniform(0.0, 2.0 * math.pi)
    step = 0
    while True:
        base_speed, _ = _PHASES[(step // max(1, phase_steps)) % len(_PHASES)]
        speed = max(0.0, base_speed * rng.uniform(0.85, 1.15)) if base_speed > 0 else 0.0
        heading += rng.uniform(-0.2, 0.2)

        dist = speed * step_s
        lat += dist * math.cos(heading) / _METERS_PER_DEGREE_LAT
        lon += dist * math.sin(heading) / (_METERS_PER_DEGREE_LAT * max(0.01, math.cos(math.radians(lat))))

        yield LocationSample(
            latitude=lat,
            longitude=lon,
            captured_at=start_at + timedelta(seconds=step * step_s),
            speed_mps=speed,
            accuracy_m=round(rng.uniform(3.0, 12.0), 1),
        )
        step += 1


class SimulatedLink:
    """Connectivity oracle that is forced offline inside a simulated window."""

    def __init__(self, upstream: Callable[[], bool]) -> None:
        self.upstream = upstream
        self.forced_offline = False

    def __call__(self) -> bool:
        if self.forced_offline:
            return False
        return bool(self.upstream())


def main() -> None:
    """geobeacon simulator.

    Feeds a synthetic track through the real tracker, buffer and flush
    scheduler. Sample timestamps advance by --step-s per tick regardless of
    wall-clock pacing, so hours of movement can be replayed in seconds.
    """

    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    parser = argparse.ArgumentParser(description="geobeacon simulator (adaptive send + buffering)")
    parser.add_argument("--steps", type=int, default=240, help="Number of samples to generate")
    parser.add_argument("--step-s", type=float, default=30.0, help="Simulated seconds between samples")
    parser.add_argument("--tick-s", type=float, default=0.25, help="Wall-clock seconds between samples")
    parser.add_argument("--phase-steps", type=int, default=60, help="Samples per movement phase")
    parser.add_argument("--start-lat", type=float, default=37.7749)
    parser.add_argument("--start-lon", type=float, default=-122.4194)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument(
        "--simulate-offline-after-s",
        type=int,
        default=0,
        help="Force the link offline after N simulated seconds (buffer only)",
    )
    parser.add_argument(
        "--resume-after-s",
        type=int,
        default=0,
        help="Bring the link back after N simulated seconds (flush buffer)",
    )
    parser.add_argument(
        "--background",
        action="store_true",
        help="Also replay every sample through a background-source thread",
    )
    args = parser.parse_args()

    try:
        config = load_agent_config_from_env()
    except AgentConfigError as exc:
        raise SystemExit(f"[geobeacon-sim] invalid config: {exc}") from exc

    configure_logging(level=config.log_level, log_format=config.log_format)

    try:
        upstream = build_connectivity_monitor_from_env()
    except ConnectivityConfigError as exc:
        raise SystemExit(f"[geobeacon-sim] invalid connectivity config: {exc}") from exc

    link = SimulatedLink(upstream)
    try:
        runtime = build_runtime(config, is_connected=link)
    except IntervalPolicyError as exc:
        raise SystemExit(f"[geobeacon-sim] invalid interval policy: {exc}") from exc

    logger.info(
        "offline_after=%ss resume_after=%ss steps=%s step_s=%s",
        args.simulate_offline_after_s,
        args.resume_after_s,
        args.steps,
        args.step_s,
    )

    background_q: queue.Queue[LocationSample | None] = queue.Queue()
    background_thread: threading.Thread | None = None
    if args.background:
        background_thread = threading.Thread(
            target=_background_worker,
            args=(runtime.tracker, background_q),
            name="geobeacon-background",
            daemon=True,
        )
        background_thread.start()

    runtime.start()
    track = synthetic_track(
        start_lat=args.start_lat,
        start_lon=args.start_lon,
        start_at=datetime.now(timezone.utc),
        step_s=args.step_s,
        phase_steps=args.phase_steps,
        rng=random.Random(args.seed),
    )

    try:
        for idx, sample in zip(range(args.steps), track):
            elapsed = idx * args.step_s
            offline = args.simulate_offline_after_s > 0 and elapsed >= args.simulate_offline_after_s
            if args.resume_after_s > 0 and elapsed >= args.resume_after_s:
                offline = False

            if offline != link.forced_offline:
                link.forced_offline = offline
                logger.info("simulated link %s at t=%ss", "DOWN" if offline else "UP", int(elapsed))
                runtime.flusher.notify_connectivity(not offline)

            result = runtime.tracker.handle_sample(sample, source="foreground")
            if result is not None:
                logger.info(
                    "t=%ss speed=%.1f -> %s queue=%s",
                    int(elapsed),
                    sample.speed_mps,
                    result.value,
                    runtime.buffer.count(),
                )
            if background_thread is not None:
                background_q.put(sample)

            time.sleep(max(0.0, args.tick_s))
    except KeyboardInterrupt:
        logger.info("interrupted")
    finally:
        if background_thread is not None:
            background_q.put(None)
            background_thread.join(timeout=5.0)
        runtime.flusher.flush_once()
        runtime.stop()
        logger.info("metrics %s", runtime.pipeline.metrics())


def _background_worker(tracker, samples: "queue.Queue[LocationSample | None]", batch_size: int = 5) -> None:
    batch: list[LocationSample] = []
    while True:
        item = samples.get()
        if item is not None:
            batch.append(item)
        if batch and (item is None or len(batch) >= batch_size):
            tracker.handle_samples(batch, source="background")
            batch = []
        if item is None:
            return


if __name__ == "__main__":
    main()
