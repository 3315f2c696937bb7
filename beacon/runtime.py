from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import requests

from .buffer import SqliteBuffer
from .config import AgentConfig
from .connectivity import ConnectivityMonitor, build_connectivity_monitor_from_env
from .credentials import TokenStore
from .decision import DeliveryStateHolder
from .delivery import DeliveryPipeline, HTTPSession
from .flush import FlushScheduler
from .interval_policy import DEFAULT_INTERVAL_POLICY, IntervalPolicy, load_interval_policy
from .tracker import LocationTracker

logger = logging.getLogger("geobeacon.runtime")


@dataclass
class BeaconRuntime:
    config: AgentConfig
    buffer: SqliteBuffer
    state: DeliveryStateHolder
    pipeline: DeliveryPipeline
    tracker: LocationTracker
    flusher: FlushScheduler
    connectivity: Callable[[], bool]

    def start(self) -> None:
        self.flusher.start()

    def stop(self) -> None:
        self.flusher.stop()


def build_buffer(config: AgentConfig) -> SqliteBuffer:
    return SqliteBuffer(
        config.buffer_path,
        max_messages=config.buffer_max_messages,
        journal_mode=config.buffer_journal_mode,
        synchronous=config.buffer_synchronous,
        temp_store=config.buffer_temp_store,
        recover_corruption=config.buffer_recover_corruption,
    )


def build_runtime(
    config: AgentConfig,
    *,
    session: HTTPSession | None = None,
    is_connected: Callable[[], bool] | None = None,
    policy: IntervalPolicy | None = None,
) -> BeaconRuntime:
    """Wire buffer, pipeline, tracker and flush scheduler from one config.

    Raises IntervalPolicyError / ConnectivityConfigError on bad configuration.
    """

    if policy is None:
        policy = (
            load_interval_policy(config.interval_policy_path)
            if config.interval_policy_path is not None
            else DEFAULT_INTERVAL_POLICY
        )
    connectivity: Callable[[], bool]
    if is_connected is not None:
        connectivity = is_connected
    else:
        connectivity = build_connectivity_monitor_from_env()

    buffer = build_buffer(config)
    state = DeliveryStateHolder()
    token_store = TokenStore(path=config.token_path)

    pipeline = DeliveryPipeline(
        session=session or requests.Session(),
        api_url=config.api_url,
        buffer=buffer,
        state=state,
        is_connected=connectivity,
        token_source=token_store.get_token,
        timeout_s=config.http_timeout_s,
    )
    tracker = LocationTracker(
        entity_id=config.entity_id,
        pipeline=pipeline,
        state=state,
        policy=policy,
        distance_threshold_m=config.distance_threshold_m,
    )
    flusher = FlushScheduler(
        pipeline=pipeline,
        buffer=buffer,
        is_connected=connectivity,
        interval_s=config.flush_interval_s,
        batch_size=config.flush_batch_size,
        deadletter_path=config.deadletter_path,
    )

    logger.info(
        "entity_id=%s api=%s buffer=%s queue=%s bands=%s connectivity=%s",
        config.entity_id,
        config.api_url,
        config.buffer_path,
        buffer.count(),
        ",".join(band.name for band in policy.bands),
        connectivity.config.mode if isinstance(connectivity, ConnectivityMonitor) else "custom",
    )

    return BeaconRuntime(
        config=config,
        buffer=buffer,
        state=state,
        pipeline=pipeline,
        tracker=tracker,
        flusher=flusher,
        connectivity=connectivity,
    )
