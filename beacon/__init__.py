from .buffer import BufferedPayload, SqliteBuffer
from .decision import (
    DISTANCE_THRESHOLD_M,
    Decision,
    DeliveryState,
    DeliveryStateHolder,
    evaluate_sample,
    should_send,
)
from .delivery import DeliveryCounters, DeliveryPipeline, DeliveryResult, SendResult, post_location
from .flush import FlushReport, FlushScheduler
from .geo import EARTH_RADIUS_M, haversine_distance_m
from .interval_policy import (
    DEFAULT_INTERVAL_POLICY,
    IntervalPolicy,
    IntervalPolicyError,
    SpeedBand,
    minimum_interval,
)
from .models import LocationSample, Payload, PayloadError, make_payload
from .tracker import LocationTracker

__all__ = [
    "BufferedPayload",
    "DEFAULT_INTERVAL_POLICY",
    "DISTANCE_THRESHOLD_M",
    "Decision",
    "DeliveryCounters",
    "DeliveryPipeline",
    "DeliveryResult",
    "DeliveryState",
    "DeliveryStateHolder",
    "EARTH_RADIUS_M",
    "FlushReport",
    "FlushScheduler",
    "IntervalPolicy",
    "IntervalPolicyError",
    "LocationSample",
    "LocationTracker",
    "Payload",
    "PayloadError",
    "SendResult",
    "SpeedBand",
    "SqliteBuffer",
    "evaluate_sample",
    "haversine_distance_m",
    "make_payload",
    "minimum_interval",
    "post_location",
    "should_send",
]
