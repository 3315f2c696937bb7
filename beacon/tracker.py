from __future__ import annotations

import logging
from typing import Iterable, List

from .decision import DISTANCE_THRESHOLD_M, DeliveryStateHolder, evaluate_sample
from .delivery import DeliveryPipeline, DeliveryResult
from .interval_policy import DEFAULT_INTERVAL_POLICY, IntervalPolicy
from .models import LocationSample, make_payload

logger = logging.getLogger("geobeacon.tracker")


class LocationTracker:
    """Entry point for every sample source (foreground watcher, background task).

    Deciding and delivering happen under the delivery-state lock, so samples
    from different sources are linearised against one DeliveryState.
    """

    def __init__(
        self,
        *,
        entity_id: str,
        pipeline: DeliveryPipeline,
        state: DeliveryStateHolder,
        policy: IntervalPolicy = DEFAULT_INTERVAL_POLICY,
        distance_threshold_m: float = DISTANCE_THRESHOLD_M,
    ) -> None:
        self.entity_id = entity_id
        self.pipeline = pipeline
        self.state = state
        self.policy = policy
        self.distance_threshold_m = float(distance_threshold_m)

    def handle_sample(self, sample: LocationSample, *, source: str = "foreground") -> DeliveryResult | None:
        """Returns the delivery result, or None when the sample was throttled."""

        with self.state.locked() as current:
            decision = evaluate_sample(
                sample,
                current,
                policy=self.policy,
                distance_threshold_m=self.distance_threshold_m,
            )
            if not decision.send:
                self.pipeline.counters.incr("skipped")
                logger.debug(
                    "skip (%s) source=%s distance_m=%s elapsed=%s interval=%s",
                    decision.reason,
                    source,
                    None if decision.distance_m is None else round(decision.distance_m, 2),
                    decision.elapsed,
                    decision.interval,
                )
                return None

            payload = make_payload(sample, entity_id=self.entity_id)
            result = self.pipeline.deliver(payload)
            logger.debug("send (%s) source=%s -> %s", decision.reason, source, result.value)
            return result

    def handle_samples(
        self,
        samples: Iterable[LocationSample],
        *,
        source: str = "background",
    ) -> List[DeliveryResult | None]:
        """Process a batch of samples in order; one bad sample never stops the rest."""

        results: List[DeliveryResult | None] = []
        for sample in samples:
            try:
                results.append(self.handle_sample(sample, source=source))
            except Exception:
                logger.exception("failed to process %s sample", source)
                results.append(None)
        return results
