#!/usr/bin/env python3
"""
Scaling decider: turns utilization samples into a desired replica count
"""

import logging
import math
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from ..models.scaling import MetricSample, ScalingDecision, ScalingPolicy, ScalingReason

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "insufficient data"


class ScalingDecider:
    """
    Computes scaling decisions from metric samples.

    The rule is the proportional one a HorizontalPodAutoscaler applies:

        desired = ceil(current * average_utilization / target_utilization)

    clamped into the policy bounds. When samples carry several metric names
    each metric yields its own desired count and the largest one wins.

    Instances hold no state; ``decide`` is a pure function of its inputs.
    """

    def decide(
        self,
        samples: Sequence[MetricSample],
        policy: ScalingPolicy,
        current_replicas: int
    ) -> ScalingDecision:
        """
        Evaluate samples against the policy

        Args:
            samples: Per-replica utilization samples for this cycle
            policy: Scaling policy
            current_replicas: Replica count the samples were taken from

        Returns:
            ScalingDecision for this cycle

        Raises:
            ValueError: if current_replicas lies outside the policy bounds
        """
        if not policy.min_replicas <= current_replicas <= policy.max_replicas:
            raise ValueError(
                f"current_replicas {current_replicas} outside "
                f"[{policy.min_replicas}, {policy.max_replicas}]"
            )

        if not samples:
            return ScalingDecision(
                desired_replicas=current_replicas,
                reason=ScalingReason.NO_CHANGE,
                current_replicas=current_replicas,
                message=INSUFFICIENT_DATA
            )

        averages = self.average_by_metric(samples)

        raw_desired: Optional[int] = None
        driving_metric = ""
        for metric_name, average in averages.items():
            candidate = self.raw_desired(current_replicas, average, policy.target_utilization)
            if raw_desired is None or candidate > raw_desired:
                raw_desired = candidate
                driving_metric = metric_name

        average = averages[driving_metric]
        desired = policy.clamp(raw_desired)

        if desired > current_replicas:
            reason = ScalingReason.SCALE_UP
        elif desired < current_replicas:
            reason = ScalingReason.SCALE_DOWN
        else:
            reason = ScalingReason.NO_CHANGE

        message = (
            f"{driving_metric} average {average:.1f}% vs target {policy.target_utilization:.1f}%: "
            f"raw={raw_desired}, desired={desired}"
        )
        if desired != raw_desired:
            message += f" (clamped to [{policy.min_replicas}, {policy.max_replicas}])"

        return ScalingDecision(
            desired_replicas=desired,
            reason=reason,
            current_replicas=current_replicas,
            message=message,
            average_utilization=average,
            raw_desired=raw_desired
        )

    @staticmethod
    def raw_desired(current_replicas: int, average_utilization: float, target_utilization: float) -> int:
        """Unclamped proportional replica count"""
        # Rounded so float noise in the mean cannot push an exact ratio up a replica
        scaled = round(current_replicas * average_utilization / target_utilization, 9)
        return int(math.ceil(scaled))

    @staticmethod
    def average_by_metric(samples: Sequence[MetricSample]) -> Dict[str, float]:
        """Mean sample value per metric name, in first-seen order"""
        grouped: "OrderedDict[str, List[float]]" = OrderedDict()
        for sample in samples:
            grouped.setdefault(sample.metric_name, []).append(sample.value)
        return OrderedDict(
            (name, sum(values) / len(values)) for name, values in grouped.items()
        )

    @staticmethod
    def manual(replicas: int, current_replicas: int, reason: str = "") -> ScalingDecision:
        """Build an operator override decision that bypasses evaluation"""
        if replicas > current_replicas:
            direction = ScalingReason.SCALE_UP
        elif replicas < current_replicas:
            direction = ScalingReason.SCALE_DOWN
        else:
            direction = ScalingReason.NO_CHANGE

        message = "manual override"
        if reason:
            message += f": {reason}"

        return ScalingDecision(
            desired_replicas=replicas,
            reason=direction,
            current_replicas=current_replicas,
            message=message,
            raw_desired=replicas,
            manual=True
        )
