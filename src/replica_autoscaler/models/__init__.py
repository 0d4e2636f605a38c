"""
Models package for autoscaler data structures
"""

from .scaling import (
    ReplicaSet,
    MetricSample,
    ScalingPolicy,
    ScalingDecision,
    ScalingReason,
    ControllerState,
    ApplyOutcome,
    CycleOutcome,
    CycleResult,
)

__all__ = [
    "ReplicaSet",
    "MetricSample",
    "ScalingPolicy",
    "ScalingDecision",
    "ScalingReason",
    "ControllerState",
    "ApplyOutcome",
    "CycleOutcome",
    "CycleResult",
]
