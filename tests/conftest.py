#!/usr/bin/env python3
"""
Shared fixtures for autoscaler tests
"""

import pytest

from replica_autoscaler.core.controller import ReplicaController
from replica_autoscaler.core.simulation import InMemoryReplicaPool
from replica_autoscaler.models.scaling import MetricSample, ReplicaSet, ScalingPolicy


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_samples(values, metric_name="cpu", prefix="web"):
    """Build one sample per value"""
    return [
        MetricSample(replica_id=f"{prefix}-{i}", metric_name=metric_name, value=v)
        for i, v in enumerate(values)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return ScalingPolicy(
        target_utilization=50.0,
        min_replicas=1,
        max_replicas=10,
        sync_period=0.01,
        stabilization_window=60.0,
        emergency_scale_up_threshold=None
    )


@pytest.fixture
def replica_set():
    return ReplicaSet(name="web", current_replicas=2, min_replicas=1, max_replicas=10)


@pytest.fixture
def pool():
    return InMemoryReplicaPool()


@pytest.fixture
def controller(pool, policy, clock):
    return ReplicaController(pool, policy, clock=clock, backoff_initial=0.0)


@pytest.fixture
def samples():
    """Factory for per-replica samples"""
    return make_samples
