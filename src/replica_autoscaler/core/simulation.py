#!/usr/bin/env python3
"""
Simulated collaborators: a synthetic load metrics source and an in-memory
replica pool, used for dry runs, demos and tests
"""

import asyncio
import logging
import math
import random
import time
from typing import Callable, Dict, List, Optional

from ..exceptions import MetricsUnavailable
from ..models.scaling import MetricSample, ReplicaSet
from .controller import ReplicaPool
from .metrics import MetricsSource

logger = logging.getLogger(__name__)

# Total load in "replica-percent": 200.0 means two replicas' worth at 100%
LoadProfile = Callable[[float], float]


def constant_load(load: float) -> LoadProfile:
    """Load that never changes"""
    return lambda t: load


def step_load(before: float, after: float, at: float) -> LoadProfile:
    """Load that jumps from ``before`` to ``after`` at ``at`` seconds"""
    return lambda t: before if t < at else after


def sine_load(base: float, peak: float, period: float) -> LoadProfile:
    """Load oscillating between ``base`` and ``peak`` with the given period"""
    amplitude = (peak - base) / 2.0
    midpoint = base + amplitude

    def profile(t: float) -> float:
        return midpoint - amplitude * math.cos(2 * math.pi * t / period)

    return profile


class SimulatedMetricsSource(MetricsSource):
    """
    Spreads a time-varying total load evenly over the running replicas.

    Each replica reports ``load / replicas`` percent plus seeded Gaussian
    noise, clamped at zero. A replica set with no replicas yields no samples.
    """

    name = "simulation"

    def __init__(
        self,
        profile: LoadProfile,
        noise: float = 0.0,
        seed: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 5.0,
        metric_name: str = "cpu",
        latency: float = 0.0
    ):
        super().__init__(timeout=timeout, metric_name=metric_name)
        self.profile = profile
        self.noise = noise
        self.clock = clock
        self.latency = latency
        self._random = random.Random(seed)
        self._start = clock()
        self._failures_pending = 0
        self.calls = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` sample calls raise MetricsUnavailable"""
        self._failures_pending += count

    def current_load(self) -> float:
        return max(0.0, self.profile(self.clock() - self._start))

    async def _collect(self, replica_set: ReplicaSet) -> List[MetricSample]:
        self.calls += 1

        if self.latency:
            await asyncio.sleep(self.latency)

        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise MetricsUnavailable("simulated metrics outage", source=self.name)

        replicas = replica_set.current_replicas
        if replicas == 0:
            return []

        per_replica = self.current_load() / replicas
        samples = []
        for index in range(replicas):
            value = per_replica
            if self.noise:
                value += self._random.gauss(0.0, self.noise)
            samples.append(MetricSample(
                replica_id=f"{replica_set.name}-{index}",
                metric_name=self.metric_name,
                value=max(0.0, value)
            ))
        return samples


class InMemoryReplicaPool(ReplicaPool):
    """Replica pool that keeps counts in a dict, with failure and latency injection"""

    def __init__(self, initial: Optional[Dict[str, int]] = None, latency: float = 0.0):
        self.replicas: Dict[str, int] = dict(initial or {})
        self.revisions: Dict[str, str] = {}
        self.latency = latency
        self.set_calls = 0
        self.replace_calls = 0
        self._failures_pending = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` mutating calls raise ConnectionError"""
        self._failures_pending += count

    async def _maybe_fail(self, operation: str) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise ConnectionError(f"simulated control plane failure during {operation}")

    async def get_replicas(self, replica_set: ReplicaSet) -> int:
        return self.replicas.get(replica_set.key, replica_set.current_replicas)

    async def set_replicas(self, replica_set: ReplicaSet, replicas: int) -> int:
        self.set_calls += 1
        await self._maybe_fail("set_replicas")
        self.replicas[replica_set.key] = replicas
        logger.debug(f"Pool: {replica_set.key} set to {replicas} replicas")
        return replicas

    async def replace(self, replica_set: ReplicaSet, revision: str) -> str:
        self.replace_calls += 1
        await self._maybe_fail("replace")
        self.revisions[replica_set.key] = revision
        logger.debug(f"Pool: {replica_set.key} rolled out revision {revision}")
        return revision
