#!/usr/bin/env python3
"""
Control loop: periodically observes a replica set, decides and applies
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter, Gauge, Histogram

from ..exceptions import ApplyError, InvalidPolicy, MetricsUnavailable
from ..models.scaling import (
    ApplyOutcome,
    CycleOutcome,
    CycleResult,
    MetricSample,
    ReplicaSet,
    ScalingDecision,
    ScalingPolicy,
)
from .controller import ReplicaController
from .logging_config import log_section
from .metrics import MetricsSource
from .scaling import INSUFFICIENT_DATA, ScalingDecider

logger = logging.getLogger(__name__)

CYCLES_TOTAL = Counter(
    'autoscaler_cycles_total',
    'Total control loop cycles',
    ['replica_set', 'outcome']
)
SKIPPED_CYCLES = Counter(
    'autoscaler_skipped_cycles_total',
    'Cycles that did not evaluate fresh metrics',
    ['replica_set', 'reason']
)
SCALING_DECISIONS = Counter(
    'autoscaler_scaling_decisions_total',
    'Total scaling decisions',
    ['replica_set', 'decision']
)
SUPPRESSED_DECISIONS = Counter(
    'autoscaler_suppressed_decisions_total',
    'Decisions suppressed by cooldown',
    ['replica_set', 'decision']
)
APPLY_ERRORS = Counter(
    'autoscaler_apply_errors_total',
    'Failed replica pool updates',
    ['replica_set']
)
CURRENT_REPLICAS = Gauge(
    'autoscaler_current_replicas',
    'Current replica count',
    ['replica_set']
)
DESIRED_REPLICAS = Gauge(
    'autoscaler_desired_replicas',
    'Desired replica count from the last decision',
    ['replica_set']
)
CYCLE_DURATION = Histogram(
    'autoscaler_cycle_duration_seconds',
    'Time taken by one control loop cycle',
    ['replica_set']
)

_OUTCOMES = {
    ApplyOutcome.APPLIED: CycleOutcome.APPLIED,
    ApplyOutcome.NO_CHANGE: CycleOutcome.NO_CHANGE,
    ApplyOutcome.SUPPRESSED: CycleOutcome.SUPPRESSED,
    ApplyOutcome.DRY_RUN: CycleOutcome.DRY_RUN,
}


class ControlLoop:
    """
    Observe-decide-act loop for one replica set.

    Each cycle waits ``policy.sync_period``, samples metrics, decides and
    applies. The steps of a cycle never overlap, so at most one scaling
    operation is in flight for the replica set. Transient failures skip the
    cycle and are retried on the next one; they never end the loop.

    ``stop()`` lets an in-flight cycle finish; stop is checked again before
    each external call so nothing is half applied.
    """

    def __init__(
        self,
        replica_set: ReplicaSet,
        policy: ScalingPolicy,
        metrics_source: MetricsSource,
        controller: ReplicaController,
        decider: Optional[ScalingDecider] = None
    ):
        """
        Initialize control loop

        Args:
            replica_set: Workload driven by this loop
            policy: Scaling policy
            metrics_source: Utilization sample source
            controller: Replica controller for this workload
            decider: Scaling decider (a default one is created when None)

        Raises:
            InvalidPolicy: if the replica set does not fit the policy bounds
        """
        if (replica_set.min_replicas, replica_set.max_replicas) != (policy.min_replicas, policy.max_replicas):
            raise InvalidPolicy(
                f"{replica_set.key} bounds [{replica_set.min_replicas}, {replica_set.max_replicas}] "
                f"do not match policy bounds [{policy.min_replicas}, {policy.max_replicas}]"
            )

        self.policy = policy
        self.metrics_source = metrics_source
        self.controller = controller
        self.decider = decider or ScalingDecider()

        self._replica_set = replica_set
        self._stopping = False
        self._stop_event: Optional[asyncio.Event] = None
        self._override: Optional[Tuple[int, str]] = None
        self._rollout: Optional[str] = None
        self.running = False

        self.cycle_count = 0
        self.skipped_count = 0
        self.apply_error_count = 0
        self.error_count = 0
        self.last_decision: Optional[ScalingDecision] = None
        self.last_result: Optional[CycleResult] = None

        CURRENT_REPLICAS.labels(replica_set=self.name).set(replica_set.current_replicas)
        logger.info(
            f"Control loop initialized for {replica_set.key}: target={policy.target_utilization}%, "
            f"bounds=[{policy.min_replicas}, {policy.max_replicas}], sync_period={policy.sync_period}s, "
            f"stabilization_window={policy.stabilization_window}s"
        )

    @property
    def name(self) -> str:
        return self._replica_set.key

    @property
    def replica_set(self) -> ReplicaSet:
        return self._replica_set

    @property
    def stopping(self) -> bool:
        return self._stopping

    def manual_override(self, replicas: int, reason: str = "") -> None:
        """
        Queue an operator-issued replica count for the next cycle

        The override replaces the decider for exactly one cycle and bypasses
        cooldown suppression; later cycles decide automatically again.

        Raises:
            ValueError: if ``replicas`` is outside the policy bounds
        """
        if not self.policy.min_replicas <= replicas <= self.policy.max_replicas:
            raise ValueError(
                f"replicas must be within [{self.policy.min_replicas}, {self.policy.max_replicas}], got {replicas}"
            )
        if self._override is not None:
            logger.info(f"Replacing pending override for {self.name} ({self._override[0]} -> {replicas})")
        self._override = (replicas, reason)
        logger.info(f"Manual override queued for {self.name}: {replicas} replicas")

    @property
    def pending_override(self) -> Optional[int]:
        return self._override[0] if self._override else None

    def request_rollout(self, revision: str) -> None:
        """
        Queue a rolling update to ``revision``

        The rollout runs in place of the next cycle so it never overlaps a
        scaling operation; it is followed by the usual cooldown.
        """
        if not revision:
            raise ValueError("revision must not be empty")
        self._rollout = revision
        logger.info(f"Rollout to revision {revision} queued for {self.name}")

    @property
    def pending_rollout(self) -> Optional[str]:
        return self._rollout

    def stop(self) -> None:
        """Request a graceful stop; the loop exits after any in-flight cycle"""
        if not self._stopping:
            logger.info(f"Stopping control loop for {self.name}")
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Run cycles until stopped or cancelled"""
        if self.running:
            logger.warning(f"Control loop for {self.name} already running")
            return

        self.running = True
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()

        logger.info(f"Starting control loop for {self.name}")
        try:
            while not self._stopping:
                await self._wait_sync_period()
                if self._stopping:
                    break

                cycle = asyncio.ensure_future(self.run_cycle())
                try:
                    await asyncio.shield(cycle)
                except asyncio.CancelledError:
                    self._stopping = True
                    logger.info(f"Cancellation requested for {self.name}, finishing in-flight cycle")
                    await self._finish_cycle(cycle)
                    raise
        except asyncio.CancelledError:
            logger.info(f"Control loop for {self.name} cancelled")
            raise
        finally:
            self.running = False
            logger.info(f"Control loop for {self.name} stopped after {self.cycle_count} cycles")

    async def _finish_cycle(self, cycle: asyncio.Future) -> None:
        # Repeated cancels must not reach the cycle
        while not cycle.done():
            try:
                await asyncio.shield(cycle)
            except asyncio.CancelledError:
                logger.info(f"Still finishing in-flight cycle for {self.name}")

    async def _wait_sync_period(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.policy.sync_period)
        except asyncio.TimeoutError:
            pass

    async def run_cycle(self) -> CycleResult:
        """
        Run one observe-decide-act cycle

        Returns:
            CycleResult describing what happened
        """
        self.cycle_count += 1
        start = time.monotonic()

        try:
            result = await self._execute_cycle(self.cycle_count)
        except Exception as e:
            self.error_count += 1
            logger.error(f"Error in control loop cycle for {self.name}: {e}", exc_info=True)
            result = self._result(CycleOutcome.ERROR, error=str(e))

        result.duration_seconds = time.monotonic() - start
        self._record(result)
        return result

    async def _execute_cycle(self, cycle: int) -> CycleResult:
        if self._stopping:
            return self._result(CycleOutcome.CANCELLED)

        rollout, self._rollout = self._rollout, None
        if rollout is not None:
            return await self._execute_rollout(rollout)

        current = self._replica_set.current_replicas
        samples: List[MetricSample] = []
        override, self._override = self._override, None

        if override is not None:
            replicas, reason = override
            log_section(logger, "MANUAL OVERRIDE")
            decision = self.decider.manual(replicas, current, reason)
        else:
            log_section(logger, "METRICS COLLECTION")
            try:
                samples = await self.metrics_source.sample(self._replica_set)
            except MetricsUnavailable as e:
                self.skipped_count += 1
                SKIPPED_CYCLES.labels(replica_set=self.name, reason="metrics_unavailable").inc()
                logger.warning(f"Skipping cycle #{cycle} for {self.name}: {e}")
                return self._result(CycleOutcome.SKIPPED, error=str(e))

            log_section(logger, "SCALING DECISION")
            decision = self.decider.decide(samples, self.policy, current)
            if not samples:
                SKIPPED_CYCLES.labels(replica_set=self.name, reason="insufficient_data").inc()
                logger.warning(f"No samples for {self.name} in cycle #{cycle}: {INSUFFICIENT_DATA}")

        self.last_decision = decision
        SCALING_DECISIONS.labels(replica_set=self.name, decision=decision.reason.value).inc()
        DESIRED_REPLICAS.labels(replica_set=self.name).set(decision.desired_replicas)
        logger.info(
            f"Cycle #{cycle} {self.name}: {decision.reason.value} "
            f"{current} -> {decision.desired_replicas} ({decision.message})"
        )

        if self._stopping:
            logger.info(f"Stop requested before apply for {self.name}, decision discarded")
            return self._result(CycleOutcome.CANCELLED, decision=decision, sample_count=len(samples))

        log_section(logger, "SCALING EXECUTION")
        try:
            updated = await self.controller.apply(self._replica_set, decision, force=decision.manual)
        except ApplyError as e:
            self.apply_error_count += 1
            APPLY_ERRORS.labels(replica_set=self.name).inc()
            logger.error(f"Apply failed for {self.name}, will retry next cycle: {e}")
            return self._result(
                CycleOutcome.APPLY_FAILED, decision=decision, sample_count=len(samples), error=str(e)
            )

        self._replica_set = updated
        outcome = _OUTCOMES.get(self.controller.last_outcome, CycleOutcome.NO_CHANGE)
        if outcome == CycleOutcome.SUPPRESSED:
            SUPPRESSED_DECISIONS.labels(replica_set=self.name, decision=decision.reason.value).inc()

        return self._result(outcome, decision=decision, sample_count=len(samples))

    async def _execute_rollout(self, revision: str) -> CycleResult:
        log_section(logger, "ROLLOUT")
        try:
            self._replica_set = await self.controller.replace(self._replica_set, revision)
        except ApplyError as e:
            self.apply_error_count += 1
            APPLY_ERRORS.labels(replica_set=self.name).inc()
            logger.error(f"Rollout of {self.name} to {revision} failed: {e}")
            return self._result(CycleOutcome.APPLY_FAILED, error=str(e))

        if self.controller.last_outcome == ApplyOutcome.DRY_RUN:
            return self._result(CycleOutcome.DRY_RUN)
        if self.controller.last_outcome == ApplyOutcome.NO_CHANGE:
            return self._result(CycleOutcome.NO_CHANGE)
        return self._result(CycleOutcome.ROLLED_OUT)

    def _result(
        self,
        outcome: CycleOutcome,
        decision: Optional[ScalingDecision] = None,
        sample_count: int = 0,
        error: Optional[str] = None
    ) -> CycleResult:
        return CycleResult(
            cycle=self.cycle_count,
            replica_set=self.name,
            outcome=outcome,
            replicas=self._replica_set.current_replicas,
            decision=decision,
            sample_count=sample_count,
            error=error
        )

    def _record(self, result: CycleResult) -> None:
        self.last_result = result
        CYCLES_TOTAL.labels(replica_set=self.name, outcome=result.outcome.value).inc()
        CURRENT_REPLICAS.labels(replica_set=self.name).set(self._replica_set.current_replicas)
        CYCLE_DURATION.labels(replica_set=self.name).observe(result.duration_seconds)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the loop for the API and logs"""
        return {
            "replica_set": self._replica_set.model_dump(mode="json"),
            "policy": self.policy.model_dump(mode="json"),
            "running": self.running,
            "stopping": self._stopping,
            "controller": self.controller.get_status(),
            "cycles": self.cycle_count,
            "skipped_cycles": self.skipped_count,
            "apply_errors": self.apply_error_count,
            "errors": self.error_count,
            "pending_override": self.pending_override,
            "pending_rollout": self._rollout,
            "last_decision": self.last_decision.model_dump(mode="json") if self.last_decision else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
