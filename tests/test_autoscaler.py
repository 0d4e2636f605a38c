#!/usr/bin/env python3
"""
Tests for the control loop
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from replica_autoscaler.core.autoscaler import ControlLoop
from replica_autoscaler.core.controller import ReplicaController
from replica_autoscaler.core.scaling import INSUFFICIENT_DATA
from replica_autoscaler.core.simulation import SimulatedMetricsSource, constant_load
from replica_autoscaler.exceptions import InvalidPolicy
from replica_autoscaler.models.scaling import (
    ControllerState,
    CycleOutcome,
    ReplicaSet,
    ScalingPolicy,
    ScalingReason,
)


@pytest.fixture
def make_loop(replica_set, policy, pool, clock):
    """Build a loop over a constant simulated load (in replica-percent)"""

    def factory(load=160.0, rs=None, loop_policy=None, latency=0.0, **controller_kwargs):
        loop_policy = loop_policy or policy
        source = SimulatedMetricsSource(constant_load(load), latency=latency)
        controller = ReplicaController(pool, loop_policy, clock=clock, backoff_initial=0.0, **controller_kwargs)
        return ControlLoop(rs or replica_set, loop_policy, source, controller)

    return factory


class TestControlLoopCycle:
    """Test single observe-decide-act cycles"""

    @pytest.mark.asyncio
    async def test_cycle_scales_up(self, make_loop, pool):
        loop = make_loop(load=160.0)

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.APPLIED
        assert result.replicas == 4
        assert result.sample_count == 2
        assert result.decision.reason == ScalingReason.SCALE_UP
        assert loop.replica_set.current_replicas == 4
        assert pool.replicas["default/web"] == 4

    @pytest.mark.asyncio
    async def test_steady_state_after_scaling(self, make_loop, clock):
        loop = make_loop(load=160.0)
        await loop.run_cycle()
        clock.advance(120)

        result = await loop.run_cycle()

        # 160 spread over 4 replicas is 40% each, still ceil(3.2) = 4
        assert result.outcome == CycleOutcome.NO_CHANGE
        assert result.replicas == 4

    @pytest.mark.asyncio
    async def test_scale_down_suppressed_in_cooldown(self, make_loop, pool):
        loop = make_loop(load=160.0)
        await loop.run_cycle()
        loop.metrics_source.profile = constant_load(40.0)

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.SUPPRESSED
        assert result.decision.reason == ScalingReason.SCALE_DOWN
        assert result.replicas == 4
        assert pool.set_calls == 1

    @pytest.mark.asyncio
    async def test_metrics_unavailable_skips_cycle(self, make_loop, pool):
        loop = make_loop(load=160.0)
        labels = {"replica_set": "default/web", "reason": "metrics_unavailable"}
        before = REGISTRY.get_sample_value("autoscaler_skipped_cycles_total", labels) or 0.0
        loop.metrics_source.fail_next()

        skipped = await loop.run_cycle()

        assert skipped.outcome == CycleOutcome.SKIPPED
        assert skipped.error
        assert loop.skipped_count == 1
        assert pool.set_calls == 0
        assert REGISTRY.get_sample_value("autoscaler_skipped_cycles_total", labels) == before + 1

        recovered = await loop.run_cycle()
        assert recovered.outcome == CycleOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_apply_failure_retried_next_cycle(self, make_loop, pool):
        loop = make_loop(load=160.0)
        pool.fail_next(3)

        failed = await loop.run_cycle()

        assert failed.outcome == CycleOutcome.APPLY_FAILED
        assert failed.replicas == 2
        assert loop.apply_error_count == 1
        assert loop.controller.state == ControllerState.STABLE

        retried = await loop.run_cycle()
        assert retried.outcome == CycleOutcome.APPLIED
        assert retried.replicas == 4

    @pytest.mark.asyncio
    async def test_insufficient_data_is_no_change(self, make_loop):
        idle_policy = ScalingPolicy(target_utilization=50.0, min_replicas=0, max_replicas=5, sync_period=0.01)
        idle = ReplicaSet(name="idle", current_replicas=0, min_replicas=0, max_replicas=5)
        loop = make_loop(load=100.0, rs=idle, loop_policy=idle_policy)

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.NO_CHANGE
        assert result.decision.message == INSUFFICIENT_DATA
        assert result.replicas == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded(self, make_loop):
        loop = make_loop()
        loop.metrics_source.sample = AsyncMock(side_effect=RuntimeError("boom"))

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.ERROR
        assert result.error == "boom"
        assert loop.error_count == 1

    @pytest.mark.asyncio
    async def test_dry_run_leaves_replica_set(self, make_loop, pool):
        loop = make_loop(load=160.0, dry_run=True)

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.DRY_RUN
        assert result.decision.desired_replicas == 4
        assert loop.replica_set.current_replicas == 2
        assert pool.set_calls == 0

    def test_bounds_mismatch_rejected(self, make_loop):
        narrow = ReplicaSet(name="web", current_replicas=2, min_replicas=1, max_replicas=5)

        with pytest.raises(InvalidPolicy):
            make_loop(rs=narrow)


class TestManualOverride:
    """Test operator overrides"""

    @pytest.mark.asyncio
    async def test_override_applies_for_one_cycle(self, make_loop, pool):
        loop = make_loop(load=160.0)
        loop.manual_override(6, "warm up")

        overridden = await loop.run_cycle()

        assert overridden.outcome == CycleOutcome.APPLIED
        assert overridden.decision.manual is True
        assert overridden.decision.message == "manual override: warm up"
        assert overridden.replicas == 6
        assert loop.pending_override is None

        # Back to automatic decisions: ScaleDown to 4, held by the cooldown
        automatic = await loop.run_cycle()
        assert automatic.decision.manual is False
        assert automatic.decision.desired_replicas == 4
        assert automatic.outcome == CycleOutcome.SUPPRESSED

    @pytest.mark.asyncio
    async def test_override_bypasses_cooldown(self, make_loop):
        loop = make_loop(load=160.0)
        await loop.run_cycle()
        assert loop.controller.state == ControllerState.COOLDOWN

        loop.manual_override(2)
        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.APPLIED
        assert result.replicas == 2

    def test_override_outside_bounds_rejected(self, make_loop):
        loop = make_loop()

        with pytest.raises(ValueError):
            loop.manual_override(11)
        with pytest.raises(ValueError):
            loop.manual_override(0)
        assert loop.pending_override is None

    @pytest.mark.asyncio
    async def test_override_does_not_sample(self, make_loop):
        loop = make_loop(load=160.0)
        loop.manual_override(3)

        result = await loop.run_cycle()

        assert loop.metrics_source.calls == 0
        assert result.sample_count == 0


class TestRollout:
    """Test queued rolling updates"""

    @pytest.mark.asyncio
    async def test_rollout_runs_in_place_of_cycle(self, make_loop, pool):
        loop = make_loop(load=160.0)
        loop.request_rollout("v2")

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.ROLLED_OUT
        assert loop.replica_set.revision == "v2"
        assert pool.revisions["default/web"] == "v2"
        assert pool.set_calls == 0
        assert loop.pending_rollout is None
        assert loop.controller.state == ControllerState.COOLDOWN

    @pytest.mark.asyncio
    async def test_failed_rollout_keeps_revision(self, make_loop, pool):
        loop = make_loop()
        pool.fail_next(3)
        loop.request_rollout("v2")

        result = await loop.run_cycle()

        assert result.outcome == CycleOutcome.APPLY_FAILED
        assert loop.replica_set.revision is None

    def test_empty_revision_rejected(self, make_loop):
        with pytest.raises(ValueError):
            make_loop().request_rollout("")


class TestControlLoopLifecycle:
    """Test run, stop and cancellation"""

    @pytest.mark.asyncio
    async def test_stop_before_apply_discards_decision(self, make_loop, pool):
        loop = make_loop(load=160.0, latency=0.1)

        cycle = asyncio.ensure_future(loop.run_cycle())
        await asyncio.sleep(0.02)
        loop.stop()
        result = await cycle

        assert result.outcome == CycleOutcome.CANCELLED
        assert result.decision is not None
        assert pool.set_calls == 0
        assert loop.replica_set.current_replicas == 2

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, make_loop):
        loop = make_loop(load=160.0)

        task = asyncio.ensure_future(loop.run())
        await asyncio.sleep(0.1)
        assert loop.running

        loop.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert not loop.running
        assert loop.cycle_count >= 1
        assert loop.replica_set.current_replicas == 4

    @pytest.mark.asyncio
    async def test_stop_before_run_exits_immediately(self, make_loop):
        loop = make_loop()
        loop.stop()

        await asyncio.wait_for(loop.run(), timeout=1.0)

        assert loop.cycle_count == 0

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_applies_nothing(self, make_loop, pool):
        slow_policy = ScalingPolicy(target_utilization=50.0, min_replicas=1, max_replicas=10, sync_period=10.0)
        loop = make_loop(load=160.0, loop_policy=slow_policy)

        task = asyncio.ensure_future(loop.run())
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert loop.cycle_count == 0
        assert pool.set_calls == 0
        assert not loop.running

    @pytest.mark.asyncio
    async def test_cancel_mid_cycle_finishes_without_apply(self, make_loop, pool):
        loop = make_loop(load=160.0, latency=0.2)

        task = asyncio.ensure_future(loop.run())
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert loop.cycle_count == 1
        assert loop.last_result.outcome == CycleOutcome.CANCELLED
        assert pool.set_calls == 0
        assert loop.stopping

    @pytest.mark.asyncio
    async def test_repeated_cancel_still_finishes_cycle(self, make_loop, pool):
        loop = make_loop(load=160.0, latency=0.2)

        task = asyncio.ensure_future(loop.run())
        await asyncio.sleep(0.1)
        task.cancel()
        await asyncio.sleep(0.05)
        assert not task.done()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert loop.cycle_count == 1
        assert loop.last_result is not None
        assert loop.last_result.outcome == CycleOutcome.CANCELLED
        assert pool.set_calls == 0
        assert not loop.running

    @pytest.mark.asyncio
    async def test_status(self, make_loop):
        loop = make_loop(load=160.0)
        loop.manual_override(5)
        await loop.run_cycle()

        status = loop.get_status()

        assert status["replica_set"]["current_replicas"] == 5
        assert status["cycles"] == 1
        assert status["pending_override"] is None
        assert status["controller"]["state"] == "Cooldown"
        assert status["last_result"]["outcome"] == "applied"
        assert status["last_decision"]["manual"] is True
