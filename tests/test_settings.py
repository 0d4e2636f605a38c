#!/usr/bin/env python3
"""
Tests for settings loading and policy construction
"""

import pytest

from replica_autoscaler.config import ScalingSettings, Settings, WorkloadSettings
from replica_autoscaler.core.controller import ReplicaController
from replica_autoscaler.core.simulation import InMemoryReplicaPool
from replica_autoscaler.exceptions import InvalidPolicy
from replica_autoscaler.models.scaling import ApplyOutcome, ScalingDecision, ScalingReason


YAML_CONFIG = """
environment: staging
scaling:
  target_utilization: 60
  min_replicas: 2
  max_replicas: 8
  sync_period: 5
  emergency_scale_up_threshold: 95
prometheus:
  url: ${TEST_PROMETHEUS_URL}
api:
  enabled: false
workloads:
  - name: frontend
  - name: checkout
    namespace: shop
    max_replicas: 12
    initial_replicas: 3
"""


class TestSettings:
    """Test Settings helpers"""

    def test_build_policy_uses_scaling_defaults(self):
        settings = Settings(scaling=ScalingSettings(target_utilization=70.0, max_replicas=6))

        policy = settings.build_policy(WorkloadSettings(name="web"))

        assert policy.target_utilization == 70.0
        assert policy.min_replicas == 1
        assert policy.max_replicas == 6

    def test_workload_overrides_policy(self):
        settings = Settings(scaling=ScalingSettings(target_utilization=70.0))

        policy = settings.build_policy(
            WorkloadSettings(name="web", target_utilization=40.0, min_replicas=3, max_replicas=9)
        )

        assert policy.target_utilization == 40.0
        assert (policy.min_replicas, policy.max_replicas) == (3, 9)

    @pytest.mark.parametrize("workload", [
        WorkloadSettings(name="web", target_utilization=0),
        WorkloadSettings(name="web", min_replicas=5, max_replicas=2),
    ])
    def test_invalid_workload_policy(self, workload):
        settings = Settings()

        with pytest.raises(InvalidPolicy, match="workload 'web'"):
            settings.build_policy(workload)

    def test_build_replica_set_clamps_observed_count(self):
        settings = Settings()
        workload = WorkloadSettings(name="web", namespace="shop", min_replicas=2, max_replicas=4, revision="v1")
        policy = settings.build_policy(workload)

        assert settings.build_replica_set(workload, policy).current_replicas == 2
        rs = settings.build_replica_set(workload, policy, current_replicas=9)

        assert rs.current_replicas == 4
        assert rs.key == "shop/web"
        assert rs.revision == "v1"

    def test_load_from_yaml_with_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_PROMETHEUS_URL", "http://metrics.internal:9090")
        config_file = tmp_path / "config.yaml"
        config_file.write_text(YAML_CONFIG)

        settings = Settings.load_from_yaml_with_env_override(str(config_file))

        assert settings.environment == "staging"
        assert settings.prometheus.url == "http://metrics.internal:9090"
        assert settings.scaling.target_utilization == 60.0
        assert settings.scaling.emergency_scale_up_threshold == 95.0
        assert settings.api.enabled is False
        assert [w.name for w in settings.workloads] == ["frontend", "checkout"]

        checkout = settings.workloads[1]
        policy = settings.build_policy(checkout)
        assert (policy.min_replicas, policy.max_replicas) == (2, 12)
        assert settings.build_replica_set(checkout, policy).current_replicas == 3

    @pytest.mark.asyncio
    async def test_default_policy_scales_up_fast_and_down_slow(self, replica_set, clock):
        policy = Settings().build_policy(WorkloadSettings(name="web"))
        controller = ReplicaController(InMemoryReplicaPool(), policy, clock=clock, backoff_initial=0.0)
        scaled = await controller.apply(replica_set, ScalingDecision(
            desired_replicas=3, reason=ScalingReason.SCALE_UP, current_replicas=2, average_utilization=70.0
        ))

        clock.advance(10)
        surge = await controller.apply(scaled, ScalingDecision(
            desired_replicas=10, reason=ScalingReason.SCALE_UP, current_replicas=3, average_utilization=400.0
        ))

        assert surge.current_replicas == 10
        assert controller.last_outcome == ApplyOutcome.APPLIED

        clock.advance(10)
        held = await controller.apply(surge, ScalingDecision(
            desired_replicas=4, reason=ScalingReason.SCALE_DOWN, current_replicas=10, average_utilization=20.0
        ))

        assert held.current_replicas == 10
        assert controller.last_outcome == ApplyOutcome.SUPPRESSED

    def test_missing_yaml_uses_defaults(self, tmp_path):
        settings = Settings.load_from_yaml_with_env_override(str(tmp_path / "missing.yaml"))

        assert settings.scaling.target_utilization == 50.0
        assert [w.name for w in settings.workloads] == ["frontend"]

    def test_scaling_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("SCALING_TARGET_UTILIZATION", "65")
        monkeypatch.setenv("SCALING_DRY_RUN", "true")

        scaling = ScalingSettings()

        assert scaling.target_utilization == 65.0
        assert scaling.dry_run is True

    def test_config_dict(self):
        config = Settings().get_config_dict()

        assert set(config) >= {"scaling", "prometheus", "api", "workloads"}
        assert "query_template" not in config["prometheus"]
