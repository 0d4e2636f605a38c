#!/usr/bin/env python3
"""
Configuration settings using Pydantic for environment variable loading
"""

import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.metrics import DEFAULT_QUERY_TEMPLATE
from ..exceptions import InvalidPolicy
from ..models.scaling import ReplicaSet, ScalingPolicy

# Load environment variables from .env file if it exists
load_dotenv()


class ScalingSettings(BaseSettings):
    """Default scaling policy and apply behaviour"""
    model_config = SettingsConfigDict(env_prefix="SCALING_", extra="ignore")

    target_utilization: float = 50.0
    min_replicas: int = 1
    max_replicas: int = 10
    sync_period: float = 15.0
    stabilization_window: float = 300.0
    emergency_scale_up_threshold: Optional[float] = 90.0
    metric_name: str = "cpu"

    dry_run: bool = False
    metrics_timeout: float = 5.0
    apply_timeout: float = 10.0
    apply_max_attempts: int = 3
    apply_backoff_initial: float = 0.5
    apply_backoff_factor: float = 2.0


class KubernetesSettings(BaseSettings):
    """Kubernetes configuration settings"""
    model_config = SettingsConfigDict(env_prefix="KUBERNETES_", extra="ignore")

    in_cluster: bool = False
    kubeconfig_path: Optional[str] = None


class PrometheusSettings(BaseSettings):
    """Prometheus configuration settings"""
    model_config = SettingsConfigDict(env_prefix="PROMETHEUS_", extra="ignore")

    url: str = "http://prometheus:9090"
    query_timeout: float = 5.0
    query_template: str = DEFAULT_QUERY_TEMPLATE


class LoggingSettings(BaseSettings):
    """Logging configuration settings"""
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None
    enable_colors: bool = True


class ApiSettings(BaseSettings):
    """HTTP API and metrics exporter settings"""
    model_config = SettingsConfigDict(env_prefix="AUTOSCALER_API_", extra="ignore")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    metrics_port: int = 9091


class SimulationSettings(BaseSettings):
    """Synthetic load used when running without a cluster"""
    model_config = SettingsConfigDict(env_prefix="SIMULATION_", extra="ignore")

    enabled: bool = False
    base_load: float = 100.0
    peak_load: float = 400.0
    period: float = 600.0
    noise: float = 5.0
    seed: Optional[int] = None


class WorkloadSettings(BaseModel):
    """One scaled workload; unset fields fall back to ScalingSettings"""
    name: str
    namespace: str = "default"
    target_utilization: Optional[float] = None
    min_replicas: Optional[int] = None
    max_replicas: Optional[int] = None
    initial_replicas: Optional[int] = None
    revision: Optional[str] = None


class Settings(BaseSettings):
    """Main settings class that includes all sub-settings"""
    model_config = SettingsConfigDict(
        env_prefix="AUTOSCALER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    environment: str = "development"
    debug: bool = False

    scaling: ScalingSettings = Field(default_factory=ScalingSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    simulation: SimulationSettings = Field(default_factory=SimulationSettings)

    workloads: List[WorkloadSettings] = Field(
        default_factory=lambda: [WorkloadSettings(name="frontend")]
    )

    def build_policy(self, workload: WorkloadSettings) -> ScalingPolicy:
        """
        Build the scaling policy for a workload

        Raises:
            InvalidPolicy: if the merged values are not a valid policy
        """
        scaling = self.scaling
        values = {
            "target_utilization": scaling.target_utilization,
            "min_replicas": scaling.min_replicas,
            "max_replicas": scaling.max_replicas,
            "sync_period": scaling.sync_period,
            "stabilization_window": scaling.stabilization_window,
            "emergency_scale_up_threshold": scaling.emergency_scale_up_threshold,
            "metric_name": scaling.metric_name,
        }
        for key in ("target_utilization", "min_replicas", "max_replicas"):
            override = getattr(workload, key)
            if override is not None:
                values[key] = override

        try:
            return ScalingPolicy(**values)
        except ValidationError as e:
            raise InvalidPolicy(f"Invalid scaling policy for workload '{workload.name}': {e}") from e
        except InvalidPolicy as e:
            raise InvalidPolicy(f"Invalid scaling policy for workload '{workload.name}': {e}") from e

    def build_replica_set(
        self,
        workload: WorkloadSettings,
        policy: ScalingPolicy,
        current_replicas: Optional[int] = None
    ) -> ReplicaSet:
        """Build the initial replica set, clamping the observed count into the policy bounds"""
        if current_replicas is None:
            current_replicas = workload.initial_replicas
        if current_replicas is None:
            current_replicas = policy.min_replicas

        return ReplicaSet(
            name=workload.name,
            namespace=workload.namespace,
            current_replicas=policy.clamp(current_replicas),
            min_replicas=policy.min_replicas,
            max_replicas=policy.max_replicas,
            revision=workload.revision
        )

    def get_config_dict(self) -> Dict[str, Any]:
        """Sanitized settings for logs and the status API"""
        return {
            "environment": self.environment,
            "scaling": self.scaling.model_dump(),
            "kubernetes": self.kubernetes.model_dump(),
            "prometheus": {
                "url": self.prometheus.url,
                "query_timeout": self.prometheus.query_timeout
            },
            "api": self.api.model_dump(),
            "simulation": self.simulation.model_dump(),
            "workloads": [w.model_dump() for w in self.workloads]
        }

    @classmethod
    def load_from_yaml_with_env_override(cls, yaml_path: str) -> "Settings":
        """Load settings from YAML file, expanding ${VAR} references from the environment"""
        yaml_config: Dict[str, Any] = {}
        if os.path.exists(yaml_path):
            with open(yaml_path, 'r') as f:
                yaml_content = f.read()
            # Longest names first so $FOO does not clobber part of $FOOBAR
            for key in sorted(os.environ, key=len, reverse=True):
                value = os.environ[key]
                yaml_content = yaml_content.replace(f"${{{key}}}", value)
                yaml_content = yaml_content.replace(f"${key}", value)
            yaml_config = yaml.safe_load(yaml_content) or {}

        sections = {
            "scaling": ScalingSettings,
            "kubernetes": KubernetesSettings,
            "prometheus": PrometheusSettings,
            "logging": LoggingSettings,
            "api": ApiSettings,
            "simulation": SimulationSettings,
        }
        kwargs: Dict[str, Any] = {
            name: section_cls(**(yaml_config.get(name) or {}))
            for name, section_cls in sections.items()
        }
        for key in ("environment", "debug", "workloads"):
            if key in yaml_config:
                kwargs[key] = yaml_config[key]

        return cls(**kwargs)


# Global settings instance
settings = Settings()
