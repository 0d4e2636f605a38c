#!/usr/bin/env python3
"""
Pydantic models for replica sets, metric samples, policies and decisions
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..exceptions import InvalidPolicy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScalingReason(str, Enum):
    """Outcome class of a scaling decision"""
    SCALE_UP = "ScaleUp"
    SCALE_DOWN = "ScaleDown"
    NO_CHANGE = "NoChange"


class ControllerState(str, Enum):
    """Per replica set state held by the replica controller"""
    STABLE = "Stable"
    SCALING = "Scaling"
    COOLDOWN = "Cooldown"


class ApplyOutcome(str, Enum):
    """What the replica controller did with the last decision"""
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    SUPPRESSED = "suppressed"
    DRY_RUN = "dry_run"
    REPLACED = "replaced"


class CycleOutcome(str, Enum):
    """How a control loop cycle ended"""
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    SUPPRESSED = "suppressed"
    DRY_RUN = "dry_run"
    SKIPPED = "skipped"
    APPLY_FAILED = "apply_failed"
    ROLLED_OUT = "rolled_out"
    CANCELLED = "cancelled"
    ERROR = "error"


class ReplicaSet(BaseModel):
    """A scalable workload and its current replica count"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Workload name")
    namespace: str = Field("default", description="Kubernetes namespace")
    current_replicas: int = Field(..., ge=0, description="Replicas currently running")
    min_replicas: int = Field(..., ge=0, description="Lower replica bound")
    max_replicas: int = Field(..., ge=1, description="Upper replica bound")
    revision: Optional[str] = Field(None, description="Current rollout revision")

    @model_validator(mode="after")
    def _check_bounds(self) -> "ReplicaSet":
        if self.min_replicas > self.max_replicas:
            raise ValueError(
                f"min_replicas ({self.min_replicas}) must be <= max_replicas ({self.max_replicas})"
            )
        if not self.min_replicas <= self.current_replicas <= self.max_replicas:
            raise ValueError(
                f"current_replicas ({self.current_replicas}) outside "
                f"[{self.min_replicas}, {self.max_replicas}]"
            )
        return self

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


class MetricSample(BaseModel):
    """A single utilization observation for one replica"""
    model_config = ConfigDict(frozen=True)

    replica_id: str = Field(..., description="Replica (pod) identifier")
    metric_name: str = Field("cpu", description="Metric name, e.g. 'cpu'")
    value: float = Field(..., ge=0, description="Utilization percentage of requests")
    timestamp: datetime = Field(default_factory=_utcnow, description="Observation time")


class ScalingPolicy(BaseModel):
    """
    Scaling configuration, fixed for the lifetime of a control loop.

    Range violations raise InvalidPolicy directly rather than a pydantic
    ValidationError so that startup can report them uniformly.
    """
    model_config = ConfigDict(frozen=True)

    target_utilization: float = Field(..., description="Target average utilization percent")
    min_replicas: int = Field(1, description="Lower replica clamp")
    max_replicas: int = Field(10, description="Upper replica clamp")
    sync_period: float = Field(15.0, description="Seconds between control loop cycles")
    stabilization_window: float = Field(300.0, description="Cooldown seconds after a scaling action")
    emergency_scale_up_threshold: Optional[float] = Field(
        90.0, description="Average utilization percent that lets a scale-up bypass cooldown"
    )
    metric_name: str = Field("cpu", description="Metric the policy targets")

    @model_validator(mode="after")
    def _check_ranges(self) -> "ScalingPolicy":
        if self.target_utilization <= 0:
            raise InvalidPolicy(f"target_utilization must be > 0, got {self.target_utilization}")
        if self.min_replicas < 0:
            raise InvalidPolicy(f"min_replicas must be >= 0, got {self.min_replicas}")
        if self.max_replicas < 1:
            raise InvalidPolicy(f"max_replicas must be >= 1, got {self.max_replicas}")
        if self.min_replicas > self.max_replicas:
            raise InvalidPolicy(
                f"min_replicas ({self.min_replicas}) must be <= max_replicas ({self.max_replicas})"
            )
        if self.sync_period <= 0:
            raise InvalidPolicy(f"sync_period must be > 0, got {self.sync_period}")
        if self.stabilization_window < 0:
            raise InvalidPolicy(f"stabilization_window must be >= 0, got {self.stabilization_window}")
        if self.emergency_scale_up_threshold is not None and self.emergency_scale_up_threshold <= 0:
            raise InvalidPolicy(
                f"emergency_scale_up_threshold must be > 0, got {self.emergency_scale_up_threshold}"
            )
        return self

    def clamp(self, replicas: int) -> int:
        """Clamp a replica count into [min_replicas, max_replicas]"""
        return max(self.min_replicas, min(self.max_replicas, replicas))


class ScalingDecision(BaseModel):
    """Result of one evaluation cycle"""
    model_config = ConfigDict(frozen=True)

    desired_replicas: int = Field(..., ge=0, description="Replica count to converge to")
    reason: ScalingReason = Field(..., description="ScaleUp, ScaleDown or NoChange")
    current_replicas: int = Field(..., ge=0, description="Replica count the decision was made from")
    message: str = Field("", description="Human readable annotation")
    average_utilization: Optional[float] = Field(None, description="Mean utilization of the samples")
    raw_desired: Optional[int] = Field(None, description="Desired count before clamping")
    manual: bool = Field(False, description="Operator issued override")
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def is_change(self) -> bool:
        return self.reason != ScalingReason.NO_CHANGE


class CycleResult(BaseModel):
    """Summary of one control loop cycle"""
    cycle: int = Field(..., ge=0)
    replica_set: str
    outcome: CycleOutcome
    replicas: int = Field(..., ge=0, description="Replica count after the cycle")
    decision: Optional[ScalingDecision] = None
    sample_count: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
