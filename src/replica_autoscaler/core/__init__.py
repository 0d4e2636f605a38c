"""
Core autoscaler modules
"""

from .autoscaler import ControlLoop
from .controller import KubernetesReplicaPool, ReplicaController, ReplicaPool
from .metrics import MetricsSource, PrometheusMetricsSource
from .scaling import ScalingDecider
from .simulation import InMemoryReplicaPool, SimulatedMetricsSource

__all__ = [
    "ControlLoop",
    "ReplicaController",
    "ReplicaPool",
    "KubernetesReplicaPool",
    "MetricsSource",
    "PrometheusMetricsSource",
    "ScalingDecider",
    "SimulatedMetricsSource",
    "InMemoryReplicaPool",
]
