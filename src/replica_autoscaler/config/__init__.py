"""
Configuration module for autoscaler settings
"""

from .settings import (
    Settings,
    settings,
    ScalingSettings,
    KubernetesSettings,
    PrometheusSettings,
    LoggingSettings,
    ApiSettings,
    SimulationSettings,
    WorkloadSettings,
)

__all__ = [
    "Settings",
    "settings",
    "ScalingSettings",
    "KubernetesSettings",
    "PrometheusSettings",
    "LoggingSettings",
    "ApiSettings",
    "SimulationSettings",
    "WorkloadSettings",
]
