#!/usr/bin/env python3
"""
Exception hierarchy for the autoscaler control loop
"""


class AutoscalerError(Exception):
    """Base class for all autoscaler errors"""


class MetricsUnavailable(AutoscalerError):
    """Metrics could not be collected for this cycle (transient)"""

    def __init__(self, message: str, source: str = "metrics"):
        super().__init__(message)
        self.source = source


class ApplyError(AutoscalerError):
    """The replica pool could not be updated (transient)"""

    def __init__(self, message: str, replica_set: str = "", attempts: int = 0):
        super().__init__(message)
        self.replica_set = replica_set
        self.attempts = attempts


class InvalidPolicy(AutoscalerError):
    """Scaling configuration rejected before the loop starts (fatal)"""
