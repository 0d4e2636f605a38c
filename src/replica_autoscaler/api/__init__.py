"""
HTTP API for autoscaler status and operator overrides
"""

from .server import APIServer, ScaleRequest, RolloutRequest

__all__ = ["APIServer", "ScaleRequest", "RolloutRequest"]
