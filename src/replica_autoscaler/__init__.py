"""
Replica Autoscaler
Resource-based control loop that scales Kubernetes deployments toward a
target utilization, modelled on the HorizontalPodAutoscaler
"""

__version__ = "1.0.0"
