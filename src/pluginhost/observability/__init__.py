"""
Observability components for pluginhost.

Provides Prometheus metrics for lifecycle operations.
"""

from .metrics import LifecycleMetrics

__all__ = ["LifecycleMetrics"]
