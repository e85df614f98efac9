"""Prometheus metrics for plugin lifecycle operations.

Provides ``LifecycleMetrics``, a small facade over ``prometheus_client``
that the coordinator reports install, update, uninstall and recovery
outcomes to.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server


class LifecycleMetrics:
    """Prometheus metrics for the plugin lifecycle.

    Metrics exposed:

    * ``operations_total``: counter labelled by ``operation`` and ``outcome``
    * ``operation_duration_seconds``: histogram labelled by ``operation``
    * ``fetched_bytes_total``: counter of downloaded archive bytes
    * ``recovered_total``: counter of startup recovery actions

    Args:
        prefix: Metric name prefix. Defaults to ``pluginhost``.
        registry: Collector registry; a private one is created if omitted
            so several hosts can live in one process.
    """

    def __init__(
        self,
        prefix: str = "pluginhost",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self.operations_total = Counter(
            f"{prefix}_operations_total",
            "Plugin lifecycle operations by outcome",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.operation_duration_seconds = Histogram(
            f"{prefix}_operation_duration_seconds",
            "Duration of plugin lifecycle operations",
            ["operation"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self.registry,
        )
        self.fetched_bytes_total = Counter(
            f"{prefix}_fetched_bytes_total",
            "Bytes of plugin archives downloaded",
            registry=self.registry,
        )
        self.recovered_total = Counter(
            f"{prefix}_recovered_total",
            "Startup recovery actions taken",
            ["action"],
            registry=self.registry,
        )

    def record_operation(self, operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a finished operation.

        Args:
            operation: ``install``, ``update`` or ``uninstall``.
            outcome: Terminal state value or error code.
            duration_seconds: Wall-clock duration of the call.
        """
        self.operations_total.labels(operation=operation, outcome=outcome).inc()
        self.operation_duration_seconds.labels(operation=operation).observe(duration_seconds)

    def record_fetched_bytes(self, count: int) -> None:
        self.fetched_bytes_total.inc(count)

    def record_recovery(self, action: str) -> None:
        """Increment the recovery counter for *action* (``committed``, ``rolled_back``, ...)."""
        self.recovered_total.labels(action=action).inc()

    def serve(self, port: int = 9090) -> None:
        """Expose the metrics on an HTTP endpoint for scraping."""
        start_http_server(port, registry=self.registry)
