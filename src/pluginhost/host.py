"""
Plugin Host

Wires the registry, fetcher, verifier and coordinator together from a
``HostConfig``, runs startup recovery and answers lifecycle requests from
the API layer with typed responses.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from pluginhost.config import HostConfig
from pluginhost.exceptions import HostNotStartedError, PluginHostError
from pluginhost.lifecycle.coordinator import InstallCoordinator
from pluginhost.lifecycle.fetcher import ArchiveFetcher
from pluginhost.lifecycle.models import PluginRecord, PluginRequest, PluginResponse
from pluginhost.lifecycle.registry import PluginRegistry, RecordListing
from pluginhost.lifecycle.state import PluginState
from pluginhost.lifecycle.verifier import PackageVerifier
from pluginhost.observability.metrics import LifecycleMetrics

logger = logging.getLogger(__name__)


class PluginHost:
    """Entry point for embedding the plugin lifecycle manager.

    Args:
        coordinator: Configured install coordinator.
        fetcher: Fetcher owned by the host, closed by :meth:`close`.
        metrics: Metrics facade, if enabled.
        metrics_port: Port the metrics are served on by :meth:`start`, if any.

    Example:
        >>> host = PluginHost.from_config(load_config("host.yaml"))
        >>> host.start()
        >>> host.install("demo", "https://example.com/demo.zip").state
        <PluginState.INSTALLED: 'installed'>
    """

    def __init__(
        self,
        coordinator: InstallCoordinator,
        fetcher: Optional[ArchiveFetcher] = None,
        metrics: Optional[LifecycleMetrics] = None,
        metrics_port: Optional[int] = None,
    ) -> None:
        self._coordinator = coordinator
        self._fetcher = fetcher
        self.metrics = metrics
        self._metrics_port = metrics_port
        self._started = False
        self._start_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: HostConfig) -> PluginHost:
        registry = PluginRegistry(storage_path=config.registry_path)
        fetcher = ArchiveFetcher(limits=config.fetch, retry=config.retry)
        verifier = PackageVerifier(
            max_extracted_bytes=config.verify.max_extracted_bytes,
            max_entries=config.verify.max_entries,
            trusted_keys=config.verify.public_keys(),
            require_signature=config.verify.require_signature,
        )
        metrics = None
        if config.metrics.enabled:
            metrics = LifecycleMetrics(prefix=config.metrics.prefix)
        coordinator = InstallCoordinator(
            registry=registry,
            fetcher=fetcher,
            verifier=verifier,
            plugins_dir=config.plugins_dir,
            staging_dir=config.staging_dir,
            source_policy=config.source_policy,
            metrics=metrics,
        )
        return cls(
            coordinator, fetcher=fetcher, metrics=metrics, metrics_port=config.metrics.port
        )

    @property
    def coordinator(self) -> InstallCoordinator:
        return self._coordinator

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> list[PluginRecord]:
        """Run crash recovery once and expose metrics; later calls are no-ops."""
        with self._start_lock:
            if self._started:
                return []
            recovered = self._coordinator.recover()
            if self.metrics is not None and self._metrics_port:
                self.metrics.serve(self._metrics_port)
                logger.info("Serving metrics on port %d", self._metrics_port)
            self._started = True
        logger.info("Plugin host started (%d records recovered)", len(recovered))
        return recovered

    def close(self) -> None:
        if self._fetcher is not None:
            self._fetcher.close()

    def __enter__(self) -> PluginHost:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def install(self, plugin_id: str, source: str, **kwargs) -> PluginRecord:
        self._require_started()
        return self._coordinator.install(plugin_id, source, **kwargs)

    def update(self, plugin_id: str, source: str, **kwargs) -> PluginRecord:
        self._require_started()
        return self._coordinator.update(plugin_id, source, **kwargs)

    def uninstall(self, plugin_id: str, *, purge: bool = False) -> PluginRecord:
        self._require_started()
        return self._coordinator.uninstall(plugin_id, purge=purge)

    def get(self, plugin_id: str) -> PluginRecord:
        return self._coordinator.registry.get_record(plugin_id)

    def list_records(
        self,
        state: Optional[PluginState] = None,
        plugin_type: Optional[str] = None,
    ) -> RecordListing:
        return self._coordinator.registry.list_records(state=state, plugin_type=plugin_type)

    def handle(self, request: PluginRequest) -> PluginResponse:
        """Execute *request* and report the outcome without raising.

        Fetch and verification failures come back as ``success=False`` with
        the FAILED record attached and ``PLUGIN_INSTALL_FAILED`` as code.
        """
        try:
            if request.operation == "uninstall":
                record = self.uninstall(request.plugin_id, purge=request.purge)
            elif not request.source_url:
                return PluginResponse(
                    success=False,
                    error_code="BAD_REQUEST",
                    message=f"{request.operation} requires a source_url",
                )
            elif request.operation == "install":
                record = self.install(request.plugin_id, request.source_url)
            else:
                record = self.update(request.plugin_id, request.source_url)
        except PluginHostError as exc:
            logger.info(
                "Request %s %s failed with %s: %s",
                request.operation,
                request.plugin_id,
                exc.code,
                exc,
            )
            return PluginResponse(
                success=False,
                record=self.get(request.plugin_id),
                error_code=exc.code,
                message=str(exc),
            )

        if record.state == PluginState.FAILED:
            return PluginResponse(
                success=False,
                record=record,
                error_code="PLUGIN_INSTALL_FAILED",
                message=record.last_error,
            )
        return PluginResponse(success=True, record=record)

    def _require_started(self) -> None:
        if not self._started:
            raise HostNotStartedError("Plugin host must be started before serving requests")
