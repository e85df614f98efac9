"""
Install Coordinator

Orchestrates install, update and uninstall of plugins: fetch → verify →
promote → commit, or rollback on any failure. At most one operation per
plugin id runs at a time; unrelated ids proceed concurrently.

Staging and live directories must live on the same filesystem so that
promotion is a pair of renames.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, NoReturn, Optional

from pluginhost.exceptions import (
    AlreadyAtVersionError,
    FetchCancelledError,
    FetchError,
    InstallCancelledError,
    InstallError,
    InstallStateConflictError,
    InvalidPluginIdError,
    PartialUninstallError,
    PluginHostError,
    RegistryError,
    StateConflictError,
    VerifyError,
)
from pluginhost.lifecycle.fetcher import ArchiveFetcher
from pluginhost.lifecycle.locks import KeyedLocks
from pluginhost.lifecycle.manifest import PluginManifest, is_valid_plugin_id
from pluginhost.lifecycle.models import OperationIntent, PluginRecord
from pluginhost.lifecycle.policy import SourcePolicy
from pluginhost.lifecycle.registry import PluginRegistry, RecordMutator
from pluginhost.lifecycle.state import PluginState
from pluginhost.lifecycle.verifier import PackageVerifier, VerifiedPackage, compute_tree_checksum
from pluginhost.observability.metrics import LifecycleMetrics

logger = logging.getLogger(__name__)

_ORIGINS = {
    "install": (PluginState.ABSENT, PluginState.FAILED),
    "update": (PluginState.INSTALLED, PluginState.FAILED),
}
_TARGETS = {
    "install": PluginState.INSTALLING,
    "update": PluginState.UPDATING,
}


class InstallCoordinator:
    """Install, update and uninstall plugins with crash-safe bookkeeping.

    Args:
        registry: Registry holding the committed plugin records.
        fetcher: Downloads plugin archives.
        verifier: Verifies and extracts downloaded archives.
        plugins_dir: Root of the live plugin directories (one per id).
        staging_dir: Root for per-operation scratch and backup directories.
        source_policy: Optional allow/deny policy checked before fetching.
        metrics: Optional Prometheus metrics facade.

    Example:
        >>> coordinator = InstallCoordinator(registry, fetcher, verifier, plugins, staging)
        >>> coordinator.install("demo", "https://example.com/demo.zip").state
        <PluginState.INSTALLED: 'installed'>
    """

    def __init__(
        self,
        registry: PluginRegistry,
        fetcher: ArchiveFetcher,
        verifier: PackageVerifier,
        plugins_dir: Path,
        staging_dir: Path,
        source_policy: Optional[SourcePolicy] = None,
        metrics: Optional[LifecycleMetrics] = None,
    ) -> None:
        self._registry = registry
        self._fetcher = fetcher
        self._verifier = verifier
        self._plugins_dir = plugins_dir
        self._staging_dir = staging_dir
        self._source_policy = source_policy
        self._metrics = metrics
        self._locks = KeyedLocks()
        self._plugins_dir.mkdir(parents=True, exist_ok=True)
        self._staging_dir.mkdir(parents=True, exist_ok=True)

    @property
    def registry(self) -> PluginRegistry:
        return self._registry

    def live_path(self, plugin_id: str) -> Path:
        """Return the live directory of *plugin_id*."""
        return self._plugins_dir / plugin_id

    def is_busy(self, plugin_id: str) -> bool:
        """Whether an operation currently holds the lock of *plugin_id*."""
        return self._locks.is_held(plugin_id)

    # ------------------------------------------------------------------
    # Install / Update
    # ------------------------------------------------------------------

    def install(
        self,
        plugin_id: str,
        source: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> PluginRecord:
        """Install a plugin that is absent (or failed) from *source*.

        Fetch and verification failures do not raise: the returned record
        is ``FAILED`` with ``last_error`` describing the cause.

        Raises:
            InvalidPluginIdError: If *plugin_id* is not a safe directory name.
            UntrustedSourceError: If the source policy rejects *source*.
            OperationInProgressError: If another operation holds the id.
            InstallStateConflictError: If the plugin is not absent or failed.
            InstallCancelledError: If *cancel* was set before commit.
            InstallError: If the registry could not be updated.
        """
        return self._observe(
            "install", lambda: self._stage_and_commit("install", plugin_id, source, cancel)
        )

    def update(
        self,
        plugin_id: str,
        source: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> PluginRecord:
        """Replace an installed (or failed) plugin with the package at *source*.

        Raises the same errors as :meth:`install`, plus
        ``AlreadyAtVersionError`` when the package version equals the
        installed one. In that case the record and the live directory are
        left exactly as they were.
        """
        return self._observe(
            "update", lambda: self._stage_and_commit("update", plugin_id, source, cancel)
        )

    def _stage_and_commit(
        self,
        operation: str,
        plugin_id: str,
        source: str,
        cancel: Optional[threading.Event],
    ) -> PluginRecord:
        _validate_plugin_id(plugin_id)
        if self._source_policy is not None:
            self._source_policy.check(source)
        target = _TARGETS[operation]

        with self._locks.hold(plugin_id):
            previous = self._registry.get_record(plugin_id)
            if previous.state not in _ORIGINS[operation]:
                raise InstallStateConflictError(
                    f"Cannot {operation} plugin {plugin_id} while it is {previous.state.value}"
                )
            operation_id = uuid.uuid4().hex
            scratch = self._staging_dir / f"{plugin_id}.{operation_id}"
            intent = OperationIntent(
                operation=operation,
                operation_id=operation_id,
                previous=previous,
                scratch_dir=str(scratch),
            )

            def _begin(record: PluginRecord) -> None:
                record.source = source

            self._transition(plugin_id, previous.state, target, _begin, intent=intent)
            logger.info("Starting %s of %s from %s", operation, plugin_id, source)
            try:
                return self._run(operation, plugin_id, source, intent, scratch, cancel)
            except PluginHostError:
                raise
            except Exception as exc:
                self._abort(plugin_id, target, exc)
                raise
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

    def _run(
        self,
        operation: str,
        plugin_id: str,
        source: str,
        intent: OperationIntent,
        scratch: Path,
        cancel: Optional[threading.Event],
    ) -> PluginRecord:
        target = _TARGETS[operation]
        previous = intent.previous
        try:
            raw = self._fetcher.fetch(source, scratch / "download", cancel=cancel)
            if self._metrics is not None:
                self._metrics.record_fetched_bytes(raw.stat().st_size)
            _check_cancel(cancel, plugin_id)
            package = self._verifier.verify(raw, scratch / "extract", expected_id=plugin_id)
            _check_cancel(cancel, plugin_id)
        except (FetchCancelledError, InstallCancelledError) as exc:
            self._fail(plugin_id, target, f"Cancelled: {exc}")
            raise InstallCancelledError(f"The {operation} of {plugin_id} was cancelled") from exc
        except (FetchError, VerifyError) as exc:
            logger.warning("The %s of %s failed: %s", operation, plugin_id, exc)
            return self._fail(plugin_id, target, str(exc))

        manifest = package.manifest
        if (
            operation == "update"
            and previous.state == PluginState.INSTALLED
            and manifest.version == previous.installed_version
        ):
            self._transition(plugin_id, target, previous.state, _restore_from(previous))
            raise AlreadyAtVersionError(
                f"Plugin {plugin_id} is already at version {manifest.version}"
            )

        return self._promote_and_commit(operation, plugin_id, source, intent, package)

    def _promote_and_commit(
        self,
        operation: str,
        plugin_id: str,
        source: str,
        intent: OperationIntent,
        package: VerifiedPackage,
    ) -> PluginRecord:
        target = _TARGETS[operation]
        manifest = package.manifest
        live = self.live_path(plugin_id)
        backup = self._staging_dir / f"{plugin_id}.{intent.operation_id}.previous"
        commit_intent = intent.model_copy(
            update={
                "backup_dir": str(backup),
                "target_version": manifest.version,
                "target_checksum": package.checksum,
                "target_metadata": _manifest_metadata(manifest),
            }
        )
        try:
            self._registry.update_intent(plugin_id, target, commit_intent)
        except RegistryError as exc:
            self._give_up(plugin_id, target, f"Failed to journal {operation} of {plugin_id}", exc)

        try:
            _promote(package.root, live, backup)
        except OSError as exc:
            logger.warning("Promotion of %s failed: %s", plugin_id, exc)
            return self._fail(plugin_id, target, f"Failed to promote {plugin_id}: {exc}")

        promoted_intent = commit_intent.model_copy(update={"promoted": True})
        try:
            self._registry.update_intent(plugin_id, target, promoted_intent)
        except RegistryError as exc:
            _unpromote(live, backup)
            self._give_up(plugin_id, target, f"Failed to journal {operation} of {plugin_id}", exc)

        def _commit(record: PluginRecord) -> None:
            _apply_installation(
                record, manifest.version, package.checksum, commit_intent.target_metadata
            )
            record.source = source

        try:
            record = self._registry.compare_and_transition(
                plugin_id, target, PluginState.INSTALLED, _commit
            )
        except RegistryError as exc:
            _unpromote(live, backup)
            self._give_up(plugin_id, target, f"Failed to commit {operation} of {plugin_id}", exc)

        shutil.rmtree(backup, ignore_errors=True)
        logger.info("Installed %s@%s into %s", plugin_id, manifest.version, live)
        return record

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------

    def uninstall(self, plugin_id: str, *, purge: bool = False) -> PluginRecord:
        """Remove an installed plugin.

        Uninstalling an absent plugin is a no-op. A record left
        ``UNINSTALLING`` by an earlier partial failure resumes deletion.

        Args:
            plugin_id: Plugin id.
            purge: Also delete the registry row instead of keeping it as
                ``ABSENT`` history.

        Raises:
            OperationInProgressError: If another operation holds the id.
            InstallStateConflictError: If an install or update is unresolved.
            PartialUninstallError: If some files could not be removed.
        """
        return self._observe("uninstall", lambda: self._uninstall(plugin_id, purge))

    def _uninstall(self, plugin_id: str, purge: bool) -> PluginRecord:
        _validate_plugin_id(plugin_id)
        with self._locks.hold(plugin_id):
            current = self._registry.get_record(plugin_id)
            state = current.state
            if state == PluginState.ABSENT:
                if purge:
                    self._purge(plugin_id)
                return current
            if state in (PluginState.INSTALLING, PluginState.UPDATING):
                raise InstallStateConflictError(
                    f"Plugin {plugin_id} is {state.value}; startup recovery must resolve it first"
                )
            if state == PluginState.INSTALLED:
                intent = OperationIntent(
                    operation="uninstall",
                    operation_id=uuid.uuid4().hex,
                    previous=current,
                )
                self._transition(
                    plugin_id, PluginState.INSTALLED, PluginState.UNINSTALLING, intent=intent
                )
                state = PluginState.UNINSTALLING

            _remove_live(plugin_id, self.live_path(plugin_id))
            record = self._transition(plugin_id, state, PluginState.ABSENT, _clear_installation)
            if purge:
                self._purge(plugin_id)
            logger.info("Uninstalled %s", plugin_id)
            return record

    def _purge(self, plugin_id: str) -> None:
        try:
            self._registry.purge(plugin_id)
        except StateConflictError as exc:
            raise InstallStateConflictError(str(exc)) from exc
        except RegistryError as exc:
            raise InstallError(f"Failed to purge {plugin_id}: {exc}") from exc

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self) -> list[PluginRecord]:
        """Reconcile records left transient by a crash, then sweep staging.

        Must run before any mutating request is served.

        Returns:
            The resolved records, one per transient record found.
        """
        recovered: list[PluginRecord] = []
        for record in self._registry.list_records():
            if not record.state.is_transient:
                continue
            with self._locks.hold(record.id):
                recovered.append(self._recover_one(record))
        self._sweep_staging()
        if recovered:
            logger.warning("Recovered %d interrupted plugin operations", len(recovered))
        return recovered

    def _recover_one(self, record: PluginRecord) -> PluginRecord:
        plugin_id = record.id
        live = self.live_path(plugin_id)
        intent = self._registry.get_intent(plugin_id)

        if record.state == PluginState.UNINSTALLING:
            try:
                _remove_live(plugin_id, live)
            except PartialUninstallError as exc:
                logger.warning("Could not finish uninstall of %s: %s", plugin_id, exc)
                return record
            self._record_recovery("uninstalled")
            return self._registry.compare_and_transition(
                plugin_id, PluginState.UNINSTALLING, PluginState.ABSENT, _clear_installation
            )

        if intent is None:
            logger.warning(
                "Plugin %s was %s without a journal entry", plugin_id, record.state.value
            )
            self._record_recovery("failed")
            return self._registry.compare_and_transition(
                plugin_id,
                record.state,
                PluginState.FAILED,
                _set_error("Operation interrupted by a restart"),
            )

        if intent.promoted and _tree_matches(live, intent.target_checksum):
            def _commit(rec: PluginRecord) -> None:
                _apply_installation(
                    rec, intent.target_version, intent.target_checksum, intent.target_metadata
                )

            committed = self._registry.compare_and_transition(
                plugin_id, record.state, PluginState.INSTALLED, _commit
            )
            if intent.backup_dir:
                shutil.rmtree(intent.backup_dir, ignore_errors=True)
            logger.warning("Completed interrupted %s of %s", intent.operation, plugin_id)
            self._record_recovery("committed")
            return committed

        previous = intent.previous
        _restore_live(live, intent)
        target_state = previous.state
        restore = _restore_from(previous)
        if previous.state == PluginState.INSTALLED and not _tree_matches(live, previous.checksum):
            target_state = PluginState.FAILED
            restore = _restore_from(
                previous,
                error="Live directory does not match the committed checksum after recovery",
            )

        rolled_back = self._registry.compare_and_transition(
            plugin_id, record.state, target_state, restore, rollback=True
        )
        logger.warning(
            "Rolled back interrupted %s of %s to %s",
            intent.operation,
            plugin_id,
            target_state.value,
        )
        self._record_recovery("rolled_back")
        return rolled_back

    def _sweep_staging(self) -> None:
        for child in self._staging_dir.iterdir():
            logger.debug("Removing stale staging entry %s", child)
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        plugin_id: str,
        expected: PluginState,
        new_state: PluginState,
        mutator: Optional[RecordMutator] = None,
        *,
        intent: Optional[OperationIntent] = None,
    ) -> PluginRecord:
        try:
            return self._registry.compare_and_transition(
                plugin_id, expected, new_state, mutator, intent=intent
            )
        except StateConflictError as exc:
            raise InstallStateConflictError(str(exc)) from exc
        except RegistryError as exc:
            raise InstallError(
                f"Registry update {expected.value} -> {new_state.value} "
                f"failed for {plugin_id}: {exc}"
            ) from exc

    def _fail(self, plugin_id: str, state: PluginState, message: str) -> PluginRecord:
        return self._transition(plugin_id, state, PluginState.FAILED, _set_error(message))

    def _give_up(
        self, plugin_id: str, state: PluginState, message: str, cause: Exception
    ) -> NoReturn:
        try:
            self._registry.compare_and_transition(
                plugin_id, state, PluginState.FAILED, _set_error(f"{message}: {cause}")
            )
        except RegistryError:
            logger.error(
                "Plugin %s left %s; startup recovery will reconcile it", plugin_id, state.value
            )
        raise InstallError(f"{message}: {cause}") from cause

    def _abort(self, plugin_id: str, state: PluginState, cause: Exception) -> None:
        logger.error("Unexpected error during operation on %s: %r", plugin_id, cause)
        try:
            self._registry.compare_and_transition(
                plugin_id, state, PluginState.FAILED, _set_error(f"Unexpected error: {cause}")
            )
        except RegistryError:
            logger.error(
                "Plugin %s left %s; startup recovery will reconcile it", plugin_id, state.value
            )

    def _observe(self, operation: str, func: Callable[[], PluginRecord]) -> PluginRecord:
        started = time.monotonic()
        try:
            record = func()
        except PluginHostError as exc:
            if self._metrics is not None:
                self._metrics.record_operation(
                    operation, exc.code.lower(), time.monotonic() - started
                )
            raise
        if self._metrics is not None:
            self._metrics.record_operation(
                operation, record.state.value, time.monotonic() - started
            )
        return record

    def _record_recovery(self, action: str) -> None:
        if self._metrics is not None:
            self._metrics.record_recovery(action)


# ----------------------------------------------------------------------
# Record mutators
# ----------------------------------------------------------------------


def _set_error(message: str) -> RecordMutator:
    def mutate(record: PluginRecord) -> None:
        record.last_error = message

    return mutate


def _restore_from(previous: PluginRecord, error: Optional[str] = None) -> RecordMutator:
    def mutate(record: PluginRecord) -> None:
        record.installed_version = previous.installed_version
        record.source = previous.source
        record.checksum = previous.checksum
        record.installed_at = previous.installed_at
        record.updated_at = previous.updated_at
        record.last_error = error or previous.last_error
        record.plugin_type = previous.plugin_type
        record.description = previous.description
        record.author = previous.author

    return mutate


def _clear_installation(record: PluginRecord) -> None:
    record.installed_version = None
    record.checksum = ""


def _apply_installation(
    record: PluginRecord,
    version: Optional[str],
    checksum: Optional[str],
    metadata: dict[str, Any],
) -> None:
    record.installed_version = version
    record.checksum = checksum or ""
    record.installed_at = record.updated_at
    record.plugin_type = metadata.get("plugin_type")
    record.description = metadata.get("description")
    record.author = metadata.get("author")


def _manifest_metadata(manifest: PluginManifest) -> dict[str, Any]:
    return {
        "plugin_type": manifest.plugin_type.value,
        "description": manifest.description,
        "author": manifest.author,
    }


# ----------------------------------------------------------------------
# Filesystem steps
# ----------------------------------------------------------------------


def _promote(staged: Path, live: Path, backup: Path) -> None:
    """Swap *staged* into *live*, moving any current tree to *backup*."""
    live.parent.mkdir(parents=True, exist_ok=True)
    moved_aside = False
    if live.exists():
        os.rename(live, backup)
        moved_aside = True
    try:
        os.rename(staged, live)
    except OSError:
        if moved_aside:
            os.rename(backup, live)
        raise


def _unpromote(live: Path, backup: Path) -> None:
    """Undo ``_promote`` after a failed commit."""
    try:
        if live.exists():
            shutil.rmtree(live)
        if backup.exists():
            os.rename(backup, live)
    except OSError:
        logger.exception("Failed to restore %s from %s", live, backup)


def _restore_live(live: Path, intent: OperationIntent) -> None:
    backup = Path(intent.backup_dir) if intent.backup_dir else None
    if backup is not None and backup.is_dir():
        if live.exists():
            shutil.rmtree(live)
        os.rename(backup, live)
        logger.warning("Restored previous tree of %s from %s", live.name, backup)
    elif live.exists() and not intent.previous.checksum:
        shutil.rmtree(live)
        logger.warning("Removed orphaned live tree %s", live)


def _remove_live(plugin_id: str, live: Path) -> None:
    if not live.exists():
        return
    try:
        shutil.rmtree(live)
    except OSError as exc:
        if live.exists():
            raise PartialUninstallError(
                f"Could not fully remove plugin {plugin_id} from {live}: {exc}"
            ) from exc


def _tree_matches(path: Path, checksum: Optional[str]) -> bool:
    return bool(checksum) and path.is_dir() and compute_tree_checksum(path) == checksum


def _validate_plugin_id(plugin_id: str) -> None:
    if not is_valid_plugin_id(plugin_id):
        raise InvalidPluginIdError(f"Invalid plugin id: {plugin_id!r}")


def _check_cancel(cancel: Optional[threading.Event], plugin_id: str) -> None:
    if cancel is not None and cancel.is_set():
        raise InstallCancelledError(f"Operation on {plugin_id} was cancelled")
