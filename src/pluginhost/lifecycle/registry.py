"""
Plugin Registry

Durable mapping of plugin id to its committed lifecycle record. All
mutation goes through ``compare_and_transition``, which checks the
state machine, verifies the expected prior state, persists the new
document and only then makes the change visible to readers.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from pluginhost.exceptions import InvariantViolationError, RegistryStorageError, StateConflictError
from pluginhost.lifecycle.models import OperationIntent, PluginRecord, utcnow
from pluginhost.lifecycle.state import PluginState, check_rollback, check_transition

logger = logging.getLogger(__name__)

STORAGE_FORMAT_VERSION = 1

RecordMutator = Callable[[PluginRecord], None]


class RecordListing:
    """Lazy, restartable sequence of registry records sorted by id.

    Every iteration takes a fresh snapshot, so iterating twice reflects
    whatever was committed in between.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        state: Optional[PluginState] = None,
        plugin_type: Optional[str] = None,
    ) -> None:
        self._registry = registry
        self._state = state
        self._plugin_type = plugin_type

    def __iter__(self) -> Iterator[PluginRecord]:
        for record in self._registry._snapshot():
            if self._state is not None and record.state != self._state:
                continue
            if self._plugin_type is not None and record.plugin_type != self._plugin_type:
                continue
            yield record

    def __len__(self) -> int:
        return sum(1 for _ in self)


class PluginRegistry:
    """Registry of plugin records with optimistic compare-and-transition.

    Stores records in memory with optional JSON file persistence. Every
    write replaces the file atomically, so a crash leaves either the old
    or the new document on disk.

    Args:
        storage_path: Optional path to a JSON file for durable storage.

    Example:
        >>> registry = PluginRegistry(Path("registry.json"))
        >>> registry.compare_and_transition("demo", PluginState.ABSENT, PluginState.INSTALLING)
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._records: dict[str, PluginRecord] = {}
        self._intents: dict[str, OperationIntent] = {}
        self._storage_path = storage_path
        self._lock = threading.Lock()
        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_record(self, plugin_id: str) -> PluginRecord:
        """Return a copy of the record for *plugin_id*.

        Unknown ids yield a fresh ``ABSENT`` record rather than an error.
        """
        with self._lock:
            record = self._records.get(plugin_id)
            if record is None:
                return PluginRecord(id=plugin_id)
            return record.model_copy(deep=True)

    def list_records(
        self,
        state: Optional[PluginState] = None,
        plugin_type: Optional[str] = None,
    ) -> RecordListing:
        """List known records, optionally filtered by state and plugin type."""
        return RecordListing(self, state=state, plugin_type=plugin_type)

    def get_intent(self, plugin_id: str) -> Optional[OperationIntent]:
        """Return the journal entry of the in-flight operation on *plugin_id*."""
        with self._lock:
            intent = self._intents.get(plugin_id)
            return intent.model_copy(deep=True) if intent else None

    def contains(self, plugin_id: str) -> bool:
        with self._lock:
            return plugin_id in self._records

    def _snapshot(self) -> list[PluginRecord]:
        with self._lock:
            return [self._records[key].model_copy(deep=True) for key in sorted(self._records)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def compare_and_transition(
        self,
        plugin_id: str,
        expected_state: PluginState,
        new_state: PluginState,
        mutator: Optional[RecordMutator] = None,
        *,
        intent: Optional[OperationIntent] = None,
        rollback: bool = False,
    ) -> PluginRecord:
        """Atomically move a record from *expected_state* to *new_state*.

        Args:
            plugin_id: Record key.
            expected_state: State the record must still be in.
            new_state: State to move to.
            mutator: Optional callable adjusting the other fields of the
                copy being written. ``updated_at`` is already stamped when
                it runs; it cannot change ``id`` or ``state``.
            intent: Journal entry to store alongside a transient record.
                Entries are dropped automatically when the record leaves
                its transient state.
            rollback: Use the recovery rollback edges instead of the
                forward transitions.

        Returns:
            A copy of the committed record.

        Raises:
            IllegalTransitionError: If the state machine forbids the move.
            StateConflictError: If the record is no longer in *expected_state*.
            InvariantViolationError: If the result would be inconsistent.
            RegistryStorageError: If the new state could not be persisted.
        """
        if rollback:
            check_rollback(expected_state, new_state)
        else:
            check_transition(expected_state, new_state)
        if intent is not None and not new_state.is_transient:
            raise InvariantViolationError(
                f"Operation intent given for non-transient state {new_state.value}"
            )

        with self._lock:
            current = self._records.get(plugin_id) or PluginRecord(id=plugin_id)
            if current.state != expected_state:
                raise StateConflictError(
                    f"Plugin {plugin_id} is {current.state.value}, expected {expected_state.value}"
                )
            updated = current.model_copy(deep=True)
            updated.updated_at = utcnow()
            if mutator is not None:
                mutator(updated)
            updated.id = plugin_id
            updated.state = new_state
            if new_state != PluginState.FAILED:
                updated.last_error = None
            updated.check_invariants()

            records = dict(self._records)
            records[plugin_id] = updated
            intents = dict(self._intents)
            if not new_state.is_transient:
                intents.pop(plugin_id, None)
            elif intent is not None:
                intents[plugin_id] = intent
            self._persist(records, intents)
            self._records, self._intents = records, intents

        logger.info(
            "Plugin %s: %s -> %s", plugin_id, expected_state.value, new_state.value
        )
        return updated.model_copy(deep=True)

    def update_intent(
        self,
        plugin_id: str,
        expected_state: PluginState,
        intent: OperationIntent,
    ) -> None:
        """Replace the journal entry of a record that is still in *expected_state*."""
        if not expected_state.is_transient:
            raise InvariantViolationError(
                f"Operation intent given for non-transient state {expected_state.value}"
            )
        with self._lock:
            current = self._records.get(plugin_id)
            if current is None or current.state != expected_state:
                actual = current.state.value if current else PluginState.ABSENT.value
                raise StateConflictError(
                    f"Plugin {plugin_id} is {actual}, expected {expected_state.value}"
                )
            intents = dict(self._intents)
            intents[plugin_id] = intent
            self._persist(self._records, intents)
            self._intents = intents

    def purge(self, plugin_id: str) -> None:
        """Delete the row of an ``ABSENT`` record (no-op for unknown ids).

        Raises:
            StateConflictError: If the record is not ``ABSENT``.
        """
        with self._lock:
            current = self._records.get(plugin_id)
            if current is None:
                return
            if current.state != PluginState.ABSENT:
                raise StateConflictError(
                    f"Plugin {plugin_id} is {current.state.value}, "
                    "only absent records can be purged"
                )
            records = dict(self._records)
            del records[plugin_id]
            self._persist(records, self._intents)
            self._records = records
        logger.info("Purged plugin record %s", plugin_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(
        self,
        records: dict[str, PluginRecord],
        intents: dict[str, OperationIntent],
    ) -> None:
        """Atomically replace the storage file (if configured)."""
        if not self._storage_path:
            return
        document = {
            "version": STORAGE_FORMAT_VERSION,
            "records": {key: rec.model_dump(mode="json") for key, rec in records.items()},
            "intents": {key: entry.model_dump(mode="json") for key, entry in intents.items()},
        }
        directory = self._storage_path.parent
        tmp_name: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self._storage_path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._storage_path)
            tmp_name = None
            _fsync_directory(directory)
        except OSError as exc:
            raise RegistryStorageError(
                f"Failed to persist registry to {self._storage_path}: {exc}"
            ) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        logger.debug("Persisted %d plugin records to %s", len(records), self._storage_path)

    def _load_from_file(self, path: Path) -> None:
        """Restore registry state from the storage file at *path*."""
        try:
            with open(path, encoding="utf-8") as f:
                document = json.load(f)
            records = {
                key: PluginRecord(**value) for key, value in document.get("records", {}).items()
            }
            intents = {
                key: OperationIntent(**value) for key, value in document.get("intents", {}).items()
            }
        except (OSError, ValueError, ValidationError, AttributeError) as exc:
            raise RegistryStorageError(
                f"Failed to load registry from {path}: {exc}"
            ) from exc
        for record in records.values():
            record.check_invariants()
        self._records = records
        self._intents = intents
        logger.debug("Loaded %d plugin records from %s", len(records), path)


def _fsync_directory(directory: Path) -> None:
    """Flush the directory entry of a rename (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
