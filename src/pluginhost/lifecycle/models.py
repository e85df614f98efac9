"""
Lifecycle Data Models

Pydantic models for registry records, the operation journal used by crash
recovery, and the request/response shapes exchanged with the API layer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from pluginhost.exceptions import InvariantViolationError
from pluginhost.lifecycle.state import PluginState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PluginRecord(BaseModel):
    """Committed lifecycle state of one plugin id.

    The registry is the only owner of these records; callers always
    receive copies.
    """

    id: str = Field(..., description="Stable plugin id (registry key)")
    state: PluginState = Field(PluginState.ABSENT, description="Lifecycle state")
    installed_version: Optional[str] = Field(None, description="Installed semantic version")
    source: Optional[str] = Field(None, description="Last source URL used")
    checksum: str = Field("", description="sha256 of the installed tree, empty if none")
    installed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_error: Optional[str] = Field(None, description="Last failure reason")

    # Descriptive fields copied from the committed manifest
    plugin_type: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None

    def check_invariants(self) -> None:
        """Raise ``InvariantViolationError`` if the record is inconsistent."""
        if self.state == PluginState.INSTALLED:
            if not self.installed_version:
                raise InvariantViolationError(
                    f"Plugin {self.id} is installed but has no installed_version"
                )
            if not self.checksum:
                raise InvariantViolationError(f"Plugin {self.id} is installed but has no checksum")
        if self.state == PluginState.FAILED:
            if not self.last_error:
                raise InvariantViolationError(f"Plugin {self.id} is failed but has no last_error")
        elif self.last_error:
            raise InvariantViolationError(
                f"Plugin {self.id} carries last_error while {self.state.value}"
            )


class OperationIntent(BaseModel):
    """Journal entry for an in-flight operation.

    Persisted atomically with the transition into a transient state and
    removed with the transition out of it, so a record that is transient
    on startup always has the information needed to finish or undo it.
    """

    operation: Literal["install", "update", "uninstall"]
    operation_id: str
    previous: PluginRecord
    scratch_dir: Optional[str] = None
    backup_dir: Optional[str] = None
    target_version: Optional[str] = None
    target_checksum: Optional[str] = None
    target_metadata: dict[str, Any] = Field(default_factory=dict)
    # set once the staged tree has been renamed into the live path
    promoted: bool = False
    started_at: datetime = Field(default_factory=utcnow)


class PluginRequest(BaseModel):
    """A lifecycle request as delivered by the API layer."""

    operation: Literal["install", "update", "uninstall"]
    plugin_id: str
    source_url: Optional[str] = None
    purge: bool = False


class PluginResponse(BaseModel):
    """Result of a lifecycle request: a terminal record or a typed error."""

    success: bool
    record: Optional[PluginRecord] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
