"""
Lifecycle State Machine

Per-plugin lifecycle states and the transitions between them. The
registry consults this table before applying any change, so an illegal
transition is rejected before a single byte is written.
"""

from __future__ import annotations

import enum

from pluginhost.exceptions import IllegalTransitionError


class PluginState(str, enum.Enum):
    """Lifecycle state of a plugin record."""

    ABSENT = "absent"
    INSTALLING = "installing"
    INSTALLED = "installed"
    UPDATING = "updating"
    UNINSTALLING = "uninstalling"
    FAILED = "failed"

    @property
    def is_transient(self) -> bool:
        """Whether the state only exists while an operation holds the lock."""
        return self in TRANSIENT_STATES


TRANSIENT_STATES = frozenset(
    {PluginState.INSTALLING, PluginState.UPDATING, PluginState.UNINSTALLING}
)

TRANSITIONS: dict[PluginState, frozenset[PluginState]] = {
    PluginState.ABSENT: frozenset({PluginState.INSTALLING}),
    PluginState.INSTALLING: frozenset({PluginState.INSTALLED, PluginState.FAILED}),
    PluginState.INSTALLED: frozenset({PluginState.UPDATING, PluginState.UNINSTALLING}),
    PluginState.UPDATING: frozenset({PluginState.INSTALLED, PluginState.FAILED}),
    PluginState.UNINSTALLING: frozenset({PluginState.ABSENT, PluginState.FAILED}),
    PluginState.FAILED: frozenset(
        {PluginState.INSTALLING, PluginState.UPDATING, PluginState.ABSENT}
    ),
}

# Crash recovery returns an interrupted operation to where it started.
ROLLBACKS: dict[PluginState, frozenset[PluginState]] = {
    PluginState.INSTALLING: frozenset({PluginState.ABSENT, PluginState.FAILED}),
    PluginState.UPDATING: frozenset({PluginState.INSTALLED, PluginState.FAILED}),
}


def can_transition(current: PluginState, target: PluginState) -> bool:
    """Return ``True`` if *current* → *target* is a legal forward transition."""
    return target in TRANSITIONS.get(current, frozenset())


def check_transition(current: PluginState, target: PluginState) -> None:
    """Raise ``IllegalTransitionError`` unless *current* → *target* is legal."""
    if not can_transition(current, target):
        raise IllegalTransitionError(
            f"Illegal lifecycle transition: {current.value} -> {target.value}"
        )


def check_rollback(current: PluginState, target: PluginState) -> None:
    """Raise ``IllegalTransitionError`` unless *target* is a rollback of *current*."""
    if target not in ROLLBACKS.get(current, frozenset()):
        raise IllegalTransitionError(
            f"Illegal lifecycle rollback: {current.value} -> {target.value}"
        )
