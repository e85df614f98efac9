# Copyright (c) Plugin Host Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for pluginhost.

All pluginhost exceptions inherit from PluginHostError, enabling
consistent error handling across the fetcher, verifier, registry and
coordinator. Each class carries a machine-readable ``code`` that the
request layer reports back to callers.
"""


class PluginHostError(Exception):
    """Base exception for all pluginhost errors."""

    code = "INTERNAL_SERVER_ERROR"


class ConfigError(PluginHostError):
    """Invalid or unreadable configuration."""

    code = "BAD_REQUEST"


# Fetch


class FetchError(PluginHostError):
    """Errors while retrieving a plugin package."""

    code = "PLUGIN_INSTALL_FAILED"


class FetchLimitExceededError(FetchError):
    """The download exceeded the size limit or the total deadline."""


class SourceRejectedError(FetchError):
    """The source permanently refused the request (4xx, missing file)."""


class FetchCancelledError(FetchError):
    """The caller cancelled the download."""


# Verify


class VerifyError(PluginHostError):
    """Errors while validating a staged package."""

    code = "PLUGIN_INVALID"


class CorruptArchiveError(VerifyError):
    """The archive is not a readable zip or tar file."""


class UnsafePathError(VerifyError):
    """An archive entry would land outside the staging root."""


class ChecksumMismatchError(VerifyError):
    """The declared checksum does not match the extracted content."""


class ArchiveTooLargeError(VerifyError):
    """The archive expands beyond the configured size or entry count."""


class InvalidManifestError(VerifyError):
    """The plugin manifest is missing or malformed."""


class ManifestMismatchError(VerifyError):
    """The manifest declares a different plugin id than requested."""


class SignatureError(VerifyError):
    """The manifest signature is missing, untrusted, or invalid."""


# Registry


class RegistryError(PluginHostError):
    """Errors related to the plugin registry."""


class StateConflictError(RegistryError):
    """The record is no longer in the expected state."""

    code = "PLUGIN_STATE_CONFLICT"


class IllegalTransitionError(RegistryError):
    """A transition that the lifecycle state machine does not allow."""


class InvariantViolationError(RegistryError):
    """A record write would break a registry invariant."""


class RegistryStorageError(RegistryError):
    """Reading or writing the registry storage failed."""


# Install


class InstallError(PluginHostError):
    """Errors surfaced by install, update and uninstall operations."""

    code = "PLUGIN_INSTALL_FAILED"


class OperationInProgressError(InstallError):
    """Another operation currently holds the plugin's lock."""

    code = "PLUGIN_OPERATION_IN_PROGRESS"


class InstallStateConflictError(InstallError):
    """The plugin is not in a state the operation can start from."""

    code = "PLUGIN_STATE_CONFLICT"


class InstallCancelledError(InstallError):
    """The operation was cancelled before it committed."""

    code = "PLUGIN_INSTALL_CANCELLED"


class UntrustedSourceError(InstallError):
    """The source is not permitted by the source policy."""

    code = "PLUGIN_UNTRUSTED_SOURCE"


class PartialUninstallError(InstallError):
    """The live plugin directory could only be partially removed."""

    code = "PLUGIN_PARTIAL_UNINSTALL"


class AlreadyAtVersionError(InstallError):
    """The update resolves to the version that is already installed."""

    code = "PLUGIN_ALREADY_AT_VERSION"


class InvalidPluginIdError(InstallError):
    """The plugin id cannot be used as a directory name."""

    code = "BAD_REQUEST"


class HostNotStartedError(InstallError):
    """A mutating request arrived before startup recovery finished."""

    code = "SERVICE_UNAVAILABLE"


__all__ = [
    "PluginHostError",
    "ConfigError",
    "FetchError",
    "FetchLimitExceededError",
    "SourceRejectedError",
    "FetchCancelledError",
    "VerifyError",
    "CorruptArchiveError",
    "UnsafePathError",
    "ChecksumMismatchError",
    "ArchiveTooLargeError",
    "InvalidManifestError",
    "ManifestMismatchError",
    "SignatureError",
    "RegistryError",
    "StateConflictError",
    "IllegalTransitionError",
    "InvariantViolationError",
    "RegistryStorageError",
    "InstallError",
    "OperationInProgressError",
    "InstallStateConflictError",
    "InstallCancelledError",
    "UntrustedSourceError",
    "PartialUninstallError",
    "AlreadyAtVersionError",
    "InvalidPluginIdError",
    "HostNotStartedError",
]
