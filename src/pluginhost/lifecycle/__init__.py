"""
Plugin Lifecycle

Fetch, verify, install, update and uninstall plugins with a durable,
crash-recoverable registry.
"""

from pluginhost.exceptions import InstallError

from .coordinator import InstallCoordinator
from .fetcher import ArchiveFetcher, FetchLimits, RetryPolicy
from .locks import KeyedLocks
from .manifest import (
    MANIFEST_FILENAME,
    PluginManifest,
    PluginType,
    load_manifest,
    save_manifest,
)
from .models import OperationIntent, PluginRecord, PluginRequest, PluginResponse
from .policy import SourcePolicy
from .registry import PluginRegistry
from .signing import PluginSigner, verify_signature
from .state import PluginState, check_rollback, check_transition
from .verifier import PackageVerifier, VerifiedPackage, compute_tree_checksum

__all__ = [
    "MANIFEST_FILENAME",
    "ArchiveFetcher",
    "FetchLimits",
    "InstallCoordinator",
    "InstallError",
    "KeyedLocks",
    "OperationIntent",
    "PackageVerifier",
    "PluginManifest",
    "PluginRecord",
    "PluginRegistry",
    "PluginRequest",
    "PluginResponse",
    "PluginSigner",
    "PluginState",
    "PluginType",
    "RetryPolicy",
    "SourcePolicy",
    "VerifiedPackage",
    "check_rollback",
    "check_transition",
    "compute_tree_checksum",
    "load_manifest",
    "save_manifest",
    "verify_signature",
]
