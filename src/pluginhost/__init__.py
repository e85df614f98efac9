"""
pluginhost - Plugin lifecycle manager

Fetches, verifies, installs, updates and uninstalls plugin packages while
keeping a durable, crash-recoverable registry of what is installed.

Version: 0.1.0
"""

__version__ = "0.1.0"

from .config import HostConfig, load_config
from .exceptions import (
    FetchError,
    InstallError,
    PluginHostError,
    RegistryError,
    VerifyError,
)
from .host import PluginHost
from .lifecycle import (
    InstallCoordinator,
    PluginRecord,
    PluginRegistry,
    PluginRequest,
    PluginResponse,
    PluginState,
)

__all__ = [
    "__version__",
    "FetchError",
    "HostConfig",
    "InstallCoordinator",
    "InstallError",
    "PluginHost",
    "PluginHostError",
    "PluginRecord",
    "PluginRegistry",
    "PluginRequest",
    "PluginResponse",
    "PluginState",
    "RegistryError",
    "VerifyError",
    "load_config",
]
