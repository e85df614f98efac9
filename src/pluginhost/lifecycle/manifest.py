"""
Plugin Manifest Schema

Defines the schema for plugin package manifests (plugin.yaml). Every
package carries one at its root, declaring the plugin id, its semantic
version and, optionally, the checksum of the packaged content.
"""

from __future__ import annotations

import enum
import logging
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from pluginhost.exceptions import InvalidManifestError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "plugin.yaml"
MANIFEST_FILENAMES = (MANIFEST_FILENAME, "plugin.yml", "plugin.json")

PLUGIN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


class PluginType(str, enum.Enum):
    """Supported plugin types."""

    DESENSITIZATION = "desensitization"
    ENCRYPTION = "encryption"
    VALIDATION = "validation"
    TRANSFORM = "transform"
    CUSTOM = "custom"


def is_valid_plugin_id(value: str) -> bool:
    """Return whether *value* can serve as a plugin id and directory name."""
    return bool(PLUGIN_ID_PATTERN.match(value)) and value not in (".", "..")


class PluginManifest(BaseModel):
    """Schema for a plugin package manifest.

    Example:
        >>> manifest = PluginManifest(id="demo", version="1.0.0")
    """

    id: str = Field(..., description="Stable plugin id")
    version: str = Field(..., description="Semantic version string")
    name: Optional[str] = Field(None, description="Human-readable display name")
    description: str = Field("", description="Short human-readable description")
    author: Optional[str] = Field(None, description="Author name or email")
    plugin_type: PluginType = Field(PluginType.CUSTOM, description="Type of plugin")
    capabilities: list[str] = Field(default_factory=list, description="Declared capabilities")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    checksum: Optional[str] = Field(
        None, description="sha256 of the packaged content, manifest excluded"
    )
    signature: Optional[str] = Field(None, description="Base64-encoded Ed25519 signature")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Ensure the id is usable as a directory name."""
        if not v or not v.strip():
            raise InvalidManifestError("Plugin id must not be empty")
        if not is_valid_plugin_id(v):
            raise InvalidManifestError(
                "Plugin id must start with an alphanumeric character and contain only "
                "alphanumeric characters, dots, hyphens, or underscores"
            )
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate semantic version format (MAJOR.MINOR.PATCH[-pre][+build])."""
        if not _SEMVER.match(v):
            raise InvalidManifestError(f"Invalid version format: {v} (expected MAJOR.MINOR.PATCH)")
        return v

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v.startswith("sha256:"):
            v = v[len("sha256:"):]
        if not _SHA256_HEX.match(v):
            raise InvalidManifestError(f"Invalid checksum: {v} (expected sha256 hex digest)")
        return v

    def signable_bytes(self) -> bytes:
        """Return the canonical bytes used for signing (excludes signature field)."""
        data = self.model_dump(mode="json", exclude={"signature"})
        return yaml.dump(data, sort_keys=True).encode()


def find_manifest(directory: Path) -> Optional[Path]:
    """Return the manifest file inside *directory*, if there is one."""
    for filename in MANIFEST_FILENAMES:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


def load_manifest(path: Path) -> PluginManifest:
    """Load a plugin manifest from a YAML (or JSON) file.

    Args:
        path: Path to the manifest file or directory containing one.

    Returns:
        Parsed PluginManifest.

    Raises:
        InvalidManifestError: If the file is missing or invalid.
    """
    if path.is_dir():
        found = find_manifest(path)
        if found is None:
            raise InvalidManifestError(f"Manifest not found in {path}")
        path = found
    if not path.exists():
        raise InvalidManifestError(f"Manifest not found: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise InvalidManifestError(f"Failed to load manifest: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidManifestError(f"Manifest must be a mapping: {path}")
    try:
        return PluginManifest(**data)
    except ValidationError as exc:
        raise InvalidManifestError(f"Failed to load manifest: {exc}") from exc


def save_manifest(manifest: PluginManifest, path: Path) -> Path:
    """Save a plugin manifest to a YAML file.

    Args:
        manifest: The manifest to save.
        path: Directory or file path to write to.

    Returns:
        The path to the written file.
    """
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    data = manifest.model_dump(mode="json", exclude_none=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=True)
    logger.debug("Saved manifest to %s", path)
    return path
