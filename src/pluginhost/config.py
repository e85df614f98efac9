"""
Host Configuration

``HostConfig`` describes the directories, limits and trust policy of a
plugin host. Values come from defaults, then an optional YAML file, then
``PLUGIN_HOST_*`` environment variables (``__`` separates nested keys,
lists are comma separated).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import BaseModel, Field, ValidationError, field_validator

from pluginhost.exceptions import ConfigError
from pluginhost.lifecycle.fetcher import FetchLimits, RetryPolicy
from pluginhost.lifecycle.policy import SourcePolicy
from pluginhost.lifecycle.signing import load_public_key

logger = logging.getLogger(__name__)

ENV_PREFIX = "PLUGIN_HOST_"
ENV_NESTING = "__"
CONFIG_ENV_VAR = "PLUGIN_HOST_CONFIG"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class VerifyConfig(BaseModel):
    """Package verification limits and signature trust."""

    max_extracted_bytes: int = Field(default=256 * 1024 * 1024, ge=1)
    max_entries: int = Field(default=10_000, ge=1)
    require_signature: bool = False
    trusted_keys: dict[str, str] = Field(
        default_factory=dict, description="Author -> base64 raw Ed25519 public key"
    )

    def public_keys(self) -> dict[str, ed25519.Ed25519PublicKey]:
        return {author: load_public_key(key) for author, key in self.trusted_keys.items()}


class MetricsConfig(BaseModel):
    enabled: bool = True
    prefix: str = "pluginhost"
    port: Optional[int] = Field(
        default=None, ge=1, le=65535, description="Scrape endpoint port; unset keeps it off"
    )


class HostConfig(BaseModel):
    """Complete configuration of a plugin host."""

    plugins_dir: Path = Field(default=Path("data/plugins"), description="Live plugin directories")
    staging_dir: Path = Field(
        default=Path("data/staging"),
        description="Scratch space; must share a filesystem with plugins_dir",
    )
    registry_path: Path = Field(default=Path("data/registry.json"))
    log_level: str = "INFO"
    fetch: FetchLimits = Field(default_factory=FetchLimits)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
    source_policy: SourcePolicy = Field(default_factory=SourcePolicy)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level {v!r}")
        return level

    @classmethod
    def from_yaml(cls, path: str | Path) -> HostConfig:
        """Load a HostConfig from a YAML file."""
        return cls.from_dict(_read_yaml(Path(path)))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HostConfig:
        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def to_yaml(self, path: str | Path) -> None:
        """Save this HostConfig to a YAML file."""
        data = self.model_dump(mode="json")
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def load_config(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> HostConfig:
    """Build a HostConfig from defaults, a YAML file and the environment.

    Args:
        path: YAML file. Falls back to ``$PLUGIN_HOST_CONFIG`` when omitted;
            no file at all is fine.
        env: Environment mapping, ``os.environ`` by default.

    Raises:
        ConfigError: If the file is unreadable or any value is invalid.
    """
    env = os.environ if env is None else env
    if path is None:
        path = env.get(CONFIG_ENV_VAR) or None

    data: dict[str, Any] = {}
    if path is not None:
        data = _read_yaml(Path(path))
        logger.debug("Loaded configuration from %s", path)

    overrides = _env_overrides(env)
    if overrides:
        logger.debug("Applying %d environment overrides", len(overrides))
    for keys, value in overrides:
        _set_nested(data, keys, value)
    return HostConfig.from_dict(data)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    return data


def _env_overrides(env: Mapping[str, str]) -> list[tuple[list[str], Any]]:
    overrides = []
    for name in sorted(env):
        if not name.startswith(ENV_PREFIX) or name == CONFIG_ENV_VAR:
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split(ENV_NESTING) if part]
        if not keys:
            continue
        overrides.append((keys, _coerce_env_value(keys, env[name])))
    return overrides


def _coerce_env_value(keys: list[str], raw: str) -> Any:
    """Turn an environment string into the shape the model expects.

    Scalars are left as strings for pydantic to coerce; list fields are
    split on commas.
    """
    if _is_list_field(keys):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _is_list_field(keys: list[str]) -> bool:
    model: Any = HostConfig
    for key in keys:
        field = model.model_fields.get(key) if hasattr(model, "model_fields") else None
        if field is None:
            return False
        model = field.annotation
    return getattr(model, "__origin__", None) is list


def _set_nested(data: dict[str, Any], keys: list[str], value: Any) -> None:
    target = data
    for key in keys[:-1]:
        child = target.get(key)
        if not isinstance(child, dict):
            child = target[key] = {}
        target = child
    target[keys[-1]] = value
