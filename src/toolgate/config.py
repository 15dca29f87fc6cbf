"""
Configuration for toolgate.

Settings are layered, lowest priority first:
    1. Built-in defaults
    2. YAML config file ($XDG_CONFIG_HOME/toolgate/config.yaml)
    3. TOOLGATE_* environment variables

Example config.yaml:

    discovery:
      safe_paths: ["/usr/bin", "~/.local/bin"]
      skip_list: ["python*", "node"]
      scan_timeout: 2s
      parallelism: 4
    trust:
      offline: false
      network_timeout: 30s
      allowed_issuers: ["https://token.actions.githubusercontent.com"]
    policy_path: ~/.config/toolgate/policy.yaml
"""

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from toolgate.errors import ConfigError

logger = logging.getLogger(__name__)

APP_DIR_NAME = "toolgate"
ENV_PREFIX = "TOOLGATE_"

DEFAULT_SAFE_PATHS = [
    "/usr/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "~/.local/bin",
]
DEFAULT_PROBE_TIMEOUT_MS = 2000
DEFAULT_PARALLELISM = 4
DEFAULT_NETWORK_TIMEOUT_MS = 30_000

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}


# =============================================================================
# Helpers
# =============================================================================


def expand_tilde(path: str) -> str:
    """Expand a leading ~ to the home directory."""
    if path == "~" or path.startswith("~/"):
        return str(Path.home() / path[2:]) if len(path) > 1 else str(Path.home())
    return path


def parse_duration(value: str | int | float, key: str = "duration") -> int:
    """
    Parse a duration into milliseconds.

    Accepts bare numbers (milliseconds) or a number with one of the units
    ms, s, m, h: "100ms", "2s", "1.5s", "5m", "24h".

    Raises:
        ConfigError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ConfigError(message=f"Invalid duration for {key}: {value!r}", key=key, source="duration")
    if isinstance(value, (int, float)):
        return int(value)

    match = _DURATION_RE.match(value)
    if not match:
        raise ConfigError(
            message=f"Invalid duration for {key}: {value!r}",
            key=key,
            source="duration",
            suggestion="Use a number with a unit, e.g. 500ms, 2s, 5m or 1h",
        )
    number, unit = match.groups()
    return int(float(number) * _DURATION_UNITS_MS[unit or "ms"])


def default_data_dir(env: Mapping[str, str] | None = None) -> Path:
    """
    Directory holding the registry and cached descriptors.

    TOOLGATE_DATA_DIR wins, then $XDG_DATA_HOME/toolgate, then
    ~/.local/share/toolgate.
    """
    env = os.environ if env is None else env
    override = env.get(f"{ENV_PREFIX}DATA_DIR")
    if override:
        return Path(expand_tilde(override)).resolve()
    xdg = env.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def default_config_dir(env: Mapping[str, str] | None = None) -> Path:
    """$XDG_CONFIG_HOME/toolgate, or ~/.config/toolgate."""
    env = os.environ if env is None else env
    xdg = env.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return Path.home() / ".config" / APP_DIR_NAME


# =============================================================================
# Settings Models
# =============================================================================


class DiscoverySettings(BaseModel):
    """
    Scanner settings.

    Attributes:
        safe_paths: Directories scanned for executables
        additional_paths: Extra directories appended to safe_paths
        skip_list: fnmatch patterns of executable names to ignore
        probe_timeout_ms: Per-phase probe deadline
        parallelism: Worker pool size
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    safe_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_SAFE_PATHS))
    additional_paths: list[str] = Field(default_factory=list)
    skip_list: list[str] = Field(default_factory=list)
    probe_timeout_ms: int = Field(default=DEFAULT_PROBE_TIMEOUT_MS, gt=0)
    parallelism: int = Field(default=DEFAULT_PARALLELISM, gt=0)

    @field_validator("safe_paths", "additional_paths")
    @classmethod
    def expand_paths(cls, v: list[str]) -> list[str]:
        return [expand_tilde(p) for p in v]

    @property
    def scan_paths(self) -> list[str]:
        return [*self.safe_paths, *self.additional_paths]


class TrustSettings(BaseModel):
    """Defaults for the trust evaluator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    verify_signatures: bool = True
    verify_provenance: bool = True
    minimum_slsa_level: int = Field(default=1, ge=0)
    offline: bool = False
    network_timeout_ms: int = Field(default=DEFAULT_NETWORK_TIMEOUT_MS, gt=0)
    allowed_identities: list[str] = Field(default_factory=list)
    allowed_issuers: list[str] = Field(default_factory=list)
    allowed_builders: list[str] = Field(default_factory=list)


class Settings(BaseModel):
    """Complete toolgate configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    trust: TrustSettings = Field(default_factory=TrustSettings)
    data_dir: Path = Field(default_factory=default_data_dir)
    policy_path: Path | None = None


# =============================================================================
# Loading
# =============================================================================


def _normalize_file_section(section: dict[str, Any], durations: dict[str, str]) -> dict[str, Any]:
    """Convert duration strings in a raw YAML section to *_ms integers."""
    result = dict(section)
    for raw_key, ms_key in durations.items():
        if raw_key in result:
            result[ms_key] = parse_duration(result.pop(raw_key), key=raw_key)
    return result


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(
            message=f"Invalid YAML in config file {path}: {e}",
            source=str(path),
            key="<file>",
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(message=f"Config file {path} must contain a mapping", source=str(path), key="<file>")
    return data


def _apply_env(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    discovery = dict(raw.get("discovery", {}))
    trust = dict(raw.get("trust", {}))

    if value := env.get(f"{ENV_PREFIX}SAFE_PATHS"):
        discovery["safe_paths"] = [p for p in value.split(":") if p]
    if value := env.get(f"{ENV_PREFIX}SKIP"):
        discovery["skip_list"] = [p.strip() for p in value.split(",") if p.strip()]
    if value := env.get(f"{ENV_PREFIX}TIMEOUT"):
        discovery["probe_timeout_ms"] = parse_duration(value, key=f"{ENV_PREFIX}TIMEOUT")
    if value := env.get(f"{ENV_PREFIX}PARALLEL"):
        try:
            discovery["parallelism"] = int(value)
        except ValueError as e:
            raise ConfigError(
                message=f"{ENV_PREFIX}PARALLEL must be an integer, got {value!r}",
                source="environment",
                key=f"{ENV_PREFIX}PARALLEL",
            ) from e
    if value := env.get(f"{ENV_PREFIX}OFFLINE"):
        trust["offline"] = value.strip().lower() in ("1", "true", "yes", "on")

    raw = dict(raw)
    raw["discovery"] = discovery
    raw["trust"] = trust
    return raw


def load_settings(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load settings from defaults, a YAML file and the environment.

    Args:
        path: Explicit config file (defaults to TOOLGATE_CONFIG or the XDG location)
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings

    Raises:
        ConfigError: For unreadable YAML, bad durations or invalid values
    """
    env = os.environ if env is None else env
    if path is None:
        path = env.get(f"{ENV_PREFIX}CONFIG") or default_config_dir(env) / "config.yaml"
    path = Path(expand_tilde(str(path)))

    raw = _read_config_file(path)
    if raw:
        logger.debug("Loaded config file %s", path)

    raw["discovery"] = _normalize_file_section(
        raw.get("discovery") or {}, {"scan_timeout": "probe_timeout_ms"}
    )
    raw["trust"] = _normalize_file_section(
        raw.get("trust") or {}, {"network_timeout": "network_timeout_ms"}
    )
    raw = _apply_env(raw, env)

    raw.setdefault("data_dir", default_data_dir(env))
    if isinstance(raw["data_dir"], str):
        raw["data_dir"] = Path(expand_tilde(raw["data_dir"]))
    if isinstance(raw.get("policy_path"), str):
        raw["policy_path"] = Path(expand_tilde(raw["policy_path"]))

    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first["loc"])
        raise ConfigError(
            message=f"Invalid configuration: {key}: {first['msg']}",
            source=str(path),
            key=key,
        ) from e
