"""Typed access to the YAML configuration.

Settings are read lazily through dotted keys (``daemon.interval``) so
components can be handed a ``Settings`` built from a plain dict in tests.
Every dotted key can be overridden from the environment by upper-casing it,
replacing dots with underscores and prefixing ``BASTION_``.
"""

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from const import DEFAULT_SETTINGS, ENV_PREFIX
from utils.logger import get_logger

logger = get_logger("settings")

_MISSING = object()
_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off", "")


class ConfigError(Exception):
    """Invalid or unreadable configuration; fatal at startup."""


@dataclass(frozen=True)
class ClassificationPolicy:
    """Thresholds and block parameters for one failure classification."""

    name: str
    threshold: int
    window_seconds: int
    duration: int
    permanent: bool = False
    ports: Optional[Tuple[int, ...]] = None
    enabled: bool = True

    @property
    def block_duration(self) -> Optional[int]:
        """Duration passed to the firewall; None means permanent."""
        return None if self.permanent else self.duration


def parse_ports(value: Any) -> Optional[Tuple[int, ...]]:
    """Parse "22,80,443" / [22, 80] / 22 into a sorted tuple of ports.

    Raises:
        ConfigError: On non-numeric or out-of-range ports
    """
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, int):
        items = [value]
    elif isinstance(value, str):
        items = [p.strip() for p in value.split(",") if p.strip()]
    else:
        items = list(value)

    ports = set()
    for item in items:
        try:
            port = int(item)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid port: {item!r}")
        if not 0 < port < 65536:
            raise ConfigError(f"Port out of range: {port}")
        ports.add(port)
    return tuple(sorted(ports)) or None


def _deep_merge(base: Dict, update: Mapping) -> None:
    """Recursively merge update into base dict."""
    for key, value in update.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, Mapping):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


class Settings:
    """
    Typed accessor over the merged configuration.

    Usage:
        settings = Settings.load("config/config.yaml")
        interval = settings.get_int("daemon.interval")
        policy = settings.policy("sshd")
    """

    def __init__(self, data: Optional[Mapping[str, Any]] = None,
                 environ: Optional[Mapping[str, str]] = None,
                 path: Optional[str] = None):
        """
        Initialize settings.

        Args:
            data: User configuration, merged over DEFAULT_SETTINGS
            environ: Environment used for overrides (defaults to os.environ)
            path: File the data was loaded from, kept for reloads
        """
        self._data: Dict[str, Any] = copy.deepcopy(DEFAULT_SETTINGS)
        if data:
            _deep_merge(self._data, data)
        self._environ = os.environ if environ is None else environ
        self.path = path

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from a dict without touching the environment."""
        return cls(data, environ={} if environ is None else environ)

    @classmethod
    def load(cls, config_path: str, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Load settings from a YAML file.

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        path = Path(config_path)
        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read configuration {path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration {path} must be a mapping")
        else:
            logger.warning(f"Config file '{path}' not found. Using defaults.")
        return cls(data, environ=environ, path=str(path))

    def reload(self) -> "Settings":
        """Return a fresh Settings read from the same file."""
        if not self.path:
            return self
        return Settings.load(self.path, environ=self._environ)

    # =========================================================================
    # Raw access
    # =========================================================================

    def _env_override(self, key: str) -> Optional[str]:
        env_key = ENV_PREFIX + key.replace(".", "_").upper()
        return self._environ.get(env_key)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key; environment overrides win."""
        override = self._env_override(key)
        if override is not None:
            return override

        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return default
            node = node[part]
        return default if node is None else node

    def section(self, key: str) -> Dict[str, Any]:
        """Get a mapping section (empty dict if absent)."""
        value = self.get(key, {})
        if not isinstance(value, Mapping):
            raise ConfigError(f"Setting '{key}' must be a mapping")
        return dict(value)

    # =========================================================================
    # Typed access
    # =========================================================================

    def get_int(self, key: str, default: Any = _MISSING, minimum: Optional[int] = None) -> int:
        value = self.get(key, None)
        if value is None:
            if default is _MISSING:
                raise ConfigError(f"Missing required setting '{key}'")
            value = default
        if isinstance(value, bool):
            raise ConfigError(f"Setting '{key}' must be an integer, got {value!r}")
        try:
            result = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Setting '{key}' must be an integer, got {value!r}")
        if minimum is not None and result < minimum:
            raise ConfigError(f"Setting '{key}' must be >= {minimum}, got {result}")
        return result

    def get_float(self, key: str, default: Any = _MISSING) -> float:
        value = self.get(key, None)
        if value is None:
            if default is _MISSING:
                raise ConfigError(f"Missing required setting '{key}'")
            value = default
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Setting '{key}' must be a number, got {value!r}")

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, None)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ConfigError(f"Setting '{key}' must be a boolean, got {value!r}")

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.get(key, None)
        if value is None:
            return default
        return str(value)

    def get_list(self, key: str) -> List[Any]:
        """Get a list; a comma separated string (env override) is split."""
        value = self.get(key, None)
        if value is None:
            return []
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise ConfigError(f"Setting '{key}' must be a list")

    # =========================================================================
    # Classification policies
    # =========================================================================

    def policy(self, classification: str) -> ClassificationPolicy:
        """
        Resolve the policy for a classification.

        Keys missing under ``classifications.<name>`` fall back to
        ``classifications.default``.

        Raises:
            ConfigError: On non-positive threshold, window or duration
        """
        def lookup(field: str) -> Any:
            value = self.get(f"classifications.{classification}.{field}", None)
            if value is None:
                value = self.get(f"classifications.default.{field}", None)
            return value

        try:
            threshold = int(lookup("threshold"))
            window = int(lookup("window"))
            duration = int(lookup("duration"))
        except (TypeError, ValueError):
            raise ConfigError(f"Classification '{classification}' has a non-integer threshold/window/duration")

        for field, value in (("threshold", threshold), ("window", window), ("duration", duration)):
            if value < 1:
                raise ConfigError(f"Classification '{classification}': {field} must be >= 1, got {value}")

        raw_permanent = lookup("permanent")
        raw_enabled = lookup("enabled")
        return ClassificationPolicy(
            name=classification,
            threshold=threshold,
            window_seconds=window,
            duration=duration,
            permanent=_as_bool(raw_permanent, False),
            ports=parse_ports(lookup("ports")),
            enabled=_as_bool(raw_enabled, True),
        )


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)
