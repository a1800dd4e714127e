"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values in code
2. TOML file
3. Environment variables (LEASING_SCHEMA_* prefix)
4. Explicit overrides (command-line flags)
"""
import os
import tomllib
from pathlib import Path
from typing import Any, Optional

DEFAULT_ENV_PREFIX = "LEASING_SCHEMA_"

DEFAULTS: dict[str, Any] = {
    "database": {
        "url": "sqlite:///data/leasing.db",
    },
    "migrations": {
        "package": "leasing_schema.services.migrations",
        "ledger_table": "schema_migrations",
    },
    "lock": {
        "timeout_seconds": 10.0,
        "poll_interval_seconds": 0.5,
    },
    "retry": {
        "max_attempts": 3,
        "min_wait_seconds": 1.0,
        "max_wait_seconds": 30.0,
        "exponential_multiplier": 2.0,
        "jitter": True,
    },
    "logging": {
        "level": "INFO",
        "json": False,
    },
}


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        url = config.get("database.url")
        timeout = config.get_float("lock.timeout_seconds", 10.0)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = DEFAULT_ENV_PREFIX,
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
        """
        self._data: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path

        if config_path and config_path.exists():
            self._load_toml(config_path)

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        parts = key.split(".")
        current = data

        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]

        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Any]:
        """Get value from environment variable.

        Converts key like "lock.timeout_seconds" to "LEASING_SCHEMA_LOCK_TIMEOUT_SECONDS".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            value = os.environ[env_key]
            return True, self._parse_env_value(value)
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type."""
        # Boolean
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        # Number
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Overrides beat environment variables, which beat TOML values, which
        beat the built-in defaults.

        Args:
            key: Dot-notation key like "database.url"
            default: Default value if key not found anywhere

        Returns:
            Configuration value
        """
        if key in self._overrides:
            return self._overrides[key]

        found, value = self._get_env_value(key)
        if found:
            return value

        found, value = self._get_nested(self._data, key)
        if found:
            return value

        found, value = self._get_nested(DEFAULTS, key)
        if found:
            return value

        return default

    def set_override(self, key: str, value: Any) -> None:
        """Force a value for a key, e.g. from a command-line flag."""
        self._overrides[key] = value

    def get_section(self, section: str) -> dict[str, Any]:
        """Get entire configuration section, merged over the defaults.

        Args:
            section: Dot-notation path to section

        Returns:
            Dictionary of section values
        """
        merged: dict[str, Any] = {}
        for source in (DEFAULTS, self._data):
            found, value = self._get_nested(source, section)
            if found and isinstance(value, dict):
                merged.update(value)
        for name in list(merged):
            merged[name] = self.get(f"{section}.{name}", merged[name])
        return merged

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean."""
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer."""
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        """Get configuration value as float.

        Returns the default (which may be None) if the key is unset.
        """
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def reload(self) -> None:
        """Reload configuration from TOML file."""
        if self._config_path and self._config_path.exists():
            self._load_toml(self._config_path)

    @property
    def config_path(self) -> Optional[Path]:
        """Path of the loaded TOML file, if any."""
        return self._config_path

    @property
    def raw_data(self) -> dict[str, Any]:
        """Get raw configuration data (for debugging)."""
        return self._data.copy()
