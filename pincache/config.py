"""
Configuration: TOML file merged over defaults, then environment overrides.

    ~/.pincache/config.toml   (or --config / PINCACHE_CONFIG)

    state_path    = "~/.pincache/storage.json"
    start_block   = 0
    probe_timeout = 15.0
    collaborators = "mypkg.chain:build_collaborators"
    log_level     = "INFO"
    api_host      = "127.0.0.1"
    api_port      = 8080
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pincache import (
    API_DEFAULT_HOST,
    API_DEFAULT_PORT,
    DEFAULT_CONFIG_FILE,
    DEFAULT_PROBE_TIMEOUT_SECS,
    DEFAULT_START_BLOCK,
    DEFAULT_STATE_FILE,
)

try:
    import tomllib
except ImportError:  # Python < 3.11
    import tomli as tomllib

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration is missing, unreadable, or has invalid values."""


DEFAULT_CONFIG: dict[str, Any] = {
    "state_path": str(DEFAULT_STATE_FILE),
    "start_block": DEFAULT_START_BLOCK,
    "probe_timeout": DEFAULT_PROBE_TIMEOUT_SECS,
    "collaborators": "",
    "log_level": "INFO",
    "api_host": API_DEFAULT_HOST,
    "api_port": API_DEFAULT_PORT,
}

# env var -> config key
_ENV_OVERRIDES = {
    "PINCACHE_STATE_PATH": "state_path",
    "PINCACHE_START_BLOCK": "start_block",
    "PINCACHE_PROBE_TIMEOUT": "probe_timeout",
    "PINCACHE_COLLABORATORS": "collaborators",
    "PINCACHE_LOG_LEVEL": "log_level",
}

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def config_path(explicit: str | Path | None = None) -> Path:
    """Resolve the config file path: explicit > PINCACHE_CONFIG > default."""
    if explicit:
        return Path(explicit).expanduser()
    env = os.environ.get("PINCACHE_CONFIG", "").strip()
    if env:
        return Path(env).expanduser()
    return DEFAULT_CONFIG_FILE


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load and validate the configuration.

    A missing default file means "use defaults"; an explicitly named file
    that does not exist, or any file that fails to parse, is a ConfigError.
    """
    config = dict(DEFAULT_CONFIG)
    resolved = config_path(path)
    explicit = bool(path) or bool(os.environ.get("PINCACHE_CONFIG", "").strip())

    if resolved.is_file():
        try:
            with open(resolved, "rb") as f:
                file_config = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config from {resolved}: {e}") from e
        unknown = sorted(set(file_config) - set(DEFAULT_CONFIG))
        if unknown:
            log.warning("Ignoring unknown config keys in %s: %s", resolved, ", ".join(unknown))
        config.update({k: v for k, v in file_config.items() if k in DEFAULT_CONFIG})
        log.debug("Loaded config from %s", resolved)
    elif explicit:
        raise ConfigError(f"Config file not found: {resolved}")

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if value:
            config[key] = value

    return _validate(config)


def _validate(config: dict[str, Any]) -> dict[str, Any]:
    try:
        config["start_block"] = int(config["start_block"])
        config["probe_timeout"] = float(config["probe_timeout"])
        config["api_port"] = int(config["api_port"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric config value: {e}") from e

    if config["start_block"] < 0:
        raise ConfigError("start_block must be >= 0")
    if config["probe_timeout"] <= 0:
        raise ConfigError("probe_timeout must be > 0")
    if not 0 <= config["api_port"] <= 65535:
        raise ConfigError(f"api_port out of range: {config['api_port']}")

    level = str(config["log_level"]).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
    config["log_level"] = level

    config["state_path"] = str(Path(str(config["state_path"])).expanduser())
    config["collaborators"] = str(config["collaborators"]).strip()
    config["api_host"] = str(config["api_host"])
    return config
