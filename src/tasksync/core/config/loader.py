"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .env import load_layered_env
from .models import SyncConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per session
_config_cache: SyncConfig | None = None


class ConfigError(Exception):
    """Raised when the merged configuration is invalid."""


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/tasksync/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "tasksync" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Working directory to search from (defaults to current directory)

    Returns:
        Path to .tasksync.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".tasksync.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    Nested dicts are merged, not replaced.

    Example:
        >>> deep_merge({"retry": {"max_retries": 3, "base_delay": 1.0}},
        ...            {"retry": {"max_retries": 5}})
        {'retry': {'max_retries': 5, 'base_delay': 1.0}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open() as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        # Config system should be resilient: warn and continue
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _set_nested(result: dict[str, Any], section: str, key: str, value: Any) -> None:
    section_dict = dict(result.get(section) or {})
    section_dict[key] = value
    result[section] = section_dict


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        TASKSYNC_API_URL - overrides remote.api_url
        TASKSYNC_API_TOKEN - overrides remote.api_token
        TASKSYNC_USER_ID - overrides remote.user_id
        TASKSYNC_DB_PATH - overrides store.db_path
        TASKSYNC_MAX_RETRIES - overrides retry.max_retries
        TASKSYNC_RESYNC_QUIET_PERIOD - overrides events.resync_quiet_period

    Args:
        config_dict: Configuration dictionary to override

    Returns:
        Configuration dictionary with env var overrides applied
    """
    result = config_dict.copy()

    if api_url := os.environ.get("TASKSYNC_API_URL"):
        _set_nested(result, "remote", "api_url", api_url)

    if api_token := os.environ.get("TASKSYNC_API_TOKEN"):
        _set_nested(result, "remote", "api_token", api_token)

    if user_id := os.environ.get("TASKSYNC_USER_ID"):
        _set_nested(result, "remote", "user_id", user_id)

    if db_path := os.environ.get("TASKSYNC_DB_PATH"):
        _set_nested(result, "store", "db_path", db_path)

    if retries_str := os.environ.get("TASKSYNC_MAX_RETRIES"):
        try:
            retries = int(retries_str)
            if retries < 0:
                logger.warning("TASKSYNC_MAX_RETRIES must be >= 0, got %d, ignoring", retries)
            else:
                _set_nested(result, "retry", "max_retries", retries)
        except ValueError:
            logger.warning("Invalid TASKSYNC_MAX_RETRIES value '%s', ignoring", retries_str)

    if quiet_str := os.environ.get("TASKSYNC_RESYNC_QUIET_PERIOD"):
        try:
            _set_nested(result, "events", "resync_quiet_period", float(quiet_str))
        except ValueError:
            logger.warning(
                "Invalid TASKSYNC_RESYNC_QUIET_PERIOD value '%s', ignoring", quiet_str
            )

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Returns:
        Dictionary with default configuration values
    """
    return {
        "retry": {"max_retries": 3, "base_delay": 1.0, "multiplier": 2.0, "max_delay": 30.0},
        "events": {"resync_quiet_period": 2.0},
    }


def load_config(
    project_dir: Path | None = None,
    use_cache: bool = True,
    load_env_files: bool = True,
) -> SyncConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (TASKSYNC_*), including values from .env files
        2. Project config (.tasksync.json)
        3. User config (~/.config/tasksync/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .tasksync.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load
        load_env_files: If True, load .env files before reading env vars

    Returns:
        Validated SyncConfig instance

    Raises:
        ConfigError: If the merged config fails validation

    Example:
        >>> config = load_config()
        >>> config.retry.max_retries
        3
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    if load_env_files:
        load_layered_env(project_dir=project_dir)

    merged = get_default_config()

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    # Project config has higher priority than user config
    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    try:
        config = SyncConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    _config_cache = config
    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
