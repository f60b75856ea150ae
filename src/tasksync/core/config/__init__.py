"""
Configuration models and loading.

Pydantic models for tasksync configuration with multi-layer merging:
defaults < user < project < env vars.
"""

from .loader import (
    ConfigError,
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
)
from .models import (
    EventsConfig,
    OrderingConfig,
    RemoteConfig,
    RetryConfig,
    StoreConfig,
    SyncConfig,
)

__all__ = [
    # Models
    "EventsConfig",
    "OrderingConfig",
    "RemoteConfig",
    "RetryConfig",
    "StoreConfig",
    "SyncConfig",
    # Loader functions
    "ConfigError",
    "clear_cache",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
]
