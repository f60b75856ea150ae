"""
Configuration data models for tasksync.

These models define the structure of .tasksync.json and
~/.config/tasksync/config.json files, with validation via Pydantic.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RetryConfig(BaseModel):
    """
    Backoff for transient delivery failures.

    With the defaults a mutation is tried four times (delays 1s, 2s, 4s)
    before it is marked failed.
    """
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the first failed attempt before a mutation is marked failed"
    )
    base_delay: float = Field(
        default=1.0,
        gt=0.0,
        description="Delay in seconds before the first retry"
    )
    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Backoff multiplier applied per retry"
    )
    max_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound for a single backoff delay in seconds"
    )
    jitter: bool = Field(
        default=False,
        description="Add ±20% random variance to delays"
    )


class EventsConfig(BaseModel):
    """Live event channel settings."""
    resync_quiet_period: float = Field(
        default=2.0,
        ge=0.0,
        description="Seconds of quiet after a reconnect before the full resync runs"
    )
    channel_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of buffered events and lifecycle signals"
    )


class OrderingConfig(BaseModel):
    """Manual ordering (drag and drop) settings."""
    hover_throttle: float = Field(
        default=0.08,
        ge=0.0,
        description="Minimum seconds between accepted hovers over different targets"
    )
    flip_throttle: float = Field(
        default=0.04,
        ge=0.0,
        description="Minimum seconds between above/below flips on the same target"
    )
    my_tasks_scope: str = Field(
        default="my-tasks",
        description="Scope id of the virtual 'my tasks' grouping"
    )


class RemoteConfig(BaseModel):
    """Remote authority (HTTP API) settings."""
    api_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the task API, e.g. https://tasks.example.com"
    )
    api_token: Optional[str] = Field(
        default=None,
        description="Bearer token sent with every request"
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Request timeout in seconds"
    )
    user_id: Optional[str] = Field(
        default=None,
        description="Current user's id (used for the 'my tasks' grouping)"
    )


class StoreConfig(BaseModel):
    """Durable local store settings."""
    db_path: Path = Field(
        default=Path(".tasksync/store.db"),
        description="SQLite file shared by every tab"
    )
    id_mapping_ttl_days: int = Field(
        default=7,
        ge=1,
        description="Days to keep temporary -> authoritative id mappings"
    )
    broadcast_channel: str = Field(
        default="tasksync-sync-channel",
        description="Cross-tab broadcast channel name"
    )
    claim_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Seconds before another tab's claim on an in-flight mutation is stale"
    )


class SyncConfig(BaseModel):
    """
    Top-level tasksync configuration.

    Loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = SyncConfig(retry=RetryConfig(max_retries=5))
        >>> config.events.resync_quiet_period
        2.0
    """
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry and backoff"
    )
    events: EventsConfig = Field(
        default_factory=EventsConfig,
        description="Live event reconciler"
    )
    ordering: OrderingConfig = Field(
        default_factory=OrderingConfig,
        description="Manual ordering"
    )
    remote: RemoteConfig = Field(
        default_factory=RemoteConfig,
        description="Remote authority"
    )
    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Local store"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )
