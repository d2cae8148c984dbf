"""Configuration loading for Rollcall."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .limits import UsageLimits


@dataclass
class DeviceConfig:
    name: str = "rollcall-device"


@dataclass
class StorageConfig:
    """Configuration for the Local Store."""

    db_path: str = "~/.rollcall/rollcall.db"
    namespace: str = "rollcall"


@dataclass
class RemoteConfig:
    """Configuration for the shared Supabase backend.

    ``access_token`` and ``user_id`` identify a session issued elsewhere
    (the app's sign-in flow); without them the device stays signed out.
    """

    url: str = ""
    api_key: str = ""
    access_token: str | None = None
    user_id: str | None = None
    timeout_seconds: float = 10.0
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    session_cache_seconds: float = 5.0

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.api_key)


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    enabled: bool = True
    interval_seconds: int = 60
    min_interval_seconds: float = 5.0


@dataclass
class LimitsConfig:
    clubs_per_user: int = 1
    participants_per_club: int = 30
    sessions_per_club: int = 10
    club_memberships_per_user: int = 5

    def to_limits(self) -> UsageLimits:
        return UsageLimits(
            clubs_per_user=self.clubs_per_user,
            participants_per_club=self.participants_per_club,
            sessions_per_club=self.sessions_per_club,
            club_memberships_per_user=self.club_memberships_per_user,
        )


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with ROLLCALL_ prefix."""
    return os.environ.get(f"ROLLCALL_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("DEVICE_NAME"):
        config.device.name = name

    # Storage overrides
    if db_path := _get_env("STORAGE_DB_PATH"):
        config.storage.db_path = db_path
    if namespace := _get_env("STORAGE_NAMESPACE"):
        config.storage.namespace = namespace

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if api_key := _get_env("REMOTE_API_KEY"):
        config.remote.api_key = api_key
    if token := _get_env("ACCESS_TOKEN"):
        config.remote.access_token = token
    if user_id := _get_env("USER_ID"):
        config.remote.user_id = user_id
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = int(sync_interval)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "device" in data:
                config.device = DeviceConfig(
                    name=data["device"].get("name", config.device.name)
                )

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    namespace=storage_data.get("namespace", config.storage.namespace),
                )

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    url=remote_data.get("url", config.remote.url),
                    api_key=remote_data.get("api_key", config.remote.api_key),
                    access_token=remote_data.get("access_token"),
                    user_id=remote_data.get("user_id"),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    retry_max_attempts=remote_data.get(
                        "retry_max_attempts", config.remote.retry_max_attempts
                    ),
                    retry_backoff_seconds=remote_data.get(
                        "retry_backoff_seconds", config.remote.retry_backoff_seconds
                    ),
                    session_cache_seconds=remote_data.get(
                        "session_cache_seconds", config.remote.session_cache_seconds
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    min_interval_seconds=sync_data.get(
                        "min_interval_seconds", config.sync.min_interval_seconds
                    ),
                )

            # Parse limits config
            if "limits" in data:
                limits_data = data["limits"]
                defaults = LimitsConfig()
                config.limits = LimitsConfig(
                    clubs_per_user=limits_data.get("clubs_per_user", defaults.clubs_per_user),
                    participants_per_club=limits_data.get(
                        "participants_per_club", defaults.participants_per_club
                    ),
                    sessions_per_club=limits_data.get(
                        "sessions_per_club", defaults.sessions_per_club
                    ),
                    club_memberships_per_user=limits_data.get(
                        "club_memberships_per_user", defaults.club_memberships_per_user
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
