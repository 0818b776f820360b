"""Configuration loading for undangan."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

STORAGE_BACKENDS = ("file", "cache", "remote")


@dataclass
class StorageConfig:
    backend: str = "file"  # "file", "cache" or "remote"
    data_dir: str = "./data"
    cache_path: str = "~/.undangan/cache.json"


@dataclass
class RemoteConfig:
    """Server used by the "remote" storage backend."""

    url: str = "http://localhost:3001"
    max_retries: int = 3
    timeout: float = 10.0


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:8080",
        ]
    )


@dataclass
class CommentsConfig:
    min_name_length: int = 2
    min_body_length: int = 1
    per_page: int = 10


@dataclass
class GuestsConfig:
    invitation_base: str = "index.html"


@dataclass
class SyncConfig:
    """Configuration for the offline write queue."""

    enabled: bool = True
    state_path: str = "~/.undangan/sync.json"
    snapshot_interval_seconds: int = 30
    probe_interval_seconds: int = 60


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    comments: CommentsConfig = field(default_factory=CommentsConfig)
    guests: GuestsConfig = field(default_factory=GuestsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with UNDANGAN_ prefix."""
    return os.environ.get(f"UNDANGAN_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Storage overrides
    if backend := _get_env("STORAGE_BACKEND"):
        config.storage.backend = backend
    if data_dir := _get_env("DATA_DIR"):
        config.storage.data_dir = data_dir
    if cache_path := _get_env("CACHE_PATH"):
        config.storage.cache_path = cache_path

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(retries)
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout = float(timeout)

    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if state_path := _get_env("SYNC_STATE_PATH"):
        config.sync.state_path = state_path
    if interval := _get_env("SYNC_SNAPSHOT_INTERVAL"):
        config.sync.snapshot_interval_seconds = int(interval)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ValueError: Unknown storage backend.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    backend=storage_data.get("backend", config.storage.backend),
                    data_dir=storage_data.get("data_dir", config.storage.data_dir),
                    cache_path=storage_data.get("cache_path", config.storage.cache_path),
                )

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    url=remote_data.get("url", config.remote.url),
                    max_retries=remote_data.get("max_retries", config.remote.max_retries),
                    timeout=remote_data.get("timeout", config.remote.timeout),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    cors_origins=server_data.get("cors_origins", config.server.cors_origins),
                )

            # Parse comments config
            if "comments" in data:
                comments_data = data["comments"]
                config.comments = CommentsConfig(
                    min_name_length=comments_data.get(
                        "min_name_length", config.comments.min_name_length
                    ),
                    min_body_length=comments_data.get(
                        "min_body_length", config.comments.min_body_length
                    ),
                    per_page=comments_data.get("per_page", config.comments.per_page),
                )

            # Parse guests config
            if "guests" in data:
                config.guests = GuestsConfig(
                    invitation_base=data["guests"].get(
                        "invitation_base", config.guests.invitation_base
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    state_path=sync_data.get("state_path", config.sync.state_path),
                    snapshot_interval_seconds=sync_data.get(
                        "snapshot_interval_seconds", config.sync.snapshot_interval_seconds
                    ),
                    probe_interval_seconds=sync_data.get(
                        "probe_interval_seconds", config.sync.probe_interval_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    if config.storage.backend not in STORAGE_BACKENDS:
        raise ValueError(
            f"Unknown storage backend {config.storage.backend!r}, "
            f"expected one of {', '.join(STORAGE_BACKENDS)}"
        )

    return config
