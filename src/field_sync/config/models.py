from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from field_sync.core.models import StrategyKind


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "field-sync"


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    # Per-logger overrides, e.g. {"field_sync.sync": "DEBUG"} to trace queue draining only.
    levels: Mapping[str, str] = Field(default_factory=dict)
    file: FileLoggingSettings = FileLoggingSettings()


class StorageSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = "data/store"
    capacity_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    fsync: bool = True


class NetworkSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = "http://localhost:5000"
    request_timeout_seconds: float = Field(default=10.0, gt=0)


class ResourceClassSettings(BaseModel):
    """A class of resources sharing one caching strategy, matched by a path regex."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    pattern: str
    strategy: StrategyKind
    ttl_seconds: float = Field(default=300.0, ge=0)

    # Creates/updates on critical classes are drained before other work.
    critical: bool = False


def _default_resource_classes() -> tuple[ResourceClassSettings, ...]:
    return (
        ResourceClassSettings(
            name="photos",
            pattern=r"(/photos/|/attached_assets/)",
            strategy=StrategyKind.CACHE_FIRST,
            ttl_seconds=7 * 24 * 60 * 60,
        ),
        ResourceClassSettings(
            name="static",
            pattern=r"(^/$|^/index\.html$|^/manifest\.json$|\.(js|css|png|jpg|jpeg|svg|gif|woff|woff2|ico)$)",
            strategy=StrategyKind.CACHE_FIRST,
            ttl_seconds=24 * 60 * 60,
        ),
        ResourceClassSettings(
            name="session",
            pattern=r"^/api/(auth/user|session)",
            strategy=StrategyKind.STALE_WHILE_REVALIDATE,
            ttl_seconds=5 * 60,
        ),
        ResourceClassSettings(
            name="jobs",
            pattern=r"^/api/(jobs|report-instances)",
            strategy=StrategyKind.NETWORK_FIRST,
            ttl_seconds=5 * 60,
            critical=True,
        ),
    )


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_entries: int = Field(default=350, gt=0)
    # Share of storage capacity cached responses may occupy; the rest stays free for queued writes.
    max_storage_fraction: float = Field(default=0.8, gt=0, le=1)
    resource_classes: Sequence[ResourceClassSettings] = Field(default_factory=_default_resource_classes)
    default_class: ResourceClassSettings = ResourceClassSettings(
        name="api",
        pattern=".*",
        strategy=StrategyKind.NETWORK_FIRST,
        ttl_seconds=5 * 60,
    )


class SyncSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    retry_timeout_seconds: float = Field(default=30.0, gt=0)
    periodic_interval_seconds: float = Field(default=5 * 60, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)
    max_parallel_keys: int = Field(default=4, ge=1)

    # Health probe used to detect connectivity; empty disables probing.
    probe_path: str = "/api/health"
    probe_interval_seconds: float = Field(default=30.0, gt=0)


class UpdateSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    manifest_path: str = "/asset-manifest.json"
    poll_interval_seconds: float = Field(default=15 * 60, gt=0)


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app: AppSettings = AppSettings()
    logging: LoggingSettings = LoggingSettings()
    storage: StorageSettings = StorageSettings()
    network: NetworkSettings = NetworkSettings()
    cache: CacheSettings = CacheSettings()
    sync: SyncSettings = SyncSettings()
    updates: UpdateSettings = UpdateSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "FIELD_SYNC__"
    dotenv_path: Optional[str] = "data/.env"
