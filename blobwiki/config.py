"""
Configuration management for blobwiki clients.

The client configuration is stored as a TOML file in a settings directory.
It names the object store backend, the key layout inside the bucket, size
limits, and the tuning knobs for retries, the metadata index and caches.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "blobwiki.toml"
CONFIG_VERSION = 1

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


@dataclass
class StoreConfig:
    """Which object store to talk to."""
    backend: str = "memory"
    endpoint: str = ""
    bucket: str = ""
    token: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class LayoutConfig:
    """Key prefixes inside the bucket."""
    pages_prefix: str = "pages/"
    files_prefix: str = "files/"
    metadata_prefix: str = "metadata/"
    config_prefix: str = "config/"
    content_extension: str = ".md"

    @property
    def index_key(self) -> str:
        return f"{self.metadata_prefix}pages.json"

    @property
    def files_index_key(self) -> str:
        return f"{self.metadata_prefix}files.json"

    @property
    def site_config_key(self) -> str:
        return f"{self.config_prefix}wiki.json"


@dataclass
class LimitsConfig:
    max_file_size: int = DEFAULT_MAX_FILE_SIZE


@dataclass
class RetryConfig:
    """Backoff for individual store calls."""
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 1.0
    timeout: float = 30.0


@dataclass
class IndexConfig:
    """Read-modify-write loop for the metadata index."""
    max_attempts: int = 3
    backoff: float = 0.1


@dataclass
class CacheConfig:
    """TTLs in seconds, sizes in entries."""
    page_ttl: float = 300.0
    page_max_size: int = 100
    list_ttl: float = 60.0
    hierarchy_ttl: float = 120.0
    file_ttl: float = 600.0
    file_max_size: int = 200
    url_ttl: float = 3600.0
    config_ttl: float = 300.0
    config_max_size: int = 10
    sweep_interval: float = 60.0
    prefetch_concurrency: int = 3
    memory_threshold: int = 50 * 1024 * 1024
    memory_check_interval: float = 300.0


@dataclass
class WikiSettings:
    """Complete client settings."""
    path: Optional[Path] = None
    version: int = CONFIG_VERSION
    author: str = "anonymous"
    store: StoreConfig = field(default_factory=StoreConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @property
    def config_path(self) -> Optional[Path]:
        """Path to the TOML config file."""
        if self.path is None:
            return None
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path is not None and self.config_path.exists()


def _section(cls, data: dict) -> Any:
    """Build a section dataclass from a TOML table, ignoring unknown keys."""
    known = cls.__dataclass_fields__
    return cls(**{k: v for k, v in data.items() if k in known})


def apply_env_overrides(settings: WikiSettings) -> WikiSettings:
    """
    Apply environment overrides in place.

    BLOBWIKI_BACKEND, BLOBWIKI_ENDPOINT, BLOBWIKI_BUCKET, BLOBWIKI_AUTHOR and
    BLOBWIKI_TOKEN (bearer token from the identity provider) win over the file.
    """
    env = os.environ
    if env.get("BLOBWIKI_BACKEND"):
        settings.store.backend = env["BLOBWIKI_BACKEND"]
    if env.get("BLOBWIKI_ENDPOINT"):
        settings.store.endpoint = env["BLOBWIKI_ENDPOINT"]
    if env.get("BLOBWIKI_BUCKET"):
        settings.store.bucket = env["BLOBWIKI_BUCKET"]
    if env.get("BLOBWIKI_AUTHOR"):
        settings.author = env["BLOBWIKI_AUTHOR"]
    if env.get("BLOBWIKI_TOKEN"):
        settings.store.token = env["BLOBWIKI_TOKEN"]
    return settings


def load_settings(settings_path: Path) -> WikiSettings:
    """
    Load settings from a settings directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = settings_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store_data = dict(data.get("store", {}))
    version = store_data.pop("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")
    author = store_data.pop("author", "anonymous")

    # Anything under [store] we don't model goes to backend params
    store_known = StoreConfig.__dataclass_fields__
    params = {k: v for k, v in store_data.items() if k not in store_known}
    store = _section(StoreConfig, store_data)
    store.params.update(params)

    limits = _section(LimitsConfig, data.get("limits", {}))
    if limits.max_file_size <= 0:
        raise ValueError(f"limits.max_file_size must be positive, got {limits.max_file_size}")

    settings = WikiSettings(
        path=settings_path,
        version=version,
        author=author,
        store=store,
        layout=_section(LayoutConfig, data.get("layout", {})),
        limits=limits,
        retry=_section(RetryConfig, data.get("retry", {})),
        index=_section(IndexConfig, data.get("index", {})),
        cache=_section(CacheConfig, data.get("cache", {})),
    )
    return apply_env_overrides(settings)


def save_settings(settings: WikiSettings) -> None:
    """
    Save settings to the settings directory.

    Creates the directory if it doesn't exist. The bearer token is never
    written to disk.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")
    if settings.path is None:
        raise ValueError("Settings have no path to save to")

    settings.path.mkdir(parents=True, exist_ok=True)

    store = {
        "version": settings.version,
        "author": settings.author,
        "backend": settings.store.backend,
        "endpoint": settings.store.endpoint,
        "bucket": settings.store.bucket,
    }
    store.update(settings.store.params)

    data = {
        "store": store,
        "layout": vars(settings.layout).copy(),
        "limits": vars(settings.limits).copy(),
        "retry": vars(settings.retry).copy(),
        "index": vars(settings.index).copy(),
        "cache": vars(settings.cache).copy(),
    }

    with open(settings.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_settings(settings_path: Path) -> WikiSettings:
    """
    Load existing settings or create new ones with defaults.

    This is the main entry point for settings management.
    """
    config_path = settings_path / CONFIG_FILENAME

    if config_path.exists():
        return load_settings(settings_path)
    settings = WikiSettings(path=settings_path)
    save_settings(settings)
    return apply_env_overrides(settings)
