"""Configuration for feed_sync.

Settings are read from FEED_SYNC_* environment variables. Every value has a
default so the server starts with no configuration at all.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

DEFAULT_PLATFORM_URL = "https://weread.111965.xyz"


def _default_output_dir() -> Path:
    return Path.home() / ".feed_sync" / "notes"


@dataclass
class ServerConfig:
    """Runtime configuration for the sync server."""

    name: str = "feed_sync"
    log_level: str = "INFO"
    output_dir: Path = field(default_factory=_default_output_dir)
    platform_url: str = DEFAULT_PLATFORM_URL

    # Scheduling
    auto_sync: bool = True
    sync_interval_minutes: int = 60
    tick_seconds: float = 60.0

    # Fetching
    inter_page_delay_seconds: float = 60.0
    max_items_per_feed: int = 100
    max_pages_per_feed: int = 5
    request_timeout_seconds: float = 15.0
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000

    # Windows
    freshness_days: int = 5
    retention_days: int = 30

    # Credential pool
    blacklist_cooldown_hours: float = 24.0


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var suffix -> (field name, parser)
_ENV_FIELDS: Dict[str, tuple] = {
    "NAME": ("name", str),
    "LOG_LEVEL": ("log_level", lambda v: v.upper()),
    "OUTPUT_DIR": ("output_dir", Path),
    "PLATFORM_URL": ("platform_url", lambda v: v.rstrip("/")),
    "AUTO_SYNC": ("auto_sync", _parse_bool),
    "SYNC_INTERVAL_MINUTES": ("sync_interval_minutes", int),
    "TICK_SECONDS": ("tick_seconds", float),
    "INTER_PAGE_DELAY_SECONDS": ("inter_page_delay_seconds", float),
    "MAX_ITEMS_PER_FEED": ("max_items_per_feed", int),
    "MAX_PAGES_PER_FEED": ("max_pages_per_feed", int),
    "REQUEST_TIMEOUT_SECONDS": ("request_timeout_seconds", float),
    "RETRY_MAX_ATTEMPTS": ("retry_max_attempts", int),
    "RETRY_BASE_DELAY_MS": ("retry_base_delay_ms", int),
    "FRESHNESS_DAYS": ("freshness_days", int),
    "RETENTION_DAYS": ("retention_days", int),
    "BLACKLIST_COOLDOWN_HOURS": ("blacklist_cooldown_hours", float),
}


def load_config(environ: Optional[Dict[str, str]] = None) -> ServerConfig:
    """Build a ServerConfig from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Populated ServerConfig

    Raises:
        ValueError: If a variable cannot be parsed or is out of range
    """
    if environ is None:
        environ = dict(os.environ)

    values: Dict[str, Any] = {}
    for suffix, (field_name, parser) in _ENV_FIELDS.items():
        env_name = f"FEED_SYNC_{suffix}"
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = parser(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e

    config = ServerConfig(**values)
    _validate(config)
    return config


def _validate(config: ServerConfig) -> None:
    positive: Dict[str, Callable[[ServerConfig], float]] = {
        "FEED_SYNC_SYNC_INTERVAL_MINUTES": lambda c: c.sync_interval_minutes,
        "FEED_SYNC_RETRY_MAX_ATTEMPTS": lambda c: c.retry_max_attempts,
        "FEED_SYNC_MAX_PAGES_PER_FEED": lambda c: c.max_pages_per_feed,
        "FEED_SYNC_MAX_ITEMS_PER_FEED": lambda c: c.max_items_per_feed,
        "FEED_SYNC_FRESHNESS_DAYS": lambda c: c.freshness_days,
        "FEED_SYNC_RETENTION_DAYS": lambda c: c.retention_days,
        "FEED_SYNC_TICK_SECONDS": lambda c: c.tick_seconds,
    }
    for env_name, getter in positive.items():
        if getter(config) <= 0:
            raise ValueError(f"{env_name} must be greater than zero")


_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config

    if _config is None:
        _config = load_config()
    return _config
