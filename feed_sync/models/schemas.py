"""Data models for feed_sync.

This module defines the core data structures for credentials, feeds, items,
scheduled tasks and sync results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


class CredentialStatus(str, Enum):
    """Health state of a pooled credential."""

    ACTIVE = "active"
    DISABLED = "disabled"
    EXPIRED = "expired"
    BLACKLISTED = "blacklisted"


@dataclass
class Credential:
    """Represents an authenticated identity used to call the content API."""

    id: int
    name: str
    secret: str
    status: CredentialStatus
    blacklisted_until: Optional[datetime]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Feed:
    """Represents a followed content source on the external platform."""

    id: int
    source_id: str
    title: str
    description: str
    credential_id: Optional[int]
    last_sync_at: Optional[datetime]
    created_at: Optional[datetime] = None


@dataclass
class NewItem:
    """An item as fetched from the platform, before it is stored."""

    feed_id: int
    title: str
    url: str
    published_at: datetime


@dataclass
class Item:
    """Represents a stored item (article) belonging to a feed."""

    id: int
    feed_id: int
    title: str
    url: str
    published_at: datetime
    materialized: bool
    artifact_ref: Optional[str]
    created_at: Optional[datetime] = None


TaskCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class ScheduledTask:
    """A named periodic unit of work."""

    id: str
    callback: TaskCallback
    interval_minutes: int
    next_run: datetime
    last_run: Optional[datetime] = None
    enabled: bool = True


@dataclass
class SyncOptions:
    """Options for a single orchestrated run.

    Attributes:
        feed_ids: Sync only these feeds (empty or None means no explicit list)
        stale_threshold_hours: Only sync feeds not refreshed within this many hours
        materialize: Whether to materialize pending items after refreshing
    """

    feed_ids: Optional[List[int]] = None
    stale_threshold_hours: Optional[float] = None
    materialize: bool = True


@dataclass
class MaterializeResult:
    created: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class CleanupResult:
    items_deleted: int = 0
    artifacts_deleted: int = 0


@dataclass
class SyncResult:
    """Aggregated outcome of one orchestrated run.

    Created fresh per run and only ever returned or logged.
    """

    feeds_refreshed: int = 0
    feeds_failed: int = 0
    items_fetched: int = 0
    items_materialized: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    items_deleted: int = 0
    artifacts_deleted: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a dictionary for logging and tool responses."""
        return {
            "feeds_refreshed": self.feeds_refreshed,
            "feeds_failed": self.feeds_failed,
            "items_fetched": self.items_fetched,
            "items_materialized": self.items_materialized,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "items_deleted": self.items_deleted,
            "artifacts_deleted": self.artifacts_deleted,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }
