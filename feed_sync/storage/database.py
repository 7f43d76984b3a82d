"""Database storage for feed_sync.

This module provides async SQLite database operations for credentials, feeds
and items. Database location: ~/.feed_sync/feed_sync.db (or FEED_SYNC_DB_PATH
env var).

All timestamps are stored as UTC ISO-8601 strings with microsecond precision
so that string comparison in SQL matches chronological order.
"""

import os
import aiosqlite
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import Credential, CredentialStatus, Feed, Item, NewItem


class StorageError(Exception):
    """Raised when a storage write cannot be completed."""


def _get_db_path() -> Path:
    """Get the database path, respecting FEED_SYNC_DB_PATH env var for testing."""
    env_path = os.environ.get("FEED_SYNC_DB_PATH")
    if env_path:
        return Path(env_path)
    return Path.home() / ".feed_sync" / "feed_sync.db"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Singleton connection
_db_connection: Optional[aiosqlite.Connection] = None


async def get_database() -> aiosqlite.Connection:
    """Get or create a singleton database connection.

    Returns:
        Active database connection
    """
    global _db_connection

    if _db_connection is None:
        db_path = _get_db_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)

        _db_connection = await aiosqlite.connect(db_path)
        _db_connection.row_factory = aiosqlite.Row
        await init_database(_db_connection)

    return _db_connection


async def init_database(db: Optional[aiosqlite.Connection] = None) -> None:
    """Initialize database tables if they don't exist.

    Args:
        db: Optional database connection (uses singleton if not provided)
    """
    if db is None:
        db = await get_database()

    await db.execute("""
        CREATE TABLE IF NOT EXISTS credentials (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            secret TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            blacklisted_until TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS feeds (
            id INTEGER PRIMARY KEY,
            source_id TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            credential_id INTEGER,
            last_sync_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            FOREIGN KEY (credential_id) REFERENCES credentials(id) ON DELETE SET NULL
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS items (
            id INTEGER PRIMARY KEY,
            feed_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            url TEXT NOT NULL UNIQUE,
            published_at TIMESTAMP NOT NULL,
            materialized BOOLEAN DEFAULT FALSE,
            artifact_ref TEXT,
            created_at TIMESTAMP NOT NULL,
            FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_credentials_status ON credentials(status)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_items_feed_id ON items(feed_id)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_items_materialized ON items(materialized)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_items_published_at ON items(published_at)
    """)

    await db.commit()


def _row_to_credential(row: aiosqlite.Row) -> Credential:
    return Credential(
        id=row["id"],
        name=row["name"],
        secret=row["secret"],
        status=CredentialStatus(row["status"]),
        blacklisted_until=_from_db(row["blacklisted_until"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
    )


def _row_to_feed(row: aiosqlite.Row) -> Feed:
    return Feed(
        id=row["id"],
        source_id=row["source_id"],
        title=row["title"],
        description=row["description"],
        credential_id=row["credential_id"],
        last_sync_at=_from_db(row["last_sync_at"]),
        created_at=_from_db(row["created_at"]),
    )


def _row_to_item(row: aiosqlite.Row) -> Item:
    return Item(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        url=row["url"],
        published_at=_from_db(row["published_at"]),
        materialized=bool(row["materialized"]),
        artifact_ref=row["artifact_ref"],
        created_at=_from_db(row["created_at"]),
    )


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


async def add_credential(name: str, secret: str) -> Credential:
    """Add a new active credential.

    Args:
        name: Unique display name (usually the platform username)
        secret: Opaque token used to authenticate API calls

    Returns:
        The created Credential

    Raises:
        ValueError: If a credential with the same name already exists
    """
    db = await get_database()
    now = _now()

    try:
        cursor = await db.execute(
            """
            INSERT INTO credentials (name, secret, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, secret, CredentialStatus.ACTIVE.value, _to_db(now), _to_db(now)),
        )
        await db.commit()
    except aiosqlite.IntegrityError as e:
        raise ValueError(f"Credential '{name}' already exists") from e

    return Credential(
        id=cursor.lastrowid,
        name=name,
        secret=secret,
        status=CredentialStatus.ACTIVE,
        blacklisted_until=None,
        created_at=now,
        updated_at=now,
    )


async def get_credential(credential_id: int) -> Optional[Credential]:
    """Get a credential by id, or None if it does not exist."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM credentials WHERE id = ?", (credential_id,))
    row = await cursor.fetchone()

    if row is None:
        return None
    return _row_to_credential(row)


async def list_credentials() -> List[Credential]:
    """List all credentials in creation order."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM credentials ORDER BY created_at, id")
    return [_row_to_credential(row) async for row in cursor]


async def find_credentials_by_status(status: CredentialStatus) -> List[Credential]:
    """Find credentials with the given status, in creation order.

    Args:
        status: Status to filter by

    Returns:
        List of matching credentials (oldest first)
    """
    db = await get_database()

    cursor = await db.execute(
        "SELECT * FROM credentials WHERE status = ? ORDER BY created_at, id",
        (CredentialStatus(status).value,),
    )
    return [_row_to_credential(row) async for row in cursor]


async def update_credential_status(
    credential_id: int,
    status: CredentialStatus,
    blacklisted_until: Optional[datetime] = None,
) -> bool:
    """Update a credential's status.

    blacklisted_until is cleared whenever it is not given, so it is only ever
    set alongside the blacklisted status.

    Args:
        credential_id: ID of the credential
        status: New status
        blacklisted_until: Expiry of a blacklist period

    Returns:
        True if a credential was updated
    """
    db = await get_database()

    cursor = await db.execute(
        """
        UPDATE credentials
        SET status = ?, blacklisted_until = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            CredentialStatus(status).value,
            _to_db(blacklisted_until),
            _to_db(_now()),
            credential_id,
        ),
    )
    await db.commit()
    return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


async def add_feed(
    source_id: str,
    title: str,
    description: str = "",
    credential_id: Optional[int] = None,
) -> Feed:
    """Add a new feed.

    Args:
        source_id: External account id on the platform
        title: Display title
        description: Optional description
        credential_id: Credential that subscribed to the feed

    Returns:
        The created Feed

    Raises:
        ValueError: If a feed with the same source id already exists
    """
    db = await get_database()
    now = _now()

    try:
        cursor = await db.execute(
            """
            INSERT INTO feeds (source_id, title, description, credential_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (source_id, title, description, credential_id, _to_db(now)),
        )
        await db.commit()
    except aiosqlite.IntegrityError as e:
        raise ValueError(f"Feed with source id '{source_id}' already exists") from e

    return Feed(
        id=cursor.lastrowid,
        source_id=source_id,
        title=title,
        description=description,
        credential_id=credential_id,
        last_sync_at=None,
        created_at=now,
    )


async def get_feed(feed_id: int) -> Optional[Feed]:
    """Get a feed by id, or None if it does not exist."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
    row = await cursor.fetchone()

    if row is None:
        return None
    return _row_to_feed(row)


async def list_feeds() -> List[Feed]:
    """List all feeds in creation order."""
    db = await get_database()

    cursor = await db.execute("SELECT * FROM feeds ORDER BY id")
    return [_row_to_feed(row) async for row in cursor]


async def find_feeds_needing_sync(threshold_hours: float) -> List[Feed]:
    """Find feeds that have not been synced within the threshold.

    Never-synced feeds come first, then the least recently synced.

    Args:
        threshold_hours: Age of last_sync_at beyond which a feed is stale

    Returns:
        List of stale feeds
    """
    db = await get_database()
    threshold = _now() - timedelta(hours=threshold_hours)

    cursor = await db.execute(
        """
        SELECT * FROM feeds
        WHERE last_sync_at IS NULL OR last_sync_at < ?
        ORDER BY last_sync_at IS NOT NULL, last_sync_at, id
        """,
        (_to_db(threshold),),
    )
    return [_row_to_feed(row) async for row in cursor]


async def update_feed_last_sync(feed_id: int, timestamp: Optional[datetime] = None) -> None:
    """Advance the last_sync_at timestamp for a feed.

    The timestamp never moves backwards: an older value is ignored.

    Args:
        feed_id: ID of the feed
        timestamp: Sync time (defaults to now)
    """
    db = await get_database()
    value = _to_db(timestamp or _now())

    await db.execute(
        """
        UPDATE feeds SET last_sync_at = ?
        WHERE id = ? AND (last_sync_at IS NULL OR last_sync_at < ?)
        """,
        (value, feed_id, value),
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


async def insert_items_if_absent(items: List[NewItem]) -> int:
    """Insert items, skipping any whose URL is already stored.

    The whole batch is written in one transaction: either every new item is
    stored or, on failure or cancellation, none are.

    Args:
        items: Items to insert, keyed by url

    Returns:
        Number of items actually added (excludes duplicates)

    Raises:
        StorageError: If the batch could not be written
    """
    if not items:
        return 0

    db = await get_database()
    created_at = _to_db(_now())
    added_count = 0

    try:
        for item in items:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO items (feed_id, title, url, published_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (item.feed_id, item.title, item.url, _to_db(item.published_at), created_at),
            )
            added_count += cursor.rowcount
        await db.commit()
    except aiosqlite.Error as e:
        await db.rollback()
        get_logger(__name__).error(f"Failed to insert item batch: {e}")
        raise StorageError(f"Failed to insert items: {e}") from e
    except BaseException:
        # cancelled mid-batch: never leave a partial batch open on the shared connection
        await db.rollback()
        raise

    return added_count


async def find_unmaterialized() -> List[Item]:
    """Find all items that have no artifact yet, newest first."""
    db = await get_database()

    cursor = await db.execute(
        "SELECT * FROM items WHERE materialized = 0 ORDER BY published_at DESC, id DESC"
    )
    return [_row_to_item(row) async for row in cursor]


async def mark_item_materialized(item_id: int, artifact_ref: str) -> None:
    """Record that an item has been materialized into an artifact.

    Args:
        item_id: ID of the item
        artifact_ref: Reference to the artifact (e.g. a note path)

    Raises:
        StorageError: If the update could not be written
    """
    db = await get_database()

    try:
        await db.execute(
            "UPDATE items SET materialized = 1, artifact_ref = ? WHERE id = ?",
            (artifact_ref, item_id),
        )
        await db.commit()
    except aiosqlite.Error as e:
        await db.rollback()
        raise StorageError(f"Failed to mark item {item_id} materialized: {e}") from e


async def list_items(feed_id: Optional[int] = None) -> List[Item]:
    """List stored items, optionally for a single feed, newest first."""
    db = await get_database()

    query = "SELECT * FROM items"
    params: List = []
    if feed_id is not None:
        query += " WHERE feed_id = ?"
        params.append(feed_id)
    query += " ORDER BY published_at DESC, id DESC"

    cursor = await db.execute(query, params)
    return [_row_to_item(row) async for row in cursor]


async def count_items() -> dict:
    """Count stored items.

    Returns:
        Dict with total, materialized and unmaterialized counts
    """
    db = await get_database()

    cursor = await db.execute("""
        SELECT COUNT(*) AS total,
               SUM(CASE WHEN materialized = 1 THEN 1 ELSE 0 END) AS materialized
        FROM items
    """)
    row = await cursor.fetchone()
    total = row["total"] or 0
    materialized = row["materialized"] or 0

    return {
        "total": total,
        "materialized": materialized,
        "unmaterialized": total - materialized,
    }


async def delete_items_older_than(days: int) -> List[int]:
    """Delete items published more than `days` days ago.

    Args:
        days: Retention window in days

    Returns:
        IDs of the deleted items
    """
    db = await get_database()
    threshold = _to_db(_now() - timedelta(days=days))

    try:
        cursor = await db.execute(
            "SELECT id FROM items WHERE published_at < ? ORDER BY id",
            (threshold,),
        )
        deleted_ids = [row["id"] async for row in cursor]

        if deleted_ids:
            await db.execute("DELETE FROM items WHERE published_at < ?", (threshold,))
        await db.commit()
    except aiosqlite.Error as e:
        await db.rollback()
        raise StorageError(f"Failed to delete old items: {e}") from e
    except BaseException:
        await db.rollback()
        raise

    return deleted_ids


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    if _db_connection is not None:
        await _db_connection.close()
        _db_connection = None
