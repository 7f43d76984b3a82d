"""Unit tests for database operations.

Tests for the storage layer using in-memory SQLite.
"""

import asyncio

import pytest
import aiosqlite
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from feed_sync.storage.database import (
    StorageError,
    init_database,
    add_credential,
    get_credential,
    list_credentials,
    find_credentials_by_status,
    update_credential_status,
    add_feed,
    get_feed,
    list_feeds,
    find_feeds_needing_sync,
    update_feed_last_sync,
    insert_items_if_absent,
    find_unmaterialized,
    mark_item_materialized,
    list_items,
    count_items,
    delete_items_older_than,
)
from feed_sync.models.schemas import CredentialStatus, NewItem


# Mark all tests as async
pytestmark = pytest.mark.anyio


def _now():
    return datetime.now(timezone.utc)


def _item(feed_id, n, age_days=0):
    return NewItem(
        feed_id=feed_id,
        title=f"Post {n}",
        url=f"https://example.com/{n}",
        published_at=_now() - timedelta(days=age_days),
    )


class TestDatabaseInitialization:
    """Tests for database schema initialization."""

    async def test_init_creates_tables(self, in_memory_db):
        """Test that initialization creates the required tables."""
        cursor = await in_memory_db.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        )
        tables = [row[0] for row in await cursor.fetchall()]

        assert "credentials" in tables
        assert "feeds" in tables
        assert "items" in tables

    async def test_init_creates_indexes(self, in_memory_db):
        """Test that initialization creates indexes."""
        cursor = await in_memory_db.execute(
            "SELECT name FROM sqlite_master WHERE type='index'"
        )
        indexes = [row[0] for row in await cursor.fetchall()]

        assert "idx_items_feed_id" in indexes
        assert "idx_items_materialized" in indexes
        assert "idx_credentials_status" in indexes

    async def test_init_is_idempotent(self, in_memory_db):
        """Test that calling init multiple times doesn't cause errors."""
        await init_database(in_memory_db)
        await init_database(in_memory_db)


class TestCredentialOperations:
    """Tests for credential storage."""

    async def test_add_credential_is_active(self, in_memory_db):
        credential = await add_credential("alice", "token-a")

        assert credential.id is not None
        assert credential.status == CredentialStatus.ACTIVE
        assert credential.blacklisted_until is None

    async def test_add_credential_duplicate_name_raises(self, in_memory_db):
        await add_credential("alice", "token-a")

        with pytest.raises(ValueError, match="already exists"):
            await add_credential("alice", "token-b")

    async def test_get_credential_not_found(self, in_memory_db):
        assert await get_credential(999) is None

    async def test_find_by_status_in_creation_order(self, in_memory_db):
        first = await add_credential("alice", "a")
        second = await add_credential("bob", "b")
        third = await add_credential("carol", "c")
        await update_credential_status(third.id, CredentialStatus.DISABLED)

        active = await find_credentials_by_status(CredentialStatus.ACTIVE)

        assert [c.id for c in active] == [first.id, second.id]

    async def test_blacklist_stores_until(self, in_memory_db):
        credential = await add_credential("alice", "a")
        until = _now() + timedelta(hours=24)

        updated = await update_credential_status(credential.id, CredentialStatus.BLACKLISTED, until)
        stored = await get_credential(credential.id)

        assert updated is True
        assert stored.status == CredentialStatus.BLACKLISTED
        assert stored.blacklisted_until == until

    async def test_other_status_clears_until(self, in_memory_db):
        credential = await add_credential("alice", "a")
        await update_credential_status(credential.id, CredentialStatus.BLACKLISTED, _now())

        await update_credential_status(credential.id, CredentialStatus.ACTIVE)
        stored = await get_credential(credential.id)

        assert stored.status == CredentialStatus.ACTIVE
        assert stored.blacklisted_until is None

    async def test_update_missing_credential_returns_false(self, in_memory_db):
        assert await update_credential_status(42, CredentialStatus.EXPIRED) is False

    async def test_list_credentials(self, in_memory_db):
        await add_credential("alice", "a")
        await add_credential("bob", "b")

        names = [c.name for c in await list_credentials()]

        assert names == ["alice", "bob"]


class TestFeedOperations:
    """Tests for feed storage."""

    async def test_add_feed_minimal(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")

        assert feed.id is not None
        assert feed.description == ""
        assert feed.credential_id is None
        assert feed.last_sync_at is None

    async def test_add_feed_duplicate_source_raises(self, in_memory_db):
        await add_feed(source_id="MP_1", title="Feed One")

        with pytest.raises(ValueError, match="already exists"):
            await add_feed(source_id="MP_1", title="Other")

    async def test_get_feed(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")

        assert (await get_feed(feed.id)).title == "Feed One"
        assert await get_feed(999) is None

    async def test_last_sync_is_monotonic(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        later = _now()
        earlier = later - timedelta(hours=1)

        await update_feed_last_sync(feed.id, later)
        await update_feed_last_sync(feed.id, earlier)

        assert (await get_feed(feed.id)).last_sync_at == later

    async def test_find_feeds_needing_sync(self, in_memory_db):
        never = await add_feed(source_id="MP_1", title="Never synced")
        stale = await add_feed(source_id="MP_2", title="Stale")
        fresh = await add_feed(source_id="MP_3", title="Fresh")
        await update_feed_last_sync(stale.id, _now() - timedelta(hours=5))
        await update_feed_last_sync(fresh.id, _now() - timedelta(minutes=10))

        feeds = await find_feeds_needing_sync(1)

        assert [f.id for f in feeds] == [never.id, stale.id]

    async def test_list_feeds(self, in_memory_db):
        await add_feed(source_id="MP_1", title="One")
        await add_feed(source_id="MP_2", title="Two")

        assert [f.title for f in await list_feeds()] == ["One", "Two"]


class TestItemOperations:
    """Tests for item storage."""

    async def test_insert_items(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")

        count = await insert_items_if_absent([_item(feed.id, 1), _item(feed.id, 2)])

        assert count == 2

    async def test_insert_is_idempotent(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        await insert_items_if_absent([_item(feed.id, 1), _item(feed.id, 2)])

        count = await insert_items_if_absent([_item(feed.id, 1), _item(feed.id, 3)])

        assert count == 1
        assert len(await list_items()) == 3

    async def test_insert_empty_batch(self, in_memory_db):
        assert await insert_items_if_absent([]) == 0

    async def test_insert_failure_raises_storage_error(self):
        db = AsyncMock()
        db.execute.side_effect = aiosqlite.OperationalError("disk I/O error")

        with patch("feed_sync.storage.database.get_database", AsyncMock(return_value=db)):
            with pytest.raises(StorageError):
                await insert_items_if_absent([_item(1, 1)])

        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    async def test_mark_materialized(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        await insert_items_if_absent([_item(feed.id, 1), _item(feed.id, 2)])
        pending = await find_unmaterialized()

        await mark_item_materialized(pending[0].id, "/notes/1.md")

        remaining = await find_unmaterialized()
        assert len(remaining) == 1
        items = {i.id: i for i in await list_items(feed.id)}
        assert items[pending[0].id].materialized is True
        assert items[pending[0].id].artifact_ref == "/notes/1.md"

    async def test_count_items(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        await insert_items_if_absent([_item(feed.id, 1), _item(feed.id, 2)])
        first = (await find_unmaterialized())[0]
        await mark_item_materialized(first.id, "note.md")

        assert await count_items() == {"total": 2, "materialized": 1, "unmaterialized": 1}

    async def test_count_items_empty(self, in_memory_db):
        assert await count_items() == {"total": 0, "materialized": 0, "unmaterialized": 0}

    async def test_delete_items_older_than(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        await insert_items_if_absent([
            _item(feed.id, 1, age_days=40),
            _item(feed.id, 2, age_days=31),
            _item(feed.id, 3, age_days=2),
        ])

        deleted = await delete_items_older_than(30)

        assert len(deleted) == 2
        remaining = await list_items()
        assert [i.url for i in remaining] == ["https://example.com/3"]

    async def test_delete_nothing_old(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        await insert_items_if_absent([_item(feed.id, 1, age_days=1)])

        assert await delete_items_older_than(30) == []

    async def test_retention_boundary(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        await insert_items_if_absent([
            _item(feed.id, 29, age_days=29),
            _item(feed.id, 31, age_days=31),
        ])

        deleted = await delete_items_older_than(30)

        assert len(deleted) == 1
        assert [i.url for i in await list_items()] == ["https://example.com/29"]


class TestTransactionSafety:
    """Tests for rollback on failed or cancelled writes."""

    async def test_cancelled_batch_is_rolled_back(self):
        db = AsyncMock()
        db.execute.side_effect = [MagicMock(rowcount=1), asyncio.CancelledError()]

        with patch("feed_sync.storage.database.get_database", AsyncMock(return_value=db)):
            with pytest.raises(asyncio.CancelledError):
                await insert_items_if_absent([_item(1, 1), _item(1, 2), _item(1, 3)])

        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    async def test_cancelled_batch_leaves_nothing_for_next_commit(self, in_memory_db):
        feed = await add_feed(source_id="MP_1", title="Feed One")
        credential = await add_credential("alice", "a")
        real_execute = in_memory_db.execute
        calls = {"n": 0}

        async def cancel_on_third_insert(sql, *args, **kwargs):
            if "INSERT OR IGNORE" in sql:
                calls["n"] += 1
                if calls["n"] == 3:
                    raise asyncio.CancelledError()
            return await real_execute(sql, *args, **kwargs)

        with patch.object(in_memory_db, "execute", side_effect=cancel_on_third_insert):
            with pytest.raises(asyncio.CancelledError):
                await insert_items_if_absent([_item(feed.id, n) for n in range(5)])

        # an unrelated write commits afterwards
        await update_credential_status(credential.id, CredentialStatus.DISABLED)

        assert await list_items() == []

    async def test_mark_materialized_failure_raises_storage_error(self):
        db = AsyncMock()
        db.execute.side_effect = aiosqlite.OperationalError("database is locked")

        with patch("feed_sync.storage.database.get_database", AsyncMock(return_value=db)):
            with pytest.raises(StorageError):
                await mark_item_materialized(1, "note.md")

        db.rollback.assert_awaited_once()
