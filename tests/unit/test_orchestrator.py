"""Unit tests for the sync orchestrator.

Storage is the real database module on an in-memory connection; the platform
client is a scripted fake and notes go to a temporary directory.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from feed_sync.config import ServerConfig
from feed_sync.models.schemas import CredentialStatus, NewItem, SyncOptions
from feed_sync.services.api_client import RemoteItem
from feed_sync.services.credential_pool import CredentialPool
from feed_sync.services.gateway import ApiError, ApiErrorCode
from feed_sync.services.materializer import MarkdownMaterializer
from feed_sync.services.orchestrator import SyncInProgressError, SyncOrchestrator
from feed_sync.storage import database
from feed_sync.storage.database import StorageError

pytestmark = pytest.mark.anyio


def _ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def remote(item_id: str, age_days: float = 0.5) -> RemoteItem:
    return RemoteItem(id=item_id, title=f"Article {item_id}", published_at=_ago(age_days))


class FakeClient:
    """Serves scripted pages per source id; an exception value is raised instead."""

    def __init__(self, pages=None):
        self.pages = pages or {}
        self.calls = []

    async def get_feed_items(self, source_id, credential, page=1):
        self.calls.append((source_id, credential.id, page))
        entries = self.pages.get(source_id, [])
        if isinstance(entries, Exception):
            raise entries
        page_entries = entries[page - 1] if page <= len(entries) else []
        if isinstance(page_entries, Exception):
            raise page_entries
        return page_entries


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def config(tmp_path):
    return ServerConfig(
        output_dir=tmp_path / "notes",
        inter_page_delay_seconds=60,
        freshness_days=5,
        retention_days=30,
        max_items_per_feed=100,
        max_pages_per_feed=5,
    )


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def make_orchestrator(in_memory_db, config, sleep):
    def factory(client, materializer=None):
        pool = CredentialPool(database)
        materializer = materializer or MarkdownMaterializer(config.output_dir, database)
        return SyncOrchestrator(database, pool, client, materializer, config, sleep=sleep)
    return factory


class TestSingleFlight:
    """Tests for the one-run-at-a-time guard."""

    async def test_concurrent_run_fails_fast(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        release = asyncio.Event()

        class BlockingClient(FakeClient):
            async def get_feed_items(self, source_id, credential, page=1):
                await release.wait()
                return []

        orchestrator = make_orchestrator(BlockingClient())
        first = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0)

        assert orchestrator.is_running is True
        with pytest.raises(SyncInProgressError):
            await orchestrator.run()

        release.set()
        result = await first
        assert result.feeds_refreshed == 1
        assert orchestrator.is_running is False

    async def test_manual_materialize_shares_guard(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeClient())
        orchestrator._running = True

        with pytest.raises(SyncInProgressError):
            await orchestrator.materialize_pending()

    async def test_flag_cleared_after_failure(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        orchestrator = make_orchestrator(FakeClient({"MP_1": [[remote("a1")]]}))

        with patch.object(database, "insert_items_if_absent", AsyncMock(side_effect=StorageError("disk full"))):
            with pytest.raises(StorageError):
                await orchestrator.run()

        assert orchestrator.is_running is False


class TestRefresh:
    """Tests for fetching and filtering feed items."""

    async def test_freshness_window(self, make_orchestrator, sleep):
        await database.add_credential("alice", "a")
        feed = await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [[remote("a1", 1), remote("a2", 3), remote("a3", 7)], [remote("a4", 8)]]})

        result = await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert result.items_fetched == 2
        urls = sorted(i.url for i in await database.list_items(feed.id))
        assert urls == ["https://mp.weixin.qq.com/s/a1", "https://mp.weixin.qq.com/s/a2"]
        # page 1 already reached past the window
        assert [c[2] for c in client.calls] == [1]
        assert sleep.delays == []

    async def test_paginates_with_delay_between_pages(self, make_orchestrator, sleep):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [[remote("a1"), remote("a2")], [remote("a3")]]})

        result = await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert result.items_fetched == 3
        assert [c[2] for c in client.calls] == [1, 2, 3]
        assert sleep.delays == [60, 60]

    async def test_max_items_per_feed(self, make_orchestrator, config):
        config.max_items_per_feed = 3
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [[remote(f"a{i}") for i in range(5)], [remote("b1")]]})

        result = await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert result.items_fetched == 3
        assert len(client.calls) == 1

    async def test_second_run_is_idempotent(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        orchestrator = make_orchestrator(FakeClient({"MP_1": [[remote("a1"), remote("a2")]]}))

        first = await orchestrator.run(SyncOptions(materialize=False))
        second = await orchestrator.run(SyncOptions(materialize=False))

        assert first.items_fetched == 2
        assert second.items_fetched == 0
        assert len(await database.list_items()) == 2

    async def test_last_sync_updated_only_on_success(self, make_orchestrator):
        await database.add_credential("alice", "a")
        good = await database.add_feed("MP_1", "Good")
        bad = await database.add_feed("MP_2", "Bad")
        client = FakeClient({
            "MP_1": [[remote("a1")]],
            "MP_2": ApiError(ApiErrorCode.SERVER_ERROR, "HTTP 500", 500),
        })

        await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert (await database.get_feed(good.id)).last_sync_at is not None
        assert (await database.get_feed(bad.id)).last_sync_at is None

    async def test_explicit_feed_ids(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "One")
        two = await database.add_feed("MP_2", "Two")
        client = FakeClient({"MP_1": [[remote("a1")]], "MP_2": [[remote("b1")]]})

        result = await make_orchestrator(client).run(SyncOptions(feed_ids=[two.id, 999], materialize=False))

        assert result.feeds_refreshed == 1
        assert {c[0] for c in client.calls} == {"MP_2"}

    async def test_stale_threshold_skips_fresh_feeds(self, make_orchestrator):
        await database.add_credential("alice", "a")
        fresh = await database.add_feed("MP_1", "Fresh")
        await database.add_feed("MP_2", "Stale")
        await database.update_feed_last_sync(fresh.id)
        client = FakeClient({"MP_1": [[remote("a1")]], "MP_2": [[remote("b1")]]})

        await make_orchestrator(client).run(SyncOptions(stale_threshold_hours=1, materialize=False))

        assert {c[0] for c in client.calls} == {"MP_2"}


class TestFailureIsolation:
    """Tests for per-feed error handling."""

    async def test_later_page_failure_keeps_earlier_items(self, make_orchestrator):
        await database.add_credential("alice", "a")
        feed = await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [
            [remote("a1"), remote("a2")],
            ApiError(ApiErrorCode.SERVER_ERROR, "HTTP 500", 500),
        ]})

        result = await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert result.feeds_failed == 1
        assert len(await database.list_items(feed.id)) == 2
        assert (await database.get_feed(feed.id)).last_sync_at is None

    async def test_one_failing_feed_does_not_stop_the_others(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_A", "Feed A")
        await database.add_feed("MP_B", "Feed B")
        await database.add_feed("MP_C", "Feed C")
        client = FakeClient({
            "MP_A": [[remote("a1")]],
            "MP_B": ApiError(ApiErrorCode.SERVER_ERROR, "HTTP 500", 500),
            "MP_C": [[remote("c1")]],
        })

        result = await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert result.feeds_refreshed == 2
        assert result.feeds_failed == 1
        assert result.items_fetched == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to refresh feed Feed B")

    async def test_no_credential_fails_every_feed(self, make_orchestrator):
        await database.add_feed("MP_A", "Feed A")
        await database.add_feed("MP_B", "Feed B")
        client = FakeClient()

        result = await make_orchestrator(client).run()

        assert result.feeds_failed == 2
        assert client.calls == []
        assert all("no credential available" in e for e in result.errors)

    async def test_rate_limit_blacklists_credential(self, make_orchestrator):
        alice = await database.add_credential("alice", "a")
        bob = await database.add_credential("bob", "b")
        await database.add_feed("MP_A", "Feed A")
        await database.add_feed("MP_B", "Feed B")
        client = FakeClient({
            "MP_A": ApiError(ApiErrorCode.RATE_LIMITED, "HTTP 429", 429),
            "MP_B": [[remote("b1")]],
        })

        result = await make_orchestrator(client).run(SyncOptions(materialize=False))

        assert (await database.get_credential(alice.id)).status == CredentialStatus.BLACKLISTED
        assert result.feeds_refreshed == 1
        assert ("MP_B", bob.id, 1) in client.calls

    async def test_auth_error_expires_credential(self, make_orchestrator):
        alice = await database.add_credential("alice", "a")
        await database.add_feed("MP_A", "Feed A")
        client = FakeClient({"MP_A": ApiError(ApiErrorCode.AUTH_EXPIRED, "HTTP 401", 401)})

        result = await make_orchestrator(client).run()

        assert result.feeds_failed == 1
        assert (await database.get_credential(alice.id)).status == CredentialStatus.EXPIRED

    async def test_unexpected_exception_is_recorded(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_A", "Feed A")
        client = FakeClient({"MP_A": ValueError("bad payload")})

        result = await make_orchestrator(client).run()

        assert result.feeds_failed == 1
        assert "bad payload" in result.errors[0]

    async def test_storage_error_aborts_run(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_A", "Feed A")
        await database.add_feed("MP_B", "Feed B")
        client = FakeClient({"MP_A": [[remote("a1")]], "MP_B": [[remote("b1")]]})
        orchestrator = make_orchestrator(client)

        with patch.object(database, "insert_items_if_absent", AsyncMock(side_effect=StorageError("disk full"))):
            with pytest.raises(StorageError):
                await orchestrator.run()

        assert {c[0] for c in client.calls} == {"MP_A"}
        assert orchestrator.last_sync_time is None


class TestMaterializeAndCleanup:
    """Tests for the materialize and cleanup phases."""

    async def test_materializes_new_items(self, make_orchestrator, config):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [[remote("a1"), remote("a2")]]})

        result = await make_orchestrator(client).run()

        assert result.items_materialized == 2
        assert await database.find_unmaterialized() == []
        assert len(list((config.output_dir / "Feed One").glob("*.md"))) == 2

    async def test_item_storage_failure_does_not_abort_run(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [[remote("a1"), remote("a2"), remote("a3")]]})
        real_mark = database.mark_item_materialized
        calls = {"n": 0}

        async def locked_once(item_id, artifact_ref):
            calls["n"] += 1
            if calls["n"] == 1:
                raise aiosqlite.OperationalError("database is locked")
            await real_mark(item_id, artifact_ref)

        with patch.object(database, "mark_item_materialized", side_effect=locked_once):
            result = await make_orchestrator(client).run()

        assert result.items_materialized == 2
        assert result.items_failed == 1
        assert result.completed_at is not None
        assert len(await database.find_unmaterialized()) == 1

    async def test_download_only_skips_materialize(self, make_orchestrator):
        await database.add_credential("alice", "a")
        await database.add_feed("MP_1", "Feed One")
        client = FakeClient({"MP_1": [[remote("a1")]]})

        result = await make_orchestrator(client).download_only()

        assert result.items_fetched == 1
        assert result.items_materialized == 0
        assert len(await database.find_unmaterialized()) == 1

    async def test_materialize_pending_manual(self, make_orchestrator):
        feed = await database.add_feed("MP_1", "Feed One")
        await database.insert_items_if_absent([
            NewItem(feed.id, "Stored", "https://example.com/1", _ago(1)),
        ])

        outcome = await make_orchestrator(FakeClient()).materialize_pending()

        assert outcome.created == 1
        assert outcome.failed == 0

    async def test_retention_cleanup_removes_items_and_notes(self, make_orchestrator, config):
        feed = await database.add_feed("MP_1", "Feed One")
        await database.insert_items_if_absent([
            NewItem(feed.id, "Old", "https://example.com/old", _ago(40)),
            NewItem(feed.id, "Recent", "https://example.com/new", _ago(2)),
        ])
        orchestrator = make_orchestrator(FakeClient())
        await orchestrator.materialize_pending()

        result = await orchestrator.run()

        assert result.items_deleted == 1
        assert result.artifacts_deleted == 1
        assert [i.title for i in await database.list_items()] == ["Recent"]
        assert len(list((config.output_dir / "Feed One").glob("*.md"))) == 1

    async def test_cleanup_failure_degrades_to_zero(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeClient())

        with patch.object(database, "delete_items_older_than", AsyncMock(side_effect=StorageError("locked"))):
            result = await orchestrator.run()

        assert result.items_deleted == 0
        assert result.artifacts_deleted == 0
        assert result.completed_at is not None

    async def test_sync_feed_and_stats(self, make_orchestrator):
        await database.add_credential("alice", "a")
        feed = await database.add_feed("MP_1", "Feed One")
        orchestrator = make_orchestrator(FakeClient({"MP_1": [[remote("a1")]]}))

        result = await orchestrator.sync_feed(feed.id)
        stats = await orchestrator.get_stats()

        assert result.items_materialized == 1
        assert stats["total_feeds"] == 1
        assert stats["total_items"] == 1
        assert stats["materialized_items"] == 1
        assert stats["is_syncing"] is False
        assert stats["last_sync_time"] == result.completed_at.isoformat()
        assert result.duration_seconds >= 0
