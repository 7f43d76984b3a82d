"""Sync orchestration pipeline.

A run has three phases:

1. Refresh: for each target feed, acquire a credential, fetch recent items
   through the retrying gateway, keep those inside the freshness window and
   store them idempotently (keyed by url).
2. Materialize: turn every not-yet-materialized item into an artifact.
3. Cleanup: delete items outside the retention window and their artifacts.

Failures of a single feed or item are recorded in the SyncResult and the run
carries on. Only storage failures during refresh abort the run. At most one
run is in flight per orchestrator; a second call fails fast with
SyncInProgressError.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from feed_sync.config import ServerConfig
from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import (
    CleanupResult,
    Credential,
    Feed,
    MaterializeResult,
    NewItem,
    SyncOptions,
    SyncResult,
)
from feed_sync.services.api_client import PlatformClient
from feed_sync.services.credential_pool import CredentialPool
from feed_sync.services.gateway import ApiError, ApiErrorCode
from feed_sync.storage.base import Materializer, SyncStorage
from feed_sync.storage.database import StorageError


class SyncInProgressError(RuntimeError):
    """Raised when a run is requested while another is still executing."""


class NoCredentialError(Exception):
    """Raised when no credential is available for a feed."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs the refresh, materialize and cleanup phases as one guarded unit."""

    def __init__(
        self,
        storage: SyncStorage,
        pool: CredentialPool,
        client: PlatformClient,
        materializer: Materializer,
        config: Optional[ServerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.storage = storage
        self.pool = pool
        self.client = client
        self.materializer = materializer
        self.config = config or ServerConfig()
        self._clock = clock
        self._sleep = sleep
        self._running = False
        self.last_sync_time: Optional[datetime] = None
        self.logger = get_logger(__name__)

    @property
    def is_running(self) -> bool:
        return self._running

    def _acquire_run(self) -> None:
        # Check-and-set happens before any await, so it cannot interleave.
        if self._running:
            self.logger.warning("Sync already in progress, skipping...")
            raise SyncInProgressError("Sync already in progress")
        self._running = True

    async def run(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """Perform a full sync.

        Args:
            options: Feed selection and phase switches

        Returns:
            Aggregated SyncResult, even if every feed failed

        Raises:
            SyncInProgressError: If another run is in flight
            StorageError: If persisting fetched items fails
        """
        options = options or SyncOptions()
        self._acquire_run()

        result = SyncResult(started_at=self._clock())
        try:
            self.logger.info(f"Starting sync... {options}")

            await self._refresh_feeds(options, result)

            if options.materialize:
                materialized = await self._materialize_pending()
                result.items_materialized = materialized.created
                result.items_skipped = materialized.skipped
                result.items_failed = materialized.failed

            cleanup = await self._cleanup(self.config.retention_days)
            result.items_deleted = cleanup.items_deleted
            result.artifacts_deleted = cleanup.artifacts_deleted

            result.completed_at = self._clock()
            self.last_sync_time = result.completed_at
            self.logger.info(f"Sync completed: {result.to_dict()}")
            return result
        except Exception as e:
            self.logger.error(f"Sync failed: {e}")
            raise
        finally:
            self._running = False

    async def sync_feed(self, feed_id: int) -> SyncResult:
        """Sync a single feed and materialize its items."""
        return await self.run(SyncOptions(feed_ids=[feed_id], materialize=True))

    async def download_only(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """Refresh feeds without materializing items."""
        options = options or SyncOptions()
        return await self.run(SyncOptions(
            feed_ids=options.feed_ids,
            stale_threshold_hours=options.stale_threshold_hours,
            materialize=False,
        ))

    async def materialize_pending(self) -> MaterializeResult:
        """Materialize pending items outside a full run (manual trigger)."""
        self._acquire_run()
        try:
            return await self._materialize_pending()
        finally:
            self._running = False

    # -- phase 1 -----------------------------------------------------------

    async def _select_feeds(self, options: SyncOptions) -> List[Feed]:
        if options.feed_ids:
            feeds = []
            for feed_id in options.feed_ids:
                feed = await self.storage.get_feed(feed_id)
                if feed is None:
                    self.logger.warning(f"Feed {feed_id} not found, skipping")
                    continue
                feeds.append(feed)
            return feeds

        if options.stale_threshold_hours is not None:
            return await self.storage.find_feeds_needing_sync(options.stale_threshold_hours)

        return await self.storage.list_feeds()

    async def _refresh_feeds(self, options: SyncOptions, result: SyncResult) -> None:
        feeds = await self._select_feeds(options)
        self.logger.info(f"Refreshing {len(feeds)} feeds...")

        for feed in feeds:
            credential: Optional[Credential] = None
            try:
                credential = await self.pool.acquire_available()
                if credential is None:
                    raise NoCredentialError("no credential available")

                inserted = await self._refresh_feed(feed, credential)
                result.items_fetched += inserted
                result.feeds_refreshed += 1
                self.logger.debug(f"Refreshed feed {feed.title}: {inserted} new items")
            except StorageError:
                raise
            except ApiError as e:
                await self.pool.record_api_error(credential.id, e)
                self._record_feed_failure(result, feed, e)
            except Exception as e:
                self._record_feed_failure(result, feed, e)

    def _record_feed_failure(self, result: SyncResult, feed: Feed, error: Exception) -> None:
        result.feeds_failed += 1
        message = f"Failed to refresh feed {feed.title}: {error}"
        result.errors.append(message)

        if isinstance(error, ApiError) and error.code == ApiErrorCode.RATE_LIMITED:
            self.logger.warning(message)
        else:
            self.logger.error(message)

    async def _refresh_feed(self, feed: Feed, credential: Credential) -> int:
        """Fetch, filter and store recent items for one feed.

        If a later page fails, items collected from earlier pages are still
        stored before the error propagates. last_sync_at is only advanced on
        success, so the feed stays due for the next run.

        Returns:
            Number of newly stored items
        """
        fresh: List[NewItem] = []
        try:
            await self._collect_fresh_items(feed, credential, fresh)
        except Exception:
            if fresh:
                kept = await self.storage.insert_items_if_absent(fresh)
                self.logger.info(f"Stored {kept} items from {feed.title} before the fetch failed")
            raise

        inserted = await self.storage.insert_items_if_absent(fresh)
        await self.storage.update_feed_last_sync(feed.id, self._clock())
        return inserted

    async def _collect_fresh_items(self, feed: Feed, credential: Credential, fresh: List[NewItem]) -> None:
        """Append in-window items for a feed to `fresh`, page by page.

        Pages are fetched until one is empty, one reaches past the freshness
        window, or the per-feed item or page limit is hit.
        """
        cutoff = self._clock() - timedelta(days=self.config.freshness_days)
        max_items = self.config.max_items_per_feed
        seen_urls = set()

        for page in range(1, self.config.max_pages_per_feed + 1):
            if page > 1:
                await self._sleep(self.config.inter_page_delay_seconds)

            remote_items = await self.client.get_feed_items(feed.source_id, credential, page)
            if not remote_items:
                break

            in_window = [r for r in remote_items if r.published_at >= cutoff]
            for remote in in_window:
                if remote.url in seen_urls:
                    continue
                seen_urls.add(remote.url)
                fresh.append(NewItem(
                    feed_id=feed.id,
                    title=remote.title,
                    url=remote.url,
                    published_at=remote.published_at,
                ))

            if len(fresh) >= max_items:
                del fresh[max_items:]
                break
            if len(in_window) < len(remote_items):
                break

    # -- phase 2 -----------------------------------------------------------

    async def _materialize_pending(self) -> MaterializeResult:
        items = await self.storage.find_unmaterialized()
        if not items:
            self.logger.info("No unmaterialized items found")
            return MaterializeResult()

        self.logger.info(f"Materializing {len(items)} items...")

        feed_lookup: Dict[int, Feed] = {}
        for feed_id in sorted({item.feed_id for item in items}):
            feed = await self.storage.get_feed(feed_id)
            if feed is not None:
                feed_lookup[feed_id] = feed

        ordered = sorted(items, key=lambda item: item.feed_id)
        outcome = await self.materializer.materialize_batch(ordered, feed_lookup)

        self.logger.info(
            f"Materialization completed: {outcome.created} created, "
            f"{outcome.skipped} skipped, {outcome.failed} failed"
        )
        return outcome

    # -- phase 3 -----------------------------------------------------------

    async def _cleanup(self, retention_days: int) -> CleanupResult:
        try:
            self.logger.info(f"Cleaning up items older than {retention_days} days...")

            deleted_ids = await self.storage.delete_items_older_than(retention_days)
            if not deleted_ids:
                self.logger.info("No old items to clean up")
                return CleanupResult()

            artifacts_deleted = await self.materializer.delete_artifacts_by_item_ids(deleted_ids)

            self.logger.info(
                f"Cleanup complete: {len(deleted_ids)} items and {artifacts_deleted} artifacts deleted"
            )
            return CleanupResult(items_deleted=len(deleted_ids), artifacts_deleted=artifacts_deleted)
        except Exception as e:
            self.logger.error(f"Failed to clean up old items and artifacts: {e}")
            return CleanupResult()

    # -- reporting ---------------------------------------------------------

    async def get_stats(self) -> dict:
        feeds = await self.storage.list_feeds()
        counts = await self.storage.count_items()

        return {
            "total_feeds": len(feeds),
            "total_items": counts["total"],
            "materialized_items": counts["materialized"],
            "unmaterialized_items": counts["unmaterialized"],
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "is_syncing": self._running,
        }
