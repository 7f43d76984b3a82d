"""Wiring of the sync services for a running process.

`SyncRuntime` builds every service from a ServerConfig and owns the scheduler
and HTTP transport lifecycles. The server and CLI share one runtime through
`get_runtime()`.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from feed_sync.config import ServerConfig, get_config
from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import SyncOptions
from feed_sync.services.api_client import PlatformClient
from feed_sync.services.credential_pool import CredentialPool
from feed_sync.services.gateway import HttpTransport, RetryGateway, RetryPolicy
from feed_sync.services.materializer import MarkdownMaterializer
from feed_sync.services.orchestrator import SyncInProgressError, SyncOrchestrator
from feed_sync.services.scheduler import TaskScheduler
from feed_sync.storage import database

AUTO_SYNC_TASK_ID = "auto-sync"


@dataclass
class SyncRuntime:
    config: ServerConfig
    transport: HttpTransport
    gateway: RetryGateway
    client: PlatformClient
    pool: CredentialPool
    materializer: MarkdownMaterializer
    orchestrator: SyncOrchestrator
    scheduler: TaskScheduler

    @classmethod
    def create(cls, config: ServerConfig, storage=database, transport: Optional[HttpTransport] = None) -> "SyncRuntime":
        """Build all services from configuration.

        Args:
            config: Server configuration
            storage: Storage backend (defaults to the SQLite database module)
            transport: Optional transport override (tests inject mock transports)
        """
        transport = transport or HttpTransport(timeout=config.request_timeout_seconds)
        gateway = RetryGateway(
            transport,
            RetryPolicy(
                max_attempts=config.retry_max_attempts,
                base_delay_ms=config.retry_base_delay_ms,
            ),
        )
        client = PlatformClient(gateway, config.platform_url)
        pool = CredentialPool(storage, cooldown=timedelta(hours=config.blacklist_cooldown_hours))
        materializer = MarkdownMaterializer(config.output_dir, storage)
        orchestrator = SyncOrchestrator(storage, pool, client, materializer, config)
        scheduler = TaskScheduler(tick_seconds=config.tick_seconds)

        runtime = cls(
            config=config,
            transport=transport,
            gateway=gateway,
            client=client,
            pool=pool,
            materializer=materializer,
            orchestrator=orchestrator,
            scheduler=scheduler,
        )
        if config.auto_sync:
            runtime.register_auto_sync()
        return runtime

    def register_auto_sync(self) -> None:
        """Register the periodic sync task.

        Each tick only refreshes feeds that are stale relative to the sync
        interval.
        """
        interval = self.config.sync_interval_minutes

        async def auto_sync() -> None:
            try:
                await self.orchestrator.run(SyncOptions(stale_threshold_hours=interval / 60))
            except SyncInProgressError:
                get_logger(__name__).info("Skipping scheduled sync: a sync is already running")

        self.scheduler.register(AUTO_SYNC_TASK_ID, auto_sync, interval)

    def start(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.transport.aclose()


_runtime: Optional[SyncRuntime] = None


def get_runtime() -> SyncRuntime:
    """Get or create the process-wide runtime."""
    global _runtime

    if _runtime is None:
        _runtime = SyncRuntime.create(get_config())
    return _runtime


async def close_runtime() -> None:
    global _runtime

    if _runtime is not None:
        await _runtime.close()
        _runtime = None
