"""Storage and materialization contracts consumed by the sync services.

The `feed_sync.storage.database` module satisfies `SyncStorage` as-is, so it can
be passed wherever a storage backend is expected.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from feed_sync.models.schemas import (
    Credential,
    CredentialStatus,
    Feed,
    Item,
    MaterializeResult,
    NewItem,
)


class CredentialStore(Protocol):
    async def find_credentials_by_status(self, status: CredentialStatus) -> List[Credential]:
        ...

    async def update_credential_status(
        self,
        credential_id: int,
        status: CredentialStatus,
        blacklisted_until: Optional[datetime] = None,
    ) -> bool:
        ...


class SyncStorage(CredentialStore, Protocol):
    async def get_feed(self, feed_id: int) -> Optional[Feed]:
        ...

    async def list_feeds(self) -> List[Feed]:
        ...

    async def find_feeds_needing_sync(self, threshold_hours: float) -> List[Feed]:
        ...

    async def update_feed_last_sync(self, feed_id: int, timestamp: Optional[datetime] = None) -> None:
        ...

    async def insert_items_if_absent(self, items: List[NewItem]) -> int:
        ...

    async def find_unmaterialized(self) -> List[Item]:
        ...

    async def mark_item_materialized(self, item_id: int, artifact_ref: str) -> None:
        ...

    async def delete_items_older_than(self, days: int) -> List[int]:
        ...

    async def count_items(self) -> Dict[str, int]:
        ...


class Materializer(Protocol):
    async def materialize_batch(self, items: List[Item], feed_lookup: Dict[int, Feed]) -> MaterializeResult:
        ...

    async def delete_artifacts_by_item_ids(self, item_ids: List[int]) -> int:
        ...
