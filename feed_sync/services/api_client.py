"""Client for the content platform API.

All calls go through a RetryGateway; this module only knows endpoints and
response shapes.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import Credential
from feed_sync.services.gateway import ApiError, ApiRequest, RetryGateway, RetryPolicy

ARTICLE_URL_TEMPLATE = "https://mp.weixin.qq.com/s/{article_id}"

HEALTH_PATHS = ["/health", "/api/health", "/api/v2/health"]


@dataclass
class RemoteItem:
    """An article entry as returned by the platform."""

    id: str
    title: str
    published_at: datetime

    @property
    def url(self) -> str:
        return ARTICLE_URL_TEMPLATE.format(article_id=self.id)


@dataclass
class RemoteFeedInfo:
    id: str
    name: str
    intro: str


def _auth_headers(credential: Credential) -> dict:
    return {
        "xid": str(credential.id),
        "Authorization": f"Bearer {credential.secret}",
    }


class PlatformClient:
    """Typed access to the platform endpoints used by the sync pipeline."""

    def __init__(self, gateway: RetryGateway, base_url: str):
        self.gateway = gateway
        self.base_url = base_url.rstrip("/")

    async def get_feed_items(self, source_id: str, credential: Credential, page: int = 1) -> List[RemoteItem]:
        """Fetch one page of articles for a feed.

        Args:
            source_id: External account id of the feed
            credential: Credential to authenticate with
            page: 1-indexed page number

        Returns:
            List of RemoteItem, newest first as served by the platform

        Raises:
            ApiError: On a classified failure after retries
        """
        logger = get_logger(__name__)
        logger.debug(f"Fetching items for {source_id}, page {page}")

        payload = await self.gateway.call(ApiRequest(
            method="GET",
            url=f"{self.base_url}/api/v2/platform/mps/{source_id}/articles",
            headers=_auth_headers(credential),
            params={"page": str(page)},
        ))

        items = []
        for entry in payload or []:
            article_id = str(entry.get("id", "")).strip()
            title = (entry.get("title") or "").strip()
            publish_time = entry.get("publishTime")
            if not article_id or publish_time is None:
                continue
            items.append(RemoteItem(
                id=article_id,
                title=title or article_id,
                published_at=datetime.fromtimestamp(int(publish_time), tz=timezone.utc),
            ))

        logger.info(f"Retrieved {len(items)} items for {source_id}, page {page}")
        return items

    async def get_feed_info(self, share_link: str, credential: Credential) -> Optional[RemoteFeedInfo]:
        """Resolve a share link into feed metadata, or None if nothing matched."""
        payload = await self.gateway.call(ApiRequest(
            method="POST",
            url=f"{self.base_url}/api/v2/platform/wxs2mp",
            headers={**_auth_headers(credential), "Content-Type": "application/json"},
            json={"url": share_link.strip()},
        ))

        if not payload:
            return None

        first = payload[0]
        return RemoteFeedInfo(
            id=str(first["id"]),
            name=first.get("name", ""),
            intro=first.get("intro", "") or "",
        )

    async def check_health(self) -> bool:
        """Check whether the platform is reachable.

        Tries the known health endpoints first, then the base URL itself.
        """
        logger = get_logger(__name__)
        single_shot = RetryPolicy(max_attempts=1)

        for path in HEALTH_PATHS:
            try:
                payload = await self.gateway.call(
                    ApiRequest(method="GET", url=f"{self.base_url}{path}", timeout=5.0),
                    retry=single_shot,
                )
            except ApiError:
                continue
            if isinstance(payload, dict) and payload.get("status") in ("ok", "degraded"):
                logger.info(f"API health check passed: {path}")
                return True

        try:
            await self.gateway.call(
                ApiRequest(method="HEAD", url=self.base_url, timeout=3.0),
                retry=single_shot,
            )
        except ApiError as e:
            logger.warning(f"API health check failed: {e}")
            return False

        logger.info("Base URL reachable (no health endpoint found)")
        return True
