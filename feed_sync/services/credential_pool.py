"""Credential pool with rate-limit and expiry tracking.

State machine:
    active -> expired        on an auth-expired error (needs re-login)
    active -> blacklisted    on a rate-limited error, until now + cooldown
    blacklisted -> active    lazily, on the first acquisition after expiry
    disabled                 only set and cleared explicitly via set_status
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol

from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import Credential, CredentialStatus
from feed_sync.services.gateway import ApiErrorCode, classify_exception
from feed_sync.storage.base import CredentialStore

DEFAULT_BLACKLIST_COOLDOWN = timedelta(hours=24)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SelectionStrategy(Protocol):
    def select(self, candidates: List[Credential]) -> Optional[Credential]:
        ...


class FirstAvailableStrategy:
    """Always pick the first active credential (creation order)."""

    def select(self, candidates: List[Credential]) -> Optional[Credential]:
        return candidates[0] if candidates else None


class RoundRobinStrategy:
    """Rotate through active credentials, one per acquisition."""

    def __init__(self) -> None:
        self._last_id: Optional[int] = None

    def select(self, candidates: List[Credential]) -> Optional[Credential]:
        if not candidates:
            return None

        chosen = candidates[0]
        if self._last_id is not None:
            for candidate in candidates:
                if candidate.id > self._last_id:
                    chosen = candidate
                    break

        self._last_id = chosen.id
        return chosen


class CredentialPool:
    """Owns the lifecycle of the credentials used to call the platform."""

    def __init__(
        self,
        storage: CredentialStore,
        cooldown: timedelta = DEFAULT_BLACKLIST_COOLDOWN,
        strategy: Optional[SelectionStrategy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.cooldown = cooldown
        self.strategy = strategy or FirstAvailableStrategy()
        self._clock = clock

    async def _release_expired_blacklists(self) -> int:
        now = self._clock()
        released = 0

        for credential in await self.storage.find_credentials_by_status(CredentialStatus.BLACKLISTED):
            if credential.blacklisted_until is None or now > credential.blacklisted_until:
                await self.storage.update_credential_status(credential.id, CredentialStatus.ACTIVE)
                get_logger(__name__).info(f"Credential {credential.id} blacklist cleared")
                released += 1

        return released

    async def acquire_available(self) -> Optional[Credential]:
        """Return a usable credential, or None if none qualify.

        Blacklist periods that have run out are cleared first, so a credential
        whose cool-down just ended is eligible in the same call.
        """
        logger = get_logger(__name__)

        await self._release_expired_blacklists()

        active = await self.storage.find_credentials_by_status(CredentialStatus.ACTIVE)
        if not active:
            logger.warning("No active credentials (all blacklisted, expired or disabled)")
            return None

        selected = self.strategy.select(active)
        if selected is not None:
            logger.debug(f"Selected credential {selected.id}")
        return selected

    async def record_api_error(self, credential_id: int, error: BaseException) -> Optional[CredentialStatus]:
        """Apply the effect of a classified API error to a credential.

        Args:
            credential_id: Credential that made the failing call
            error: The raised error

        Returns:
            The credential's new status, or None if it was left untouched
        """
        logger = get_logger(__name__)
        classified = classify_exception(error)

        if classified is None:
            logger.debug("Non-API error, skipping credential status update")
            return None

        if classified.code == ApiErrorCode.AUTH_EXPIRED:
            logger.warning(f"Credential {credential_id} expired, marking as invalid")
            await self.storage.update_credential_status(credential_id, CredentialStatus.EXPIRED)
            return CredentialStatus.EXPIRED

        if classified.code == ApiErrorCode.RATE_LIMITED:
            until = self._clock() + self.cooldown
            logger.warning(f"Credential {credential_id} rate limited, blacklisted until {until.isoformat()}")
            await self.storage.update_credential_status(credential_id, CredentialStatus.BLACKLISTED, until)
            return CredentialStatus.BLACKLISTED

        if classified.code == ApiErrorCode.MALFORMED_REQUEST:
            logger.error(f"Bad request with credential {credential_id}: {classified.message}")
        else:
            logger.error(f"Unhandled API error for credential {credential_id}: {classified!r}")
        return None

    async def set_status(self, credential_id: int, status: CredentialStatus) -> bool:
        """Set a credential's status explicitly (admin action).

        Blacklisting through here applies the configured cool-down.
        """
        status = CredentialStatus(status)
        until = self._clock() + self.cooldown if status == CredentialStatus.BLACKLISTED else None

        updated = await self.storage.update_credential_status(credential_id, status, until)
        if updated:
            get_logger(__name__).info(f"Credential {credential_id} status updated to {status.value}")
        return bool(updated)

    async def get_stats(self) -> Dict[str, int]:
        """Count credentials per status."""
        stats = {}
        for status in CredentialStatus:
            stats[status.value] = len(await self.storage.find_credentials_by_status(status))
        stats["total"] = sum(stats.values())
        return stats
