from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from idprovider.logging import get_logger
from idprovider.storage.models import RevokedToken, new_id, utcnow
from idprovider.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def add_revoked_token(self, entry: RevokedToken) -> RevokedToken: ...

    def get_revoked_token(self, token: str) -> Optional[RevokedToken]: ...

    def delete_user_revoked_tokens(
        self, username: str, tenant_id: str, *, before: Optional[datetime] = None
    ) -> int: ...

    def delete_expired_revoked_tokens(self, before: datetime) -> int: ...


class RevocationRegistry:
    """Blacklist of access tokens killed before their natural expiry.

    The store is authoritative. When a Redis cache is configured it mirrors
    each entry with a TTL equal to the token's remaining life and serves as a
    fast positive check; a cache miss or cache failure falls through to the
    store.
    """

    def __init__(
        self,
        store: RevocationStore,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock

    async def add_to_blacklist(
        self, token: str, username: str, tenant_id: str, expires_at: datetime
    ) -> RevokedToken:
        entry = self.store.add_revoked_token(
            RevokedToken(
                id=new_id(),
                token=token,
                username=username,
                tenant_id=tenant_id,
                revoked_at=self._clock(),
                expires_at=expires_at,
            )
        )
        if self.cache:
            try:
                await self.cache.denylist_access_token(token, entry.expires_at)
            except Exception as exc:
                # The store row already blocks the token
                logger.warning("blacklist_cache_write_failed", error=str(exc))
        logger.info(
            "access_token_blacklisted",
            username=username,
            tenant_id=tenant_id,
            expires_at=entry.expires_at.isoformat(),
        )
        return entry

    async def is_blacklisted(self, token: str, now: Optional[datetime] = None) -> bool:
        if self.cache:
            try:
                if await self.cache.is_access_token_denylisted(token):
                    return True
            except Exception as exc:
                logger.warning("blacklist_cache_read_failed", error=str(exc))
        entry = self.store.get_revoked_token(token)
        if entry is None:
            return False
        return entry.is_live(now or self._clock())

    def purge_user_entries(
        self, username: str, tenant_id: str, *, expired_only: bool = False
    ) -> int:
        """Delete this user's blacklist bookkeeping rows; revokes nothing.

        With ``expired_only`` only rows whose token has already expired are
        removed, so a still-valid blacklisted token stays blocked.
        """
        before = self._clock() if expired_only else None
        removed = self.store.delete_user_revoked_tokens(username, tenant_id, before=before)
        if removed:
            logger.info(
                "blacklist_user_entries_purged",
                username=username,
                tenant_id=tenant_id,
                removed=removed,
                expired_only=expired_only,
            )
        return removed

    def clean_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_revoked_tokens(now or self._clock())
