from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from idprovider.logging import get_logger
from idprovider.service.errors import (
    TokenBlacklistedError,
    TokenExpiredError,
    TokenMalformedError,
    TokenTenantMismatchError,
)
from idprovider.storage.errors import ConstraintViolation
from idprovider.storage.models import RefreshToken, RefreshTokenState, utcnow

logger = get_logger(__name__)

DEFAULT_REFRESH_TTL = timedelta(days=30)
_MAX_GENERATE_ATTEMPTS = 3


class RefreshTokenStore(Protocol):
    def rotate_refresh_token(self, token: RefreshToken) -> int: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str) -> bool: ...

    def revoke_user_refresh_tokens(self, username: str, tenant_id: str) -> int: ...

    def list_refresh_tokens(self, username: str, tenant_id: str) -> List[RefreshToken]: ...

    def delete_expired_refresh_tokens(self, before: datetime) -> int: ...


class RefreshTokenManager:
    """Lifecycle of long-lived refresh tokens.

    A token is ACTIVE until it is revoked or its ``expires_at`` passes. At most
    one ACTIVE token exists per (username, tenant): ``generate`` revokes the
    pair's previous tokens and inserts the new one in a single store call.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        ttl: timedelta = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    def generate(
        self, username: str, tenant_id: str, *, user_id: Optional[str] = None
    ) -> RefreshToken:
        last_error: Optional[ConstraintViolation] = None
        for _ in range(_MAX_GENERATE_ATTEMPTS):
            record = RefreshToken.new(
                username, tenant_id, self.ttl, now=self._clock(), user_id=user_id
            )
            try:
                revoked = self.store.rotate_refresh_token(record)
            except ConstraintViolation as exc:
                # Random token collision or a lost race on the pair; mint again
                last_error = exc
                logger.warning(
                    "refresh_token_rotation_retry",
                    username=username,
                    tenant_id=tenant_id,
                    error=exc.message,
                )
                continue
            logger.info(
                "refresh_token_generated",
                username=username,
                tenant_id=tenant_id,
                revoked_previous=revoked,
            )
            return record
        raise last_error or ConstraintViolation("refresh token rotation failed")

    def get(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        return self.store.get_refresh_token(token)

    def validate(self, token: str, now: Optional[datetime] = None) -> bool:
        record = self.get(token)
        return bool(record and record.is_active(now or self._clock()))

    def validate_for_tenant(
        self, token: str, tenant_id: str, now: Optional[datetime] = None
    ) -> bool:
        record = self.get(token)
        if not record or not record.is_active(now or self._clock()):
            return False
        return record.tenant_id == tenant_id

    def require_for_tenant(
        self, token: str, tenant_id: str, now: Optional[datetime] = None
    ) -> RefreshToken:
        """Like ``validate_for_tenant`` but raise the specific failure kind."""
        record = self.get(token)
        if record is None:
            raise TokenMalformedError("unknown refresh token")
        state = record.state(now or self._clock())
        if state is RefreshTokenState.REVOKED:
            raise TokenBlacklistedError("refresh token revoked")
        if state is RefreshTokenState.EXPIRED:
            raise TokenExpiredError("refresh token expired")
        if record.tenant_id != tenant_id:
            raise TokenTenantMismatchError("refresh token belongs to another tenant")
        return record

    def revoke(self, token: str) -> None:
        if self.store.revoke_refresh_token(token):
            logger.info("refresh_token_revoked")

    def revoke_all(self, username: str, tenant_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(username, tenant_id)
        logger.info(
            "refresh_tokens_revoked_for_user",
            username=username,
            tenant_id=tenant_id,
            revoked=revoked,
        )
        return revoked

    def clean_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_refresh_tokens(now or self._clock())

    def active_tokens(
        self, username: str, tenant_id: str, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        current = now or self._clock()
        return [
            record
            for record in self.store.list_refresh_tokens(username, tenant_id)
            if record.is_active(current)
        ]
