from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Set

from idprovider.logging import get_logger
from idprovider.service.errors import (
    AuthenticationError,
    AuthenticationFailed,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    TenantNotFoundError,
    TokenError,
    TokenSubjectMismatchError,
    UserInactiveError,
    UserNotFoundError,
)
from idprovider.service.passwords import PasswordVerifier
from idprovider.service.refresh_tokens import RefreshTokenManager
from idprovider.service.revocation import RevocationRegistry
from idprovider.service.roles import RoleService
from idprovider.service.tenant_context import TenantContext, tenant_scope
from idprovider.service.tenants import TenantService, generate_tenant_id
from idprovider.service.tokens import TokenService
from idprovider.storage.models import RoleName, Tenant, User

logger = get_logger(__name__)


class SignInStage(str, Enum):
    TENANT_CHECK = "TENANT_CHECK"
    USER_EXISTS_CHECK = "USER_EXISTS_CHECK"
    USER_ACTIVE_CHECK = "USER_ACTIVE_CHECK"
    CREDENTIAL_CHECK = "CREDENTIAL_CHECK"
    TOKEN_ISSUE = "TOKEN_ISSUE"
    CONTEXT_CLEANUP = "CONTEXT_CLEANUP"


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    user_id: str
    username: str
    tenant_id: str
    roles: List[str] = field(default_factory=list)
    token_type: str = "Bearer"


class AuthService:
    """Tenant-scoped sign-in, token refresh, sign-out and request authentication.

    Every failure an unauthenticated caller can trigger leaves this class as
    ``AuthenticationFailed`` with the message "authentication failed"; the
    specific kind is kept on ``reason`` and in the logs.
    """

    def __init__(
        self,
        tenants: TenantService,
        roles: RoleService,
        tokens: TokenService,
        refresh_tokens: RefreshTokenManager,
        revocation: RevocationRegistry,
        passwords: PasswordVerifier,
        *,
        allow_signup: bool = True,
    ) -> None:
        self.tenants = tenants
        self.roles = roles
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.revocation = revocation
        self.passwords = passwords
        self.allow_signup = allow_signup
        self._dummy_hash: Optional[str] = None

    def _burn_password_check(self, password: str) -> None:
        # Keeps an unknown username as slow as a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = self.passwords.hash("idprovider-timing-equalizer")
        self.passwords.verify(password, self._dummy_hash)

    def _issue(self, user: User, tenant_id: str) -> IssuedTokens:
        access_token = self.tokens.issue_access_token(user.username, tenant_id, user_id=user.id)
        refresh = self.refresh_tokens.generate(user.username, tenant_id, user_id=user.id)
        roles = self.roles.get_user_roles(user.id, tenant_id)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=int(self.tokens.ttl.total_seconds()),
            refresh_expires_at=refresh.expires_at,
            user_id=user.id,
            username=user.username,
            tenant_id=tenant_id,
            roles=sorted(role.value for role in roles),
        )

    def _resolve_token_user(
        self, username: str, user_id: Optional[str], tenant_id: str
    ) -> User:
        """The user a token names, provided the name still resolves to them."""
        user = self.tenants.find_user_in_tenant(username, tenant_id)
        if not user:
            raise UserNotFoundError("user not found in tenant")
        if not user_id or user.id != user_id:
            raise TokenSubjectMismatchError("token was minted for another user")
        return user

    async def sign_in(self, username: str, password: str, tenant_id: str) -> IssuedTokens:
        stage = SignInStage.TENANT_CHECK
        try:
            with tenant_scope(tenant_id):
                self.tenants.require_active_tenant(tenant_id)
                stage = SignInStage.USER_EXISTS_CHECK
                user = self.tenants.find_user_in_tenant(username, tenant_id)
                if not user:
                    self._burn_password_check(password)
                    raise UserNotFoundError("user not found in tenant")
                stage = SignInStage.USER_ACTIVE_CHECK
                if not user.active:
                    raise UserInactiveError("user is not active")
                stage = SignInStage.CREDENTIAL_CHECK
                if not self.passwords.verify(password, user.password_hash):
                    raise InvalidCredentialsError("invalid credentials")
                stage = SignInStage.TOKEN_ISSUE
                issued = self._issue(user, tenant_id)
        except AuthenticationError as exc:
            logger.warning(
                "sign_in_failed",
                stage=stage.value,
                reason=exc.error_code,
                tenant_id=tenant_id,
            )
            raise AuthenticationFailed(exc.error_code) from None
        finally:
            logger.debug("sign_in_context_cleared", stage=SignInStage.CONTEXT_CLEANUP.value)
        logger.info("sign_in_succeeded", user_id=issued.user_id, tenant_id=tenant_id)
        return issued

    async def sign_up(
        self,
        username: str,
        email: str,
        password: str,
        tenant_name: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> IssuedTokens:
        """Create a tenant and its first user, who becomes ADMIN there."""
        if not self.allow_signup:
            raise ForbiddenError("signup is disabled")
        tenant_id = generate_tenant_id(tenant_name)
        if self.tenants.exists(tenant_id):
            raise ConflictError("tenant already exists", detail={"tenant_id": tenant_id})
        if self.tenants.email_taken(email):
            raise ConflictError("email already exists", detail={"field": "email"})
        tenant = self.tenants.create_tenant(tenant_name, tenant_id=tenant_id)
        with tenant_scope(tenant.tenant_id):
            user = self.tenants.register_user(
                username,
                email,
                password,
                tenant.tenant_id,
                first_name=first_name,
                last_name=last_name,
            )
            self.roles.initialize_default_permissions()
            self.roles.assign_roles_to_user(user.id, tenant.tenant_id, [RoleName.ADMIN])
            issued = self._issue(user, tenant.tenant_id)
        logger.info("sign_up_succeeded", user_id=user.id, tenant_id=tenant.tenant_id)
        return issued

    async def refresh(self, refresh_token: str, tenant_id: str) -> IssuedTokens:
        """Trade a refresh token minted for ``tenant_id`` for a fresh pair."""
        try:
            with tenant_scope(tenant_id):
                self.tenants.require_active_tenant(tenant_id)
                record = self.refresh_tokens.require_for_tenant(refresh_token, tenant_id)
                user = self._resolve_token_user(record.username, record.user_id, tenant_id)
                if not user.active:
                    raise UserInactiveError("user is not active")
                issued = self._issue(user, tenant_id)
        except AuthenticationError as exc:
            logger.warning("token_refresh_failed", reason=exc.error_code, tenant_id=tenant_id)
            raise AuthenticationFailed(exc.error_code) from None
        logger.info("token_refreshed", user_id=issued.user_id, tenant_id=tenant_id)
        return issued

    async def sign_out(self, access_token: str) -> None:
        """End the caller's session in the token's tenant.

        Revokes every refresh token of the pair, drops the user's expired
        blacklist rows and blacklists the presented access token until its
        own expiry.
        """
        try:
            claims = await self.tokens.inspect(access_token)
        except TokenError as exc:
            raise AuthenticationFailed(exc.error_code) from None
        with tenant_scope(claims.tenant_id):
            self.refresh_tokens.revoke_all(claims.subject, claims.tenant_id)
            self.revocation.purge_user_entries(
                claims.subject, claims.tenant_id, expired_only=True
            )
            await self.revocation.add_to_blacklist(
                access_token,
                claims.subject,
                claims.tenant_id,
                claims.expires_at_datetime,
            )
        logger.info("sign_out_succeeded", tenant_id=claims.tenant_id)

    async def switch_tenant(self, ctx: TenantContext, tenant_id: str) -> IssuedTokens:
        """Authenticate ``ctx``'s user afresh inside ``tenant_id``."""
        try:
            with tenant_scope(tenant_id):
                self.tenants.require_active_tenant(tenant_id)
                user = self.tenants.get_user(ctx.user_id)
                if not user or not self.tenants.is_member(user, tenant_id):
                    raise UserNotFoundError("user not found in tenant")
                resolved = self.tenants.find_user_in_tenant(user.username, tenant_id)
                if not resolved or resolved.id != user.id:
                    raise UserNotFoundError("username is ambiguous in tenant")
                if not user.active:
                    raise UserInactiveError("user is not active")
                issued = self._issue(user, tenant_id)
        except AuthenticationError as exc:
            logger.warning(
                "tenant_switch_failed",
                reason=exc.error_code,
                from_tenant=ctx.tenant_id,
                to_tenant=tenant_id,
            )
            raise AuthenticationFailed(exc.error_code) from None
        logger.info(
            "tenant_switched",
            user_id=ctx.user_id,
            from_tenant=ctx.tenant_id,
            to_tenant=tenant_id,
        )
        return issued

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        tenant_hint: Optional[str] = None,
    ) -> Optional[TenantContext]:
        token = self.extract_bearer(authorization)
        if not token:
            return None
        result = await self.tokens.validate(token)
        if not result.valid or result.claims is None:
            return None
        claims = result.claims
        if tenant_hint and tenant_hint != claims.tenant_id:
            logger.info(
                "access_token_rejected",
                reason="token_tenant_mismatch",
                tenant_hint=tenant_hint,
            )
            return None
        try:
            self.tenants.require_active_tenant(claims.tenant_id)
        except TenantNotFoundError:
            return None
        try:
            user = self._resolve_token_user(claims.subject, claims.user_id, claims.tenant_id)
        except AuthenticationError as exc:
            logger.info("access_token_rejected", reason=exc.error_code)
            return None
        if not user.active:
            return None
        return TenantContext(
            tenant_id=claims.tenant_id, user_id=user.id, username=user.username
        )

    def current_user(self, ctx: TenantContext) -> User:
        user = self.tenants.get_user(ctx.user_id)
        if not user:
            raise AuthenticationFailed("user_not_found")
        return user

    def current_roles(self, ctx: TenantContext) -> Set[RoleName]:
        return self.roles.get_user_roles(ctx.user_id, ctx.tenant_id)

    def current_permissions(self, ctx: TenantContext) -> Set[str]:
        return self.roles.resolve_permissions(ctx.user_id, ctx.tenant_id)

    def user_tenants(self, ctx: TenantContext) -> List[Tenant]:
        return self.tenants.tenants_for_user(ctx.user_id)
