from __future__ import annotations

import re
from typing import List, Optional, Protocol

from idprovider.logging import get_logger
from idprovider.service.errors import (
    ConflictError,
    NotFoundError,
    TenantNotFoundError,
    ValidationError,
)
from idprovider.service.passwords import PasswordVerifier
from idprovider.storage.errors import ConstraintViolation
from idprovider.storage.models import Tenant, User, UserTenantRole

logger = get_logger(__name__)

TENANT_ID_MAX_LENGTH = 20
TENANT_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,18}[a-z0-9]$")


def generate_tenant_id(name: str) -> str:
    """Slug a display name into a tenant id: ``"Acme Corp!"`` -> ``"acme-corp"``."""
    if not name or not name.strip():
        raise ValidationError("tenant name is required", detail={"field": "name"})
    slug = name.strip().lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    if len(slug) > TENANT_ID_MAX_LENGTH:
        slug = slug[:TENANT_ID_MAX_LENGTH].rstrip("-")
    return slug


def is_valid_tenant_id(tenant_id: Optional[str]) -> bool:
    return bool(tenant_id) and bool(TENANT_ID_PATTERN.match(tenant_id))


class DirectoryStore(Protocol):
    def create_tenant(
        self, tenant_id: str, name: str, description: Optional[str] = None
    ) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def list_tenants(self, *, active_only: bool = False) -> List[Tenant]: ...

    def set_tenant_active(self, tenant_id: str, active: bool) -> Optional[Tenant]: ...

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        tenant_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str, tenant_id: str) -> Optional[User]: ...

    def find_users_by_username(self, username: str) -> List[User]: ...

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]: ...

    def get_user_tenant_role(self, user_id: str, tenant_id: str) -> Optional[UserTenantRole]: ...

    def list_user_tenant_roles(
        self, *, tenant_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[UserTenantRole]: ...


class TenantService:
    """Tenants and the users that belong to them.

    A user belongs to a tenant when it is their home tenant or when they hold
    a role binding there.
    """

    def __init__(self, store: DirectoryStore, passwords: PasswordVerifier) -> None:
        self.store = store
        self.passwords = passwords

    # tenants
    def create_tenant(
        self,
        name: str,
        tenant_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tenant:
        slug = tenant_id if tenant_id is not None else generate_tenant_id(name)
        if not name or not name.strip():
            raise ValidationError("tenant name is required", detail={"field": "name"})
        if not is_valid_tenant_id(slug):
            raise ValidationError(
                "invalid tenant id", detail={"field": "tenant_id", "tenant_id": slug}
            )
        try:
            tenant = self.store.create_tenant(slug, name.strip(), description)
        except ConstraintViolation as exc:
            raise ConflictError("tenant already exists", detail=exc.detail) from exc
        logger.info("tenant_created", tenant_id=tenant.tenant_id)
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        if not tenant_id:
            return None
        return self.store.get_tenant(tenant_id)

    def exists(self, tenant_id: str) -> bool:
        return self.get_tenant(tenant_id) is not None

    def require_active_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.get_tenant(tenant_id)
        if not tenant or not tenant.active:
            raise TenantNotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    def list_tenants(self, *, active_only: bool = False) -> List[Tenant]:
        return self.store.list_tenants(active_only=active_only)

    def deactivate(self, tenant_id: str) -> Tenant:
        return self._set_active(tenant_id, False)

    def reactivate(self, tenant_id: str) -> Tenant:
        return self._set_active(tenant_id, True)

    def _set_active(self, tenant_id: str, active: bool) -> Tenant:
        tenant = self.store.set_tenant_active(tenant_id, active)
        if not tenant:
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        logger.info("tenant_active_changed", tenant_id=tenant_id, active=active)
        return tenant

    # users
    def register_user(
        self,
        username: str,
        email: str,
        password: str,
        tenant_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        if not self.exists(tenant_id):
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        self.ensure_username_free(username, tenant_id)
        try:
            user = self.store.create_user(
                username,
                email,
                self.passwords.hash(password),
                tenant_id,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id, tenant_id=tenant_id)
        return user

    def ensure_username_free(
        self, username: str, tenant_id: str, *, user_id: Optional[str] = None
    ) -> None:
        """Refuse a second user answering to ``username`` inside ``tenant_id``.

        Home users and users bound by a role both count; ``user_id`` is the
        user about to join, who never conflicts with themselves.
        """
        holders = {
            user.id
            for user in self.store.find_users_by_username(username)
            if user.tenant_id == tenant_id
            or self.store.get_user_tenant_role(user.id, tenant_id)
        }
        holders.discard(user_id)
        if holders:
            raise ConflictError(
                "username already in use in tenant",
                detail={"field": "username", "tenant_id": tenant_id},
            )

    def email_taken(self, email: str) -> bool:
        return self.store.get_user_by_email(email) is not None

    def set_user_active(self, user_id: str, active: bool) -> User:
        user = self.store.set_user_active(user_id, active)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("user_active_changed", user_id=user_id, active=active)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def find_user_in_tenant(self, username: str, tenant_id: str) -> Optional[User]:
        """Resolve ``username`` inside ``tenant_id``.

        A user whose home tenant matches wins. Otherwise exactly one user with
        a role binding in the tenant must carry the name; an ambiguous match
        resolves to nobody.
        """
        if not username or not tenant_id:
            return None
        home = self.store.get_user_by_username(username, tenant_id)
        if home:
            return home
        bound = [
            user
            for user in self.store.find_users_by_username(username)
            if self.store.get_user_tenant_role(user.id, tenant_id)
        ]
        if len(bound) > 1:
            logger.warning(
                "ambiguous_username_in_tenant", username=username, tenant_id=tenant_id
            )
            return None
        return bound[0] if bound else None

    def user_exists_in_tenant(self, username: str, tenant_id: str) -> bool:
        return self.find_user_in_tenant(username, tenant_id) is not None

    def is_member(self, user: User, tenant_id: str) -> bool:
        if user.tenant_id == tenant_id:
            return True
        return self.store.get_user_tenant_role(user.id, tenant_id) is not None

    def tenants_for_user(self, user_id: str) -> List[Tenant]:
        """Active tenants the user can sign in to, home tenant first."""
        user = self.store.get_user(user_id)
        if not user:
            return []
        tenant_ids = [user.tenant_id]
        for binding in self.store.list_user_tenant_roles(user_id=user_id):
            if binding.tenant_id not in tenant_ids:
                tenant_ids.append(binding.tenant_id)
        tenants = []
        for tenant_id in tenant_ids:
            tenant = self.store.get_tenant(tenant_id)
            if tenant and tenant.active:
                tenants.append(tenant)
        return tenants
