from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Set

from idprovider.logging import get_logger
from idprovider.service.errors import ForbiddenError, NotFoundError, RoleNotFoundError
from idprovider.storage.models import (
    GlobalRole,
    Permission,
    RoleName,
    UserTenantRole,
)

logger = get_logger(__name__)

DEFAULT_PERMISSIONS: Dict[str, str] = {
    "VIEW_DASHBOARD": "View the dashboard",
    "MANAGE_USERS": "Create, update and deactivate users",
    "VIEW_REPORTS": "View reports",
    "COMPONENT:UsersTable": "Render the users table component",
    "COMPONENT:AdminPanel": "Render the admin panel component",
}

ROLE_ALIASES: Dict[str, RoleName] = {
    "USER": RoleName.USER,
    "MOD": RoleName.MODERATOR,
    "MODERATOR": RoleName.MODERATOR,
    "ADMIN": RoleName.ADMIN,
    "SUPER_ADMIN": RoleName.SUPER_ADMIN,
    "SUPERADMIN": RoleName.SUPER_ADMIN,
}


def parse_role_name(raw: str | RoleName) -> RoleName:
    """Map a caller-supplied role name onto the catalog, or raise.

    Case, surrounding whitespace, ``-`` versus ``_`` and a ``ROLE_`` prefix
    are ignored. Anything else unknown raises ``RoleNotFoundError``.
    """
    if isinstance(raw, RoleName):
        return raw
    if not isinstance(raw, str):
        raise RoleNotFoundError("unknown role", detail={"role": repr(raw)})
    key = raw.strip().upper().replace("-", "_")
    if key.startswith("ROLE_"):
        key = key[len("ROLE_"):]
    try:
        return ROLE_ALIASES[key]
    except KeyError:
        raise RoleNotFoundError("unknown role", detail={"role": raw}) from None


def parse_role_names(raws: Iterable[str | RoleName]) -> Set[RoleName]:
    """Parse every name; one unknown name fails the whole request."""
    return {parse_role_name(raw) for raw in raws}


class RoleStore(Protocol):
    def get_permission(self, code: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def upsert_permission(
        self, code: str, description: Optional[str] = None
    ) -> tuple[Permission, bool]: ...

    def get_global_role(self, name: RoleName) -> Optional[GlobalRole]: ...

    def list_global_roles(self) -> List[GlobalRole]: ...

    def ensure_global_role(
        self, name: RoleName, description: Optional[str] = None
    ) -> tuple[GlobalRole, bool]: ...

    def set_global_role_permissions(
        self, name: RoleName, codes: Iterable[str]
    ) -> Optional[GlobalRole]: ...

    def get_user_tenant_role(self, user_id: str, tenant_id: str) -> Optional[UserTenantRole]: ...

    def upsert_user_tenant_role(
        self, user_id: str, tenant_id: str, roles: Iterable[RoleName]
    ) -> UserTenantRole: ...

    def delete_user_tenant_role(self, user_id: str, tenant_id: str) -> bool: ...

    def list_user_tenant_roles(
        self, *, tenant_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[UserTenantRole]: ...


class RoleService:
    """Global role catalog, per-tenant role bindings and permission resolution."""

    def __init__(self, store: RoleStore) -> None:
        self.store = store

    # catalog
    def initialize_global_roles(self) -> List[GlobalRole]:
        created = []
        for name in RoleName:
            _, was_created = self.store.ensure_global_role(name, name.description)
            if was_created:
                created.append(name.value)
        if created:
            logger.info("global_roles_initialized", created=created)
        return self.store.list_global_roles()

    def initialize_default_permissions(self) -> List[Permission]:
        created = []
        for code, description in DEFAULT_PERMISSIONS.items():
            _, was_created = self.store.upsert_permission(code, description)
            if was_created:
                created.append(code)
        if created:
            logger.info("default_permissions_initialized", created=created)
        return self.store.list_permissions()

    def list_roles(self) -> List[GlobalRole]:
        return self.store.list_global_roles()

    def list_active_roles(self) -> List[GlobalRole]:
        return [role for role in self.store.list_global_roles() if role.active]

    def get_role(self, role_name: str | RoleName) -> GlobalRole:
        name = parse_role_name(role_name)
        role = self.store.get_global_role(name)
        if not role:
            raise RoleNotFoundError("role not initialized", detail={"role": name.value})
        return role

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def upsert_permissions(self, codes: Iterable[str]) -> List[Permission]:
        permissions = []
        for code in codes:
            code = code.strip()
            if not code:
                continue
            permission, created = self.store.upsert_permission(code)
            if created:
                logger.info("permission_created", code=code)
            permissions.append(permission)
        return permissions

    def set_permissions(
        self, role: GlobalRole | RoleName, permissions: Iterable[str]
    ) -> GlobalRole:
        """Replace the role's permission set with ``permissions``."""
        name = role.name if isinstance(role, GlobalRole) else role
        updated = self.store.set_global_role_permissions(name, set(permissions))
        if not updated:
            raise RoleNotFoundError("role not initialized", detail={"role": name.value})
        logger.info(
            "role_permissions_set",
            role=name.value,
            permissions=sorted(updated.permissions),
        )
        return updated

    def set_role_permissions(self, role_name: str, codes: Iterable[str]) -> GlobalRole:
        """Admin path: strict role lookup, create unknown codes, then replace."""
        role = self.get_role(role_name)
        permissions = self.upsert_permissions(codes)
        return self.set_permissions(role, {p.code for p in permissions})

    # bindings
    def assign_roles_to_user(
        self, user_id: str, tenant_id: str, role_names: Iterable[str | RoleName]
    ) -> UserTenantRole:
        roles = parse_role_names(role_names)
        binding = self.store.upsert_user_tenant_role(user_id, tenant_id, roles)
        logger.info(
            "user_roles_assigned",
            user_id=user_id,
            tenant_id=tenant_id,
            roles=sorted(r.value for r in roles),
        )
        return binding

    def get_user_roles(self, user_id: str, tenant_id: str) -> Set[RoleName]:
        binding = self.store.get_user_tenant_role(user_id, tenant_id)
        return set(binding.roles) if binding else set()

    def user_has_role(
        self, user_id: str, tenant_id: str, role_name: str | RoleName
    ) -> bool:
        return parse_role_name(role_name) in self.get_user_roles(user_id, tenant_id)

    def require_any_role(
        self, user_id: str, tenant_id: str, *role_names: RoleName
    ) -> Set[RoleName]:
        roles = self.get_user_roles(user_id, tenant_id)
        if not roles.intersection(role_names):
            raise ForbiddenError(
                "insufficient role",
                detail={"required": sorted(r.value for r in role_names)},
            )
        return roles

    def remove_user_from_tenant(self, user_id: str, tenant_id: str) -> None:
        if not self.store.delete_user_tenant_role(user_id, tenant_id):
            raise NotFoundError(
                "user has no roles in tenant",
                detail={"user_id": user_id, "tenant_id": tenant_id},
            )
        logger.info("user_removed_from_tenant", user_id=user_id, tenant_id=tenant_id)

    def list_tenant_bindings(self, tenant_id: str) -> List[UserTenantRole]:
        return self.store.list_user_tenant_roles(tenant_id=tenant_id)

    def list_user_bindings(self, user_id: str) -> List[UserTenantRole]:
        return self.store.list_user_tenant_roles(user_id=user_id)

    def resolve_permissions(self, user_id: str, tenant_id: str) -> Set[str]:
        """Union of distinct permission codes across the user's roles in ``tenant_id``.

        Inactive roles and inactive permissions contribute nothing. A user with
        no binding in the tenant resolves to an empty set.
        """
        binding = self.store.get_user_tenant_role(user_id, tenant_id)
        if not binding or not binding.roles:
            return set()
        active_codes = {p.code for p in self.store.list_permissions() if p.active}
        resolved: Set[str] = set()
        for name in binding.roles:
            role = self.store.get_global_role(name)
            if role and role.active:
                resolved.update(role.permissions & active_codes)
        return resolved
