from __future__ import annotations

from typing import Iterable, List, Optional

from fastapi import APIRouter, Depends, Header

from idprovider.api.schemas import (
    AddUserToTenantRequest,
    CreateTenantRequest,
    CreateTenantUserRequest,
    Envelope,
    GlobalRoleResponse,
    PermissionResponse,
    RefreshRequest,
    SetRolePermissionsRequest,
    SigninRequest,
    SignupRequest,
    SwitchTenantRequest,
    TenantResponse,
    TokenResponse,
    UpdateUserRolesRequest,
    UserResponse,
    UserTenantRoleResponse,
)
from idprovider.logging import get_logger
from idprovider.service.auth import IssuedTokens
from idprovider.service.errors import AuthenticationFailed, ForbiddenError, NotFoundError
from idprovider.service.roles import parse_role_names
from idprovider.service.runtime import get_runtime
from idprovider.service.tenant_context import TenantContext, tenant_scope
from idprovider.storage.models import (
    GlobalRole,
    Permission,
    RoleName,
    Tenant,
    User,
    UserTenantRole,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _tokens_to_response(issued: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        token_type=issued.token_type,
        expires_in=issued.expires_in,
        refresh_expires_at=issued.refresh_expires_at,
        user_id=issued.user_id,
        username=issued.username,
        tenant_id=issued.tenant_id,
        roles=list(issued.roles),
    )


def _user_to_response(user: User, roles: Iterable[RoleName] = ()) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        tenant_id=user.tenant_id,
        active=user.active,
        roles=sorted(role.value for role in roles),
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        tenant_id=tenant.tenant_id,
        name=tenant.name,
        description=tenant.description,
        active=tenant.active,
        created_at=tenant.created_at,
    )


def _role_to_response(role: GlobalRole) -> GlobalRoleResponse:
    return GlobalRoleResponse(
        id=role.id,
        name=role.name.value,
        description=role.description,
        permissions=sorted(role.permissions),
        active=role.active,
    )


def _permission_to_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        code=permission.code,
        description=permission.description,
        active=permission.active,
    )


def _binding_to_response(binding: UserTenantRole) -> UserTenantRoleResponse:
    return UserTenantRoleResponse(
        id=binding.id,
        user_id=binding.user_id,
        tenant_id=binding.tenant_id,
        roles=sorted(role.value for role in binding.roles),
    )


async def get_current_context(
    authorization: Optional[str] = Header(None),
    x_tenant_id: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Tenant-ID"
    ),
) -> TenantContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, tenant_hint=x_tenant_id)
    if not ctx:
        raise AuthenticationFailed("invalid_access_token")
    return ctx


def require_roles(*role_names: RoleName):
    """Dependency factory: the caller must hold one of ``role_names`` in the token's tenant."""

    async def _dependency(
        principal: TenantContext = Depends(get_current_context),
    ) -> TenantContext:
        runtime = get_runtime()
        runtime.roles.require_any_role(principal.user_id, principal.tenant_id, *role_names)
        return principal

    return _dependency


get_super_admin = require_roles(RoleName.SUPER_ADMIN)
get_tenant_admin = require_roles(RoleName.ADMIN, RoleName.SUPER_ADMIN)


def _guard_role_grant(principal: TenantContext, requested: Iterable[RoleName]) -> None:
    # Only a SUPER_ADMIN hands out SUPER_ADMIN
    if RoleName.SUPER_ADMIN not in set(requested):
        return
    runtime = get_runtime()
    if not runtime.roles.user_has_role(
        principal.user_id, principal.tenant_id, RoleName.SUPER_ADMIN
    ):
        raise ForbiddenError(
            "only a super admin can grant SUPER_ADMIN",
            detail={"role": RoleName.SUPER_ADMIN.value},
        )


def _require_tenant_member(principal: TenantContext, user_id: str) -> User:
    runtime = get_runtime()
    user = runtime.tenants.get_user(user_id)
    if not user or not runtime.tenants.is_member(user, principal.tenant_id):
        raise NotFoundError(
            "user not found in tenant",
            detail={"user_id": user_id, "tenant_id": principal.tenant_id},
        )
    return user


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    issued = await runtime.auth.sign_up(
        body.username,
        body.email,
        body.password,
        body.tenant_name,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_tokens_to_response(issued))


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest):
    runtime = get_runtime()
    issued = await runtime.auth.sign_in(body.username, body.password, body.tenant_id)
    return Envelope(status="ok", data=_tokens_to_response(issued))


@router.post("/auth/refresh/{tenant_id}", response_model=Envelope, tags=["auth"])
async def refresh_tokens(tenant_id: str, body: RefreshRequest):
    runtime = get_runtime()
    issued = await runtime.auth.refresh(body.refresh_token, tenant_id)
    return Envelope(status="ok", data=_tokens_to_response(issued))


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(
    authorization: Optional[str] = Header(None),
    principal: TenantContext = Depends(get_current_context),
):
    runtime = get_runtime()
    token = runtime.auth.extract_bearer(authorization)
    if not token:
        raise AuthenticationFailed("missing_access_token")
    await runtime.auth.sign_out(token)
    return Envelope(status="ok", data={"signed_out": True, "tenant_id": principal.tenant_id})


@router.post("/auth/switch-tenant", response_model=Envelope, tags=["auth"])
async def switch_tenant(
    body: SwitchTenantRequest,
    principal: TenantContext = Depends(get_current_context),
):
    runtime = get_runtime()
    issued = await runtime.auth.switch_tenant(principal, body.tenant_id)
    return Envelope(status="ok", data=_tokens_to_response(issued))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: TenantContext = Depends(get_current_context)):
    runtime = get_runtime()
    with tenant_scope(principal.tenant_id):
        user = runtime.auth.current_user(principal)
        roles = runtime.auth.current_roles(principal)
    data = _user_to_response(user, roles).model_dump(mode="json")
    data["current_tenant_id"] = principal.tenant_id
    return Envelope(status="ok", data=data)


@router.get("/auth/me/permissions", response_model=Envelope, tags=["auth"])
async def my_permissions(principal: TenantContext = Depends(get_current_context)):
    runtime = get_runtime()
    with tenant_scope(principal.tenant_id):
        permissions = runtime.auth.current_permissions(principal)
    return Envelope(
        status="ok",
        data={"tenant_id": principal.tenant_id, "permissions": sorted(permissions)},
    )


@router.get("/auth/user-tenants", response_model=Envelope, tags=["auth"])
async def user_tenants(principal: TenantContext = Depends(get_current_context)):
    runtime = get_runtime()
    tenants = runtime.auth.user_tenants(principal)
    return Envelope(
        status="ok", data={"items": [_tenant_to_response(t) for t in tenants]}
    )


# global roles


@router.get("/admin/roles/global/list", response_model=Envelope, tags=["admin"])
async def list_global_roles(principal: TenantContext = Depends(get_super_admin)):
    runtime = get_runtime()
    roles = runtime.roles.list_roles()
    return Envelope(status="ok", data={"items": [_role_to_response(r) for r in roles]})


@router.get("/admin/roles/global/permissions", response_model=Envelope, tags=["admin"])
async def list_global_permissions(principal: TenantContext = Depends(get_super_admin)):
    runtime = get_runtime()
    permissions = runtime.roles.list_permissions()
    return Envelope(
        status="ok",
        data={"items": [_permission_to_response(p) for p in permissions]},
    )


@router.post("/admin/roles/global/set-permissions", response_model=Envelope, tags=["admin"])
async def set_global_role_permissions(
    body: SetRolePermissionsRequest,
    principal: TenantContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    role = runtime.roles.set_role_permissions(body.role, body.permissions)
    logger.info(
        "admin_role_permissions_changed",
        actor_id=principal.user_id,
        role=role.name.value,
    )
    return Envelope(status="ok", data=_role_to_response(role))


# tenant roles


@router.get("/admin/roles/tenant/list", response_model=Envelope, tags=["admin"])
async def list_tenant_roles(principal: TenantContext = Depends(get_tenant_admin)):
    runtime = get_runtime()
    bindings = runtime.roles.list_tenant_bindings(principal.tenant_id)
    return Envelope(
        status="ok", data={"items": [_binding_to_response(b) for b in bindings]}
    )


@router.get(
    "/admin/roles/tenant/user/{user_id}/permissions",
    response_model=Envelope,
    tags=["admin"],
)
async def get_tenant_user_permissions(
    user_id: str, principal: TenantContext = Depends(get_tenant_admin)
):
    runtime = get_runtime()
    _require_tenant_member(principal, user_id)
    roles = runtime.roles.get_user_roles(user_id, principal.tenant_id)
    permissions = runtime.roles.resolve_permissions(user_id, principal.tenant_id)
    return Envelope(
        status="ok",
        data={
            "user_id": user_id,
            "tenant_id": principal.tenant_id,
            "roles": sorted(r.value for r in roles),
            "permissions": sorted(permissions),
        },
    )


@router.put(
    "/admin/roles/tenant/user/{user_id}/roles",
    response_model=Envelope,
    tags=["admin"],
)
async def update_tenant_user_roles(
    user_id: str,
    body: UpdateUserRolesRequest,
    principal: TenantContext = Depends(get_tenant_admin),
):
    runtime = get_runtime()
    roles = parse_role_names(body.roles)
    _guard_role_grant(principal, roles)
    _require_tenant_member(principal, user_id)
    with tenant_scope(principal.tenant_id):
        binding = runtime.roles.assign_roles_to_user(user_id, principal.tenant_id, roles)
    return Envelope(status="ok", data=_binding_to_response(binding))


# tenants


@router.get("/admin/tenants", response_model=Envelope, tags=["admin"])
async def admin_list_tenants(
    active_only: bool = False, principal: TenantContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    tenants = runtime.tenants.list_tenants(active_only=active_only)
    return Envelope(
        status="ok", data={"items": [_tenant_to_response(t) for t in tenants]}
    )


@router.post("/admin/tenants", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_tenant(
    body: CreateTenantRequest, principal: TenantContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    tenant = runtime.tenants.create_tenant(
        body.name, tenant_id=body.tenant_id, description=body.description
    )
    return Envelope(status="ok", data=_tenant_to_response(tenant))


@router.post("/admin/tenants/{tenant_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_tenant(
    tenant_id: str, principal: TenantContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    if tenant_id == principal.tenant_id:
        raise ForbiddenError("cannot deactivate the current tenant")
    tenant = runtime.tenants.deactivate(tenant_id)
    return Envelope(status="ok", data=_tenant_to_response(tenant))


@router.post("/admin/tenants/{tenant_id}/reactivate", response_model=Envelope, tags=["admin"])
async def admin_reactivate_tenant(
    tenant_id: str, principal: TenantContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    tenant = runtime.tenants.reactivate(tenant_id)
    return Envelope(status="ok", data=_tenant_to_response(tenant))


# tenant users


@router.get("/admin/tenant-users", response_model=Envelope, tags=["admin"])
async def admin_list_tenant_users(principal: TenantContext = Depends(get_tenant_admin)):
    runtime = get_runtime()
    items: List[UserResponse] = []
    for binding in runtime.roles.list_tenant_bindings(principal.tenant_id):
        user = runtime.tenants.get_user(binding.user_id)
        if user:
            items.append(_user_to_response(user, binding.roles))
    return Envelope(status="ok", data={"items": items})


@router.post("/admin/tenant-users", response_model=Envelope, tags=["admin"])
async def admin_add_user_to_tenant(
    body: AddUserToTenantRequest, principal: TenantContext = Depends(get_tenant_admin)
):
    """Bind an existing user, found by email, to the caller's tenant."""
    runtime = get_runtime()
    roles = parse_role_names(body.roles or [RoleName.USER])
    _guard_role_grant(principal, roles)
    user = runtime.tenants.get_user_by_email(body.email)
    if not user:
        raise NotFoundError("user not found", detail={"email": body.email})
    with tenant_scope(principal.tenant_id):
        runtime.tenants.ensure_username_free(user.username, principal.tenant_id, user_id=user.id)
        binding = runtime.roles.assign_roles_to_user(user.id, principal.tenant_id, roles)
    return Envelope(status="ok", data=_user_to_response(user, binding.roles))


@router.post(
    "/admin/tenant-users/create", response_model=Envelope, status_code=201, tags=["admin"]
)
async def admin_create_tenant_user(
    body: CreateTenantUserRequest, principal: TenantContext = Depends(get_tenant_admin)
):
    """Register a new user whose home tenant is the caller's tenant."""
    runtime = get_runtime()
    roles = parse_role_names(body.roles or [RoleName.USER])
    _guard_role_grant(principal, roles)
    with tenant_scope(principal.tenant_id):
        user = runtime.tenants.register_user(
            body.username,
            body.email,
            body.password,
            principal.tenant_id,
            first_name=body.first_name,
            last_name=body.last_name,
        )
        binding = runtime.roles.assign_roles_to_user(user.id, principal.tenant_id, roles)
    return Envelope(status="ok", data=_user_to_response(user, binding.roles))


@router.delete("/admin/tenant-users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_remove_user_from_tenant(
    user_id: str, principal: TenantContext = Depends(get_tenant_admin)
):
    runtime = get_runtime()
    if user_id == principal.user_id:
        raise ForbiddenError("cannot remove yourself from the tenant")
    user = _require_tenant_member(principal, user_id)
    with tenant_scope(principal.tenant_id):
        runtime.roles.remove_user_from_tenant(user_id, principal.tenant_id)
        revoked = runtime.refresh_tokens.revoke_all(user.username, principal.tenant_id)
    return Envelope(
        status="ok",
        data={"removed": True, "user_id": user_id, "refresh_tokens_revoked": revoked},
    )
