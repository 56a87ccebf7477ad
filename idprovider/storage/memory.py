from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from idprovider.logging import get_logger
from idprovider.storage.errors import ConstraintViolation
from idprovider.storage.models import (
    GlobalRole,
    Permission,
    RefreshToken,
    RevokedToken,
    RoleName,
    Tenant,
    User,
    UserTenantRole,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/idprovider", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.permissions: Dict[str, Permission] = {}
        self.global_roles: Dict[RoleName, GlobalRole] = {}
        self.user_tenant_roles: Dict[tuple[str, str], UserTenantRole] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.revoked_tokens: Dict[str, RevokedToken] = {}
        # RLock for all data operations; nested acquisitions happen when a
        # write helper calls a read helper on the same thread
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def ping(self) -> bool:
        return True

    # tenants
    def create_tenant(
        self, tenant_id: str, name: str, description: Optional[str] = None
    ) -> Tenant:
        with self._data_lock:
            if tenant_id in self.tenants:
                raise ConstraintViolation(
                    "tenant already exists", {"field": "tenant_id", "tenant_id": tenant_id}
                )
            tenant = Tenant(
                id=new_id(), tenant_id=tenant_id, name=name, description=description
            )
            self.tenants[tenant_id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def list_tenants(self, *, active_only: bool = False) -> List[Tenant]:
        with self._data_lock:
            results = [
                t for t in self.tenants.values() if t.active or not active_only
            ]
            return sorted(results, key=lambda t: t.created_at)

    def set_tenant_active(self, tenant_id: str, active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.active = active
            tenant.updated_at = utcnow()
            self._persist_state()
            return tenant

    # users
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
    ) -> User:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self.get_user_by_username(username, tenant_id):
                raise ConstraintViolation(
                    "username already exists in tenant", {"field": "username"}
                )
            user = User(
                id=new_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                tenant_id=tenant_id,
                first_name=first_name,
                last_name=last_name,
                active=active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_username(self, username: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.username == username and u.tenant_id == tenant_id
                ),
                None,
            )

    def find_users_by_username(self, username: str) -> List[User]:
        with self._data_lock:
            return [u for u in self.users.values() if u.username == username]

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.active = active
            user.updated_at = utcnow()
            self._persist_state()
            return user

    # permissions and roles
    def get_permission(self, code: str) -> Optional[Permission]:
        with self._data_lock:
            return self.permissions.get(code)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: p.code)

    def upsert_permission(
        self, code: str, description: Optional[str] = None
    ) -> tuple[Permission, bool]:
        """Return the permission for ``code`` and whether it was created."""
        with self._data_lock:
            existing = self.permissions.get(code)
            if existing:
                return existing, False
            permission = Permission(id=new_id(), code=code, description=description)
            self.permissions[code] = permission
            self._persist_state()
            return permission, True

    def get_global_role(self, name: RoleName) -> Optional[GlobalRole]:
        with self._data_lock:
            return self.global_roles.get(name)

    def list_global_roles(self) -> List[GlobalRole]:
        with self._data_lock:
            order = list(RoleName)
            return sorted(self.global_roles.values(), key=lambda r: order.index(r.name))

    def ensure_global_role(
        self, name: RoleName, description: Optional[str] = None
    ) -> tuple[GlobalRole, bool]:
        with self._data_lock:
            existing = self.global_roles.get(name)
            if existing:
                return existing, False
            role = GlobalRole(id=new_id(), name=name, description=description)
            self.global_roles[name] = role
            self._persist_state()
            return role, True

    def set_global_role_permissions(
        self, name: RoleName, codes: Iterable[str]
    ) -> Optional[GlobalRole]:
        with self._data_lock:
            role = self.global_roles.get(name)
            if not role:
                return None
            codes = set(codes)
            missing = sorted(code for code in codes if code not in self.permissions)
            if missing:
                raise ConstraintViolation(
                    "unknown permission codes", {"codes": missing}
                )
            role.permissions = codes
            self._persist_state()
            return role

    # user/tenant bindings
    def get_user_tenant_role(self, user_id: str, tenant_id: str) -> Optional[UserTenantRole]:
        with self._data_lock:
            return self.user_tenant_roles.get((user_id, tenant_id))

    def upsert_user_tenant_role(
        self, user_id: str, tenant_id: str, roles: Iterable[RoleName]
    ) -> UserTenantRole:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            key = (user_id, tenant_id)
            binding = self.user_tenant_roles.get(key)
            if binding:
                binding.roles = set(roles)
            else:
                binding = UserTenantRole(
                    id=new_id(), user_id=user_id, tenant_id=tenant_id, roles=set(roles)
                )
                self.user_tenant_roles[key] = binding
            self._persist_state()
            return binding

    def delete_user_tenant_role(self, user_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            removed = self.user_tenant_roles.pop((user_id, tenant_id), None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_user_tenant_roles(
        self, *, tenant_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[UserTenantRole]:
        with self._data_lock:
            return [
                b
                for b in self.user_tenant_roles.values()
                if (tenant_id is None or b.tenant_id == tenant_id)
                and (user_id is None or b.user_id == user_id)
            ]

    # refresh tokens
    def rotate_refresh_token(self, token: RefreshToken) -> int:
        """Revoke every token of the pair and insert ``token`` as one step."""
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            revoked = self._revoke_pair(token.username, token.tenant_id)
            self.refresh_tokens[token.token] = token
            self._persist_state()
            return revoked

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def revoke_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.revoked:
                return False
            record.revoked = True
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, username: str, tenant_id: str) -> int:
        with self._data_lock:
            revoked = self._revoke_pair(username, tenant_id)
            if revoked:
                self._persist_state()
            return revoked

    def _revoke_pair(self, username: str, tenant_id: str) -> int:
        count = 0
        for record in self.refresh_tokens.values():
            if (
                record.username == username
                and record.tenant_id == tenant_id
                and not record.revoked
            ):
                record.revoked = True
                count += 1
        return count

    def list_refresh_tokens(self, username: str, tenant_id: str) -> List[RefreshToken]:
        with self._data_lock:
            results = [
                r
                for r in self.refresh_tokens.values()
                if r.username == username and r.tenant_id == tenant_id
            ]
            return sorted(results, key=lambda r: r.created_at)

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [k for k, r in self.refresh_tokens.items() if r.expires_at < before]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # revoked access tokens
    def add_revoked_token(self, entry: RevokedToken) -> RevokedToken:
        with self._data_lock:
            existing = self.revoked_tokens.get(entry.token)
            if existing:
                return existing
            self.revoked_tokens[entry.token] = entry
            self._persist_state()
            return entry

    def get_revoked_token(self, token: str) -> Optional[RevokedToken]:
        with self._data_lock:
            return self.revoked_tokens.get(token)

    def delete_user_revoked_tokens(
        self, username: str, tenant_id: str, *, before: Optional[datetime] = None
    ) -> int:
        with self._data_lock:
            stale = [
                k
                for k, e in self.revoked_tokens.items()
                if e.username == username
                and e.tenant_id == tenant_id
                and (before is None or e.expires_at < before)
            ]
            for key in stale:
                self.revoked_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_revoked_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [k for k, e in self.revoked_tokens.items() if e.expires_at < before]
            for key in stale:
                self.revoked_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "permissions": [
                {"id": p.id, "code": p.code, "description": p.description, "active": p.active}
                for p in self.permissions.values()
            ],
            "global_roles": [
                {
                    "id": r.id,
                    "name": r.name.value,
                    "description": r.description,
                    "permissions": sorted(r.permissions),
                    "active": r.active,
                }
                for r in self.global_roles.values()
            ],
            "user_tenant_roles": [
                {
                    "id": b.id,
                    "user_id": b.user_id,
                    "tenant_id": b.tenant_id,
                    "roles": sorted(role.value for role in b.roles),
                }
                for b in self.user_tenant_roles.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "revoked_tokens": [
                self._serialize_revoked_token(e) for e in self.revoked_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["tenant_id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.permissions = {
            p["code"]: Permission(
                id=p["id"],
                code=p["code"],
                description=p.get("description"),
                active=p.get("active", True),
            )
            for p in data.get("permissions", [])
        }
        self.global_roles = {}
        for raw in data.get("global_roles", []):
            role = GlobalRole(
                id=raw["id"],
                name=RoleName(raw["name"]),
                description=raw.get("description"),
                permissions=set(raw.get("permissions", [])),
                active=raw.get("active", True),
            )
            self.global_roles[role.name] = role
        self.user_tenant_roles = {}
        for raw in data.get("user_tenant_roles", []):
            binding = UserTenantRole(
                id=raw["id"],
                user_id=raw["user_id"],
                tenant_id=raw["tenant_id"],
                roles={RoleName(name) for name in raw.get("roles", [])},
            )
            self.user_tenant_roles[(binding.user_id, binding.tenant_id)] = binding
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.revoked_tokens = {
            e["token"]: self._deserialize_revoked_token(e)
            for e in data.get("revoked_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            tenants=len(self.tenants),
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "tenant_id": tenant.tenant_id,
            "name": tenant.name,
            "description": tenant.description,
            "active": tenant.active,
            "created_at": self._serialize_datetime(tenant.created_at),
            "updated_at": self._serialize_datetime(tenant.updated_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=data["id"],
            tenant_id=data["tenant_id"],
            name=data["name"],
            description=data.get("description"),
            active=data.get("active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "tenant_id": user.tenant_id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "active": user.active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            tenant_id=data["tenant_id"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            active=data.get("active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "token": record.token,
            "username": record.username,
            "tenant_id": record.tenant_id,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "user_id": record.user_id,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token=data["token"],
            username=data["username"],
            tenant_id=data["tenant_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=data.get("revoked", False),
            user_id=data.get("user_id"),
        )

    def _serialize_revoked_token(self, entry: RevokedToken) -> dict:
        return {
            "id": entry.id,
            "token": entry.token,
            "username": entry.username,
            "tenant_id": entry.tenant_id,
            "revoked_at": self._serialize_datetime(entry.revoked_at),
            "expires_at": self._serialize_datetime(entry.expires_at),
        }

    def _deserialize_revoked_token(self, data: dict) -> RevokedToken:
        return RevokedToken(
            id=data["id"],
            token=data["token"],
            username=data["username"],
            tenant_id=data["tenant_id"],
            revoked_at=self._deserialize_datetime(data["revoked_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
