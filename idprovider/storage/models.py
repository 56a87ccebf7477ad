from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RoleName(str, Enum):
    USER = "USER"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

    @property
    def description(self) -> str:
        return ROLE_DESCRIPTIONS[self]


ROLE_DESCRIPTIONS = {
    RoleName.USER: "Basic user with limited access",
    RoleName.MODERATOR: "Moderator with content management permissions",
    RoleName.ADMIN: "Administrator with tenant-level management permissions",
    RoleName.SUPER_ADMIN: "Super administrator with system-wide access",
}


@dataclass
class Tenant:
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    tenant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    code: str
    description: Optional[str] = None
    active: bool = True


@dataclass
class GlobalRole:
    id: str
    name: RoleName
    description: Optional[str] = None
    permissions: Set[str] = field(default_factory=set)
    active: bool = True


@dataclass
class UserTenantRole:
    id: str
    user_id: str
    tenant_id: str
    roles: Set[RoleName] = field(default_factory=set)


class RefreshTokenState(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass
class RefreshToken:
    id: str
    token: str
    username: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    # Id of the user the token was minted for
    user_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        username: str,
        tenant_id: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=new_id(),
            token=secrets.token_urlsafe(48),
            username=username,
            tenant_id=tenant_id,
            created_at=issued,
            expires_at=issued + ttl,
            user_id=user_id,
        )

    def state(self, now: Optional[datetime] = None) -> RefreshTokenState:
        """Revocation wins over expiry; expiry is derived from the clock."""
        if self.revoked:
            return RefreshTokenState.REVOKED
        if (now or utcnow()) > self.expires_at:
            return RefreshTokenState.EXPIRED
        return RefreshTokenState.ACTIVE

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) is RefreshTokenState.ACTIVE


@dataclass
class RevokedToken:
    id: str
    token: str
    username: str
    tenant_id: str
    revoked_at: datetime
    expires_at: datetime

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) <= self.expires_at
