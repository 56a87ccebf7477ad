from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional

# One value per thread / asyncio task; never shared between requests
_current_tenant: ContextVar[Optional[str]] = ContextVar("current_tenant", default=None)


@dataclass(frozen=True)
class TenantContext:
    """Authenticated principal threaded through request-scoped calls."""

    tenant_id: str
    user_id: str
    username: str


def set_current_tenant(tenant_id: Optional[str]) -> None:
    _current_tenant.set(tenant_id)


def get_current_tenant() -> Optional[str]:
    return _current_tenant.get()


def clear() -> None:
    _current_tenant.set(None)


@contextmanager
def tenant_scope(tenant_id: Optional[str]) -> Iterator[Optional[str]]:
    """Bind ``tenant_id`` for the block and restore the previous value on exit.

    The restore runs on success and on exception, so a reused thread or task
    never observes a tenant left over from earlier work.
    """
    token = _current_tenant.set(tenant_id)
    try:
        yield tenant_id
    finally:
        _current_tenant.reset(token)


__all__ = [
    "TenantContext",
    "set_current_tenant",
    "get_current_tenant",
    "clear",
    "tenant_scope",
]
