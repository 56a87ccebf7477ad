import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="idprovider_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blacklist checks go to the store only unless a run opts into Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from idprovider.service.runtime import reset_runtime_for_tests  # noqa: E402
from idprovider.service.tenant_context import clear as clear_tenant_context  # noqa: E402


class FakeClock:
    """Settable clock handed to services in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FastPasswordVerifier:
    """Plain-text stand-in so unit tests skip argon2's cost."""

    def hash(self, password: str) -> str:
        return f"plain${password}"

    def verify(self, password: str, hashed: str) -> bool:
        return hashed == f"plain${password}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_passwords():
    return FastPasswordVerifier()


@pytest.fixture
def memory_store():
    from idprovider.storage.memory import MemoryStore

    return MemoryStore(fs_root=_test_tmp_dir, persist=False)


@pytest.fixture
def services(memory_store, clock, fast_passwords):
    """Fully wired services over a fresh memory store and a fake clock."""
    from idprovider.service.auth import AuthService
    from idprovider.service.refresh_tokens import RefreshTokenManager
    from idprovider.service.revocation import RevocationRegistry
    from idprovider.service.roles import RoleService
    from idprovider.service.tenants import TenantService
    from idprovider.service.tokens import TokenService

    revocation = RevocationRegistry(memory_store, clock=clock)
    tokens = TokenService(
        "unit-test-secret-unit-test-secret-0123",
        revocation,
        ttl=timedelta(seconds=900),
        clock=clock,
    )
    refresh_tokens = RefreshTokenManager(memory_store, ttl=timedelta(days=30), clock=clock)
    roles = RoleService(memory_store)
    tenants = TenantService(memory_store, fast_passwords)
    auth = AuthService(tenants, roles, tokens, refresh_tokens, revocation, fast_passwords)
    roles.initialize_global_roles()
    roles.initialize_default_permissions()
    return SimpleNamespace(
        store=memory_store,
        clock=clock,
        revocation=revocation,
        tokens=tokens,
        refresh_tokens=refresh_tokens,
        roles=roles,
        tenants=tenants,
        auth=auth,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    clear_tenant_context()
    yield
    clear_tenant_context()
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
