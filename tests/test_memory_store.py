from datetime import timedelta

import pytest

from idprovider.storage.errors import ConstraintViolation
from idprovider.storage.memory import MemoryStore
from idprovider.storage.models import RefreshToken, RevokedToken, RoleName, new_id, utcnow


def _seed(store):
    store.create_tenant("acme", "Acme Corp")
    user = store.create_user("alice", "alice@acme.test", "hash", "acme", first_name="Alice")
    store.upsert_permission("VIEW_REPORTS", "View reports")
    store.ensure_global_role(RoleName.ADMIN, RoleName.ADMIN.description)
    store.set_global_role_permissions(RoleName.ADMIN, {"VIEW_REPORTS"})
    store.upsert_user_tenant_role(user.id, "acme", {RoleName.ADMIN})
    return user


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _seed(store)
    refresh = RefreshToken.new("alice", "acme", timedelta(days=30), user_id=user.id)
    store.rotate_refresh_token(refresh)
    store.add_revoked_token(
        RevokedToken(
            id=new_id(),
            token="revoked-access",
            username="alice",
            tenant_id="acme",
            revoked_at=utcnow(),
            expires_at=utcnow() + timedelta(minutes=15),
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user(user.id).first_name == "Alice"
    assert reloaded.get_user_tenant_role(user.id, "acme").roles == {RoleName.ADMIN}
    assert reloaded.get_global_role(RoleName.ADMIN).permissions == {"VIEW_REPORTS"}
    assert reloaded.get_refresh_token(refresh.token).expires_at == refresh.expires_at
    assert reloaded.get_refresh_token(refresh.token).user_id == user.id
    assert reloaded.get_revoked_token("revoked-access") is not None


def test_non_persistent_store_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    _seed(store)
    assert not (tmp_path / "state").exists()


def test_user_constraints(memory_store):
    memory_store.create_tenant("acme", "Acme Corp")
    memory_store.create_user("alice", "alice@acme.test", "hash", "acme")

    with pytest.raises(ConstraintViolation):
        memory_store.create_user("alice", "other@acme.test", "hash", "acme")
    with pytest.raises(ConstraintViolation):
        memory_store.create_user("bob", "alice@acme.test", "hash", "acme")
    with pytest.raises(ConstraintViolation):
        memory_store.create_user("carol", "carol@x.test", "hash", "missing")


def test_binding_requires_user_and_tenant(memory_store):
    memory_store.create_tenant("acme", "Acme Corp")
    with pytest.raises(ConstraintViolation):
        memory_store.upsert_user_tenant_role("ghost", "acme", {RoleName.USER})


def test_role_permissions_must_exist(memory_store):
    memory_store.ensure_global_role(RoleName.USER)
    with pytest.raises(ConstraintViolation):
        memory_store.set_global_role_permissions(RoleName.USER, {"NOT_A_CODE"})
    assert memory_store.set_global_role_permissions(RoleName.ADMIN, set()) is None


def test_rotate_rejects_duplicate_token_string(memory_store):
    record = RefreshToken.new("alice", "acme", timedelta(days=1))
    memory_store.rotate_refresh_token(record)
    with pytest.raises(ConstraintViolation):
        memory_store.rotate_refresh_token(record)


def test_list_tenants_active_only(memory_store):
    memory_store.create_tenant("acme", "Acme Corp")
    memory_store.create_tenant("globex", "Globex")
    memory_store.set_tenant_active("globex", False)

    assert [t.tenant_id for t in memory_store.list_tenants(active_only=True)] == ["acme"]
    assert len(memory_store.list_tenants()) == 2
