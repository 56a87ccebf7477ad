"""Sign-in, refresh, sign-out and tenant switching through AuthService."""

import pytest

from idprovider.service.errors import AuthenticationFailed, ConflictError, ForbiddenError
from idprovider.service.tenant_context import TenantContext, get_current_tenant
from idprovider.storage.models import RoleName


@pytest.fixture
def acme(services):
    services.tenants.create_tenant("Acme Corp", tenant_id="acme")
    services.tenants.create_tenant("Globex Inc", tenant_id="globex")
    alice = services.tenants.register_user("alice", "alice@acme.test", "correct-horse", "acme")
    services.roles.assign_roles_to_user(alice.id, "acme", [RoleName.USER])
    return alice


def _bearer(token):
    return f"Bearer {token}"


async def test_full_session_lifecycle(services, acme):
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")
    assert issued.expires_in == 900
    assert issued.roles == ["USER"]
    assert (await services.tokens.validate(issued.access_token)).valid

    refreshed = await services.auth.refresh(issued.refresh_token, "acme")
    assert refreshed.refresh_token != issued.refresh_token
    assert services.refresh_tokens.validate(issued.refresh_token) is False

    await services.auth.sign_out(refreshed.access_token)

    assert (await services.tokens.validate(refreshed.access_token)).valid is False
    assert services.refresh_tokens.validate(refreshed.refresh_token) is False
    assert services.refresh_tokens.active_tokens("alice", "acme") == []
    with pytest.raises(AuthenticationFailed):
        await services.auth.refresh(refreshed.refresh_token, "acme")


@pytest.mark.parametrize(
    "username,password,tenant_id,reason",
    [
        ("alice", "wrong", "acme", "invalid_credentials"),
        ("nobody", "correct-horse", "acme", "user_not_found"),
        ("alice", "correct-horse", "globex", "user_not_found"),
        ("alice", "correct-horse", "missing", "tenant_not_found"),
    ],
)
async def test_sign_in_failures_look_identical(
    services, acme, username, password, tenant_id, reason
):
    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.sign_in(username, password, tenant_id)

    assert excinfo.value.message == "authentication failed"
    assert excinfo.value.status_code == 401
    assert excinfo.value.reason == reason
    assert get_current_tenant() is None


async def test_sign_in_inactive_user(services, acme):
    services.tenants.set_user_active(acme.id, False)
    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.sign_in("alice", "correct-horse", "acme")
    assert excinfo.value.reason == "user_inactive"


async def test_sign_in_inactive_tenant(services, acme):
    services.tenants.deactivate("acme")
    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.sign_in("alice", "correct-horse", "acme")
    assert excinfo.value.reason == "tenant_not_found"


async def test_refresh_for_other_tenant_is_rejected(services, acme):
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")

    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.refresh(issued.refresh_token, "globex")

    assert excinfo.value.reason == "token_tenant_mismatch"
    assert services.refresh_tokens.validate(issued.refresh_token) is True


async def test_refresh_after_expiry(services, acme):
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")
    services.clock.advance(days=31)

    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.refresh(issued.refresh_token, "acme")
    assert excinfo.value.reason == "token_expired"


async def test_sign_in_twice_keeps_one_refresh_token(services, acme):
    first = await services.auth.sign_in("alice", "correct-horse", "acme")
    second = await services.auth.sign_in("alice", "correct-horse", "acme")

    active = services.refresh_tokens.active_tokens("alice", "acme")
    assert [r.token for r in active] == [second.refresh_token]
    assert services.refresh_tokens.validate(first.refresh_token) is False


async def test_sign_out_rejects_forged_token(services, acme):
    with pytest.raises(AuthenticationFailed):
        await services.auth.sign_out("not-a-token")


async def test_sign_out_refuses_spent_or_expired_tokens(services, acme):
    first = await services.auth.sign_in("alice", "correct-horse", "acme")
    await services.auth.sign_out(first.access_token)

    second = await services.auth.sign_in("alice", "correct-horse", "acme")
    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.sign_out(first.access_token)
    assert excinfo.value.reason == "token_blacklisted"
    assert services.refresh_tokens.validate(second.refresh_token) is True

    services.clock.advance(seconds=901)
    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.sign_out(second.access_token)
    assert excinfo.value.reason == "token_expired"
    assert services.refresh_tokens.validate(second.refresh_token) is True


async def test_sign_out_keeps_sessions_in_other_tenants(services, acme):
    services.roles.assign_roles_to_user(acme.id, "globex", [RoleName.USER])
    home = await services.auth.sign_in("alice", "correct-horse", "acme")
    away = await services.auth.sign_in("alice", "correct-horse", "globex")

    await services.auth.sign_out(home.access_token)

    assert (await services.tokens.validate(away.access_token)).valid
    assert services.refresh_tokens.validate(away.refresh_token)


async def test_authenticate(services, acme):
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")

    ctx = await services.auth.authenticate(_bearer(issued.access_token))
    assert ctx == TenantContext(tenant_id="acme", user_id=acme.id, username="alice")

    assert await services.auth.authenticate(None) is None
    assert await services.auth.authenticate("Basic abc") is None
    assert await services.auth.authenticate("Bearer ") is None
    assert (
        await services.auth.authenticate(_bearer(issued.access_token), tenant_hint="globex")
        is None
    )

    services.tenants.set_user_active(acme.id, False)
    assert await services.auth.authenticate(_bearer(issued.access_token)) is None


async def test_switch_tenant(services, acme):
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")
    ctx = await services.auth.authenticate(_bearer(issued.access_token))

    with pytest.raises(AuthenticationFailed):
        await services.auth.switch_tenant(ctx, "globex")

    services.roles.assign_roles_to_user(acme.id, "globex", [RoleName.ADMIN])
    switched = await services.auth.switch_tenant(ctx, "globex")

    assert switched.tenant_id == "globex"
    assert switched.roles == ["ADMIN"]
    claims = services.tokens.decode_claims(switched.access_token)
    assert claims.tenant_id == "globex"


async def test_current_permissions(services, acme):
    services.roles.set_role_permissions("USER", ["VIEW_DASHBOARD"])
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")
    ctx = await services.auth.authenticate(_bearer(issued.access_token))

    assert services.auth.current_permissions(ctx) == {"VIEW_DASHBOARD"}
    assert services.auth.current_roles(ctx) == {RoleName.USER}
    assert services.auth.current_user(ctx).email == "alice@acme.test"
    assert [t.tenant_id for t in services.auth.user_tenants(ctx)] == ["acme"]


async def test_sign_up_creates_tenant_and_admin(services):
    issued = await services.auth.sign_up(
        "bob", "bob@initech.test", "tps-reports-1", "Initech Labs"
    )

    assert issued.tenant_id == "initech-labs"
    assert issued.roles == ["ADMIN"]
    assert services.tenants.require_active_tenant("initech-labs").name == "Initech Labs"
    assert (await services.tokens.validate(issued.access_token)).valid


async def test_sign_up_conflicts(services, acme):
    with pytest.raises(ConflictError):
        await services.auth.sign_up("bob", "bob@x.test", "pw-123456", "ACME")
    with pytest.raises(ConflictError):
        await services.auth.sign_up("bob", "alice@acme.test", "pw-123456", "Fresh Tenant")
    assert services.tenants.get_tenant("fresh-tenant") is None


async def test_sign_up_disabled(services):
    services.auth.allow_signup = False
    with pytest.raises(ForbiddenError):
        await services.auth.sign_up("bob", "bob@x.test", "pw-123456", "Initech")


async def test_home_user_cannot_take_a_bound_username(services, acme):
    services.roles.assign_roles_to_user(acme.id, "globex", [RoleName.USER])

    with pytest.raises(ConflictError):
        services.tenants.register_user("alice", "alice@globex.test", "pw-123456", "globex")


async def test_tokens_stay_with_their_user_when_name_is_reused(services, acme):
    services.roles.assign_roles_to_user(acme.id, "globex", [RoleName.USER])
    issued = await services.auth.sign_in("alice", "correct-horse", "globex")

    # A same-named home user written straight to the store
    newcomer = services.store.create_user(
        "alice", "alice@globex.test", services.auth.passwords.hash("other-pass"), "globex"
    )
    services.roles.assign_roles_to_user(newcomer.id, "globex", [RoleName.ADMIN])

    assert await services.auth.authenticate(_bearer(issued.access_token)) is None
    with pytest.raises(AuthenticationFailed) as excinfo:
        await services.auth.refresh(issued.refresh_token, "globex")
    assert excinfo.value.reason == "token_subject_mismatch"


async def test_access_token_without_user_id_is_rejected(services, acme):
    token = services.tokens.issue_access_token("alice", "acme")

    assert (await services.tokens.validate(token)).valid is True
    assert await services.auth.authenticate(_bearer(token)) is None


async def test_issued_tokens_name_the_user(services, acme):
    issued = await services.auth.sign_in("alice", "correct-horse", "acme")

    assert services.tokens.decode_claims(issued.access_token).user_id == acme.id
    assert services.refresh_tokens.get(issued.refresh_token).user_id == acme.id
