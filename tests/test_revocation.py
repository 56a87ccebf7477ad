from datetime import timedelta

from idprovider.service.revocation import RevocationRegistry


class _FailingCache:
    async def denylist_access_token(self, token, expires_at):
        raise ConnectionError("redis down")

    async def is_access_token_denylisted(self, token):
        raise ConnectionError("redis down")


class _RecordingCache:
    def __init__(self):
        self.keys = {}

    async def denylist_access_token(self, token, expires_at):
        self.keys[token] = expires_at

    async def is_access_token_denylisted(self, token):
        return token in self.keys


async def test_blacklisted_until_expiry(services):
    expires = services.clock() + timedelta(minutes=10)
    await services.revocation.add_to_blacklist("tok", "alice", "acme", expires)

    assert await services.revocation.is_blacklisted("tok") is True
    services.clock.advance(minutes=10)
    assert await services.revocation.is_blacklisted("tok") is True
    services.clock.advance(seconds=1)
    assert await services.revocation.is_blacklisted("tok") is False


async def test_unknown_token_is_not_blacklisted(services):
    assert await services.revocation.is_blacklisted("never-seen") is False


async def test_adding_twice_keeps_one_entry(services):
    expires = services.clock() + timedelta(minutes=10)
    first = await services.revocation.add_to_blacklist("tok", "alice", "acme", expires)
    second = await services.revocation.add_to_blacklist("tok", "alice", "acme", expires)

    assert first.id == second.id
    assert len(services.store.revoked_tokens) == 1


async def test_purge_expired_only_keeps_live_entries(services):
    now = services.clock()
    await services.revocation.add_to_blacklist("old", "alice", "acme", now - timedelta(seconds=1))
    await services.revocation.add_to_blacklist("live", "alice", "acme", now + timedelta(minutes=5))
    await services.revocation.add_to_blacklist("other", "bob", "acme", now - timedelta(seconds=1))

    removed = services.revocation.purge_user_entries("alice", "acme", expired_only=True)

    assert removed == 1
    assert await services.revocation.is_blacklisted("live") is True
    assert services.store.get_revoked_token("other") is not None


async def test_purge_all_user_entries(services):
    now = services.clock()
    await services.revocation.add_to_blacklist("a", "alice", "acme", now + timedelta(minutes=5))
    await services.revocation.add_to_blacklist("b", "alice", "acme", now + timedelta(minutes=5))

    assert services.revocation.purge_user_entries("alice", "acme") == 2


async def test_clean_expired(services):
    now = services.clock()
    await services.revocation.add_to_blacklist("old", "alice", "acme", now - timedelta(seconds=5))
    await services.revocation.add_to_blacklist("live", "bob", "acme", now + timedelta(minutes=5))

    assert services.revocation.clean_expired() == 1
    assert services.store.get_revoked_token("old") is None
    assert services.store.get_revoked_token("live") is not None


async def test_cache_failure_falls_back_to_store(memory_store, clock):
    registry = RevocationRegistry(memory_store, _FailingCache(), clock=clock)
    await registry.add_to_blacklist("tok", "alice", "acme", clock() + timedelta(minutes=1))

    assert await registry.is_blacklisted("tok") is True
    assert await registry.is_blacklisted("other") is False


async def test_cache_is_written_and_consulted(memory_store, clock):
    cache = _RecordingCache()
    registry = RevocationRegistry(memory_store, cache, clock=clock)
    await registry.add_to_blacklist("tok", "alice", "acme", clock() + timedelta(minutes=1))

    assert "tok" in cache.keys
    # A cache hit answers without the store row
    memory_store.revoked_tokens.clear()
    assert await registry.is_blacklisted("tok") is True
