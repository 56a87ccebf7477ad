import asyncio
from datetime import timedelta

from idprovider.service.cleanup import TokenCleanupWorker


async def test_run_once_sweeps_dead_rows(services):
    services.refresh_tokens.generate("alice", "acme")
    now = services.clock()
    await services.revocation.add_to_blacklist("dead", "alice", "acme", now - timedelta(seconds=1))
    await services.revocation.add_to_blacklist("live", "alice", "acme", now + timedelta(minutes=5))
    services.clock.advance(days=31)
    live = services.refresh_tokens.generate("bob", "acme")
    await services.revocation.add_to_blacklist(
        "fresh", "bob", "acme", services.clock() + timedelta(minutes=5)
    )

    worker = TokenCleanupWorker(services.refresh_tokens, services.revocation, interval=1)
    result = worker.run_once()

    assert result.refresh_tokens_removed == 1
    assert result.blacklist_entries_removed == 2
    assert services.refresh_tokens.get(live.token) is not None
    assert await services.revocation.is_blacklisted("fresh") is True


async def test_start_and_stop(services):
    worker = TokenCleanupWorker(services.refresh_tokens, services.revocation, interval=3600)

    await worker.start()
    assert worker.running is True
    await worker.start()
    await asyncio.sleep(0.05)
    await worker.stop()

    assert worker.running is False


class _ExplodingManager:
    def __init__(self):
        self.calls = 0

    def clean_expired(self):
        self.calls += 1
        raise RuntimeError("db unavailable")


async def test_loop_survives_errors(services):
    manager = _ExplodingManager()
    worker = TokenCleanupWorker(manager, services.revocation, interval=0)

    await worker.start()
    await asyncio.sleep(0.1)
    await worker.stop()

    assert manager.calls >= 2
