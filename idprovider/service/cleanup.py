"""Background sweep of dead token rows.

Expired refresh tokens and blacklist entries already fail validation; the
sweep only reclaims storage, so running late is harmless.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from idprovider.logging import get_logger
from idprovider.service.refresh_tokens import RefreshTokenManager
from idprovider.service.revocation import RevocationRegistry

logger = get_logger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 6 * 60 * 60


@dataclass(frozen=True)
class CleanupResult:
    refresh_tokens_removed: int
    blacklist_entries_removed: int


class TokenCleanupWorker:
    """Periodically deletes expired refresh tokens and blacklist entries."""

    def __init__(
        self,
        refresh_tokens: RefreshTokenManager,
        revocation: RevocationRegistry,
        *,
        interval: int = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self.refresh_tokens = refresh_tokens
        self.revocation = revocation
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> CleanupResult:
        refresh_removed = self.refresh_tokens.clean_expired()
        blacklist_removed = self.revocation.clean_expired()
        logger.info(
            "token_cleanup_completed",
            refresh_tokens_removed=refresh_removed,
            blacklist_entries_removed=blacklist_removed,
        )
        return CleanupResult(
            refresh_tokens_removed=refresh_removed,
            blacklist_entries_removed=blacklist_removed,
        )

    async def start(self) -> None:
        if self._running:
            logger.warning("token_cleanup_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_cleanup_worker_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_cleanup_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                # Store calls are blocking; keep them off the event loop
                await asyncio.to_thread(self.run_once)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_cleanup_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "token_cleanup_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
