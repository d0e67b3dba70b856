from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from clinicrecords.config import Settings, get_settings
from clinicrecords.logging import get_logger
from clinicrecords.service.auth import AuthService
from clinicrecords.service.patients import PatientService
from clinicrecords.service.rate_limit import IPRateLimiter
from clinicrecords.storage.memory import MemoryStore

logger = get_logger(__name__)

SESSION_PURGE_INTERVAL_SECONDS = 15 * 60


class Runtime:
    """Holds the service instances for one FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[MemoryStore] = None):
        self.settings = settings or get_settings()
        # Fails fast on missing or weak signing secrets
        self.token_config = self.settings.token_config()
        self.store = store or MemoryStore()
        self.auth = AuthService(
            self.store,
            self.token_config,
            session_ttl=self.settings.session_ttl,
            default_pin=self.settings.default_pin,
        )
        self.patients = PatientService(
            self.store,
            default_page_size=self.settings.default_page_size,
            max_page_size=self.settings.max_page_size,
        )
        self.limiter = IPRateLimiter(
            self.settings.rate_limit_rps,
            self.settings.rate_limit_burst,
            ttl_seconds=self.settings.rate_limit_entry_ttl_seconds,
            sweep_interval_seconds=self.settings.rate_limit_sweep_interval_seconds,
        )
        self._purge_task: Optional[asyncio.Task] = None
        logger.info(
            "runtime_initialized",
            rate_limit_rps=self.settings.rate_limit_rps,
            rate_limit_burst=self.settings.rate_limit_burst,
            session_ttl_hours=self.settings.session_ttl_hours,
        )

    async def start(self) -> None:
        self.limiter.start()
        self._purge_task = asyncio.get_running_loop().create_task(self._purge_sessions())

    async def _purge_sessions(self) -> None:
        try:
            while True:
                await asyncio.sleep(SESSION_PURGE_INTERVAL_SECONDS)
                try:
                    removed = self.auth.purge_expired_sessions()
                except Exception as exc:  # pragma: no cover - best-effort cleanup
                    logger.warning("session_purge_failed", error=str(exc))
                    continue
                if removed:
                    logger.info("expired_sessions_purged", count=removed)
        except asyncio.CancelledError:
            logger.info("session_purge_task_cancelled")
            raise

    async def close(self) -> None:
        await self.limiter.stop()
        task, self._purge_task = self._purge_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("runtime_closed")


__all__ = ["Runtime"]
