from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from clinicrecords.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ENTRY_TTL_SECONDS = 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 10 * 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float
    last_seen: float


class IPRateLimiter:
    """Token bucket per client IP with periodic eviction of idle entries.

    ``rate`` is tokens added per second, ``burst`` the bucket capacity. All
    access to the bucket map goes through ``_lock``; no critical section
    awaits, so a single ``asyncio.Lock`` serializes consumption and sweeping.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        ttl_seconds: float = DEFAULT_ENTRY_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self.ttl_seconds = float(ttl_seconds)
        self.sweep_interval_seconds = float(sweep_interval_seconds)
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, ip: object) -> bool:
        return ip in self._buckets

    async def allow(self, ip: str) -> bool:
        """Consume one token for ``ip``; unseen IPs start with a full bucket."""
        async with self._lock:
            now = self._clock()
            bucket = self._buckets.get(ip)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.burst), refilled_at=now, last_seen=now)
                self._buckets[ip] = bucket
            else:
                elapsed = max(0.0, now - bucket.refilled_at)
                bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate)
                bucket.refilled_at = now
            bucket.last_seen = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    async def sweep(self) -> int:
        """Evict IPs idle for longer than the TTL. Returns the number removed."""
        async with self._lock:
            now = self._clock()
            stale = [
                ip for ip, bucket in self._buckets.items()
                if now - bucket.last_seen > self.ttl_seconds
            ]
            for ip in stale:
                del self._buckets[ip]
        if stale:
            logger.debug("rate_limit_entries_evicted", count=len(stale), remaining=len(self._buckets))
        return len(stale)

    async def _run_sweeper(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                try:
                    await self.sweep()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # pragma: no cover - best-effort cleanup
                    logger.warning("rate_limit_sweep_failed", error=str(exc))
        except asyncio.CancelledError:
            logger.info("rate_limit_sweeper_cancelled")
            raise

    def start(self) -> None:
        """Start the background sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._run_sweeper())
        logger.info(
            "rate_limit_sweeper_started",
            interval_seconds=self.sweep_interval_seconds,
            ttl_seconds=self.ttl_seconds,
        )

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()


__all__ = ["IPRateLimiter"]
