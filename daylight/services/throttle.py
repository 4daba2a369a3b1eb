from __future__ import annotations
import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from ..domain.errors import DaylightError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Hands out slots at least `interval_s` apart.

    Clock and sleep are injectable so the spacing can be checked with virtual time.
    """

    def __init__(
        self,
        interval_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = interval_s
        self._clock = clock
        self._sleep = sleep
        self._next_slot: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._next_slot is not None and now < self._next_slot:
                await self._sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self._interval


class ThrottledWorker:
    """Runs one job per argument, strictly one after another, each waiting for a limiter slot."""

    def __init__(self, job: Callable[[str], Awaitable[None]], limiter: RateLimiter, name: str = "job") -> None:
        self._job = job
        self._limiter = limiter
        self._name = name

    async def run(self, args: Iterable[str]) -> tuple[int, int]:
        ok = failed = 0
        for arg in args:
            await self._limiter.acquire()
            try:
                await self._job(arg)
                ok += 1
            except DaylightError as e:
                failed += 1
                logger.error("%s(%s) failed: %s", self._name, arg, e)
            except Exception:
                failed += 1
                logger.exception("%s(%s) crashed", self._name, arg)
        return ok, failed
