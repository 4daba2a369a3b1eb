from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from ..core.timeutil import at_clock, now_utc
from ..domain.errors import UnreachableError
from ..domain.interfaces import DeviceGateway, StateStore
from ..domain.models import LightState
from .throttle import RateLimiter, ThrottledWorker

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    started: datetime
    finished: Optional[datetime] = None
    scenes_ok: int = 0
    scenes_failed: int = 0
    lights_ok: int = 0
    lights_failed: int = 0


def outside_auto_on_window(target: LightState, current_time: datetime) -> bool:
    """True when the push would switch an off light on outside its auto-on window."""
    if target.current_on_state or not target.on:
        return False
    if not target.auto_on_from or not target.auto_on_to:
        return False
    start = at_clock(current_time, target.auto_on_from)
    end = at_clock(current_time, target.auto_on_to)
    if start <= end:
        return not (start <= current_time < end)
    # window wraps midnight, e.g. 22:00-06:00
    return end <= current_time < start


class PhysicalSync:
    def __init__(
        self,
        gateway: DeviceGateway,
        store: StateStore,
        limiter: RateLimiter,
        clock: Callable[[], datetime] = now_utc,
        tz: Optional[ZoneInfo] = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._limiter = limiter
        self._clock = clock
        self._tz = tz
        self._running = asyncio.Lock()
        self.last_result: Optional[SyncResult] = None

    @property
    def busy(self) -> bool:
        return self._running.locked()

    async def sync_all(self, current_time: datetime) -> Optional[SyncResult]:
        """Push scenes and out-of-date lights to their targets. Returns None if a sync is already running."""
        if self._running.locked():
            logger.info("Sync still running from a previous tick, skipping")
            return None

        async with self._running:
            result = SyncResult(started=self._clock())

            scene_ids = await self._store.get_all_scene_ids()
            scenes = ThrottledWorker(self.set_scene_state_to_target, self._limiter, name="scene push")
            result.scenes_ok, result.scenes_failed = await scenes.run(scene_ids)

            light_ids = await self._store.get_all_controlling_light_ids(current_time)
            logger.info("Syncing %d scene(s) and %d light(s)", len(scene_ids), len(light_ids))

            async def push(light_id: str) -> None:
                async with self._store.light_lock(light_id):
                    await self._push_light(light_id, current_time)

            lights = ThrottledWorker(push, self._limiter, name="light push")
            result.lights_ok, result.lights_failed = await lights.run(light_ids)

            result.finished = self._clock()
            self.last_result = result
            return result

    async def set_light_state_to_target(self, light_id: str, current_time: datetime) -> None:
        """Push a single light now, outside the regular sync."""
        await self._limiter.acquire()
        async with self._store.light_lock(light_id):
            await self._push_light(light_id, current_time)

    async def set_scene_state_to_target(self, scene_id: str) -> None:
        target = await self._store.get_scene_target_state(scene_id)
        await self._gateway.update_scene_state(scene_id, target)

    async def _push_light(self, light_id: str, current_time: datetime) -> None:
        target = await self._store.get_light_target_state(light_id)
        logger.debug("setting light (%s) to target: %s", light_id, target)

        local = current_time.astimezone(self._tz) if self._tz else current_time
        if outside_auto_on_window(target, local):
            logger.debug("not turning light (%s) on, outside auto-on window", light_id)
            return

        try:
            await self._gateway.update_light_state(light_id, target)
        except UnreachableError:
            logger.info("light (%s) is unreachable", light_id)
            await self._store.set_light_unreachable(light_id, self._clock())
            return

        # in sync now: clears unreachable + any override
        await self._store.mark_light_as_updated(light_id, self._clock())
