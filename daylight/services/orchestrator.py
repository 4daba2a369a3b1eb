from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Literal, Optional, Sequence

from ..core.timeutil import now_utc
from ..domain.errors import DaylightError
from ..domain.interfaces import DeviceGateway
from ..domain.models import EventBatch, Schedule
from ..domain.state_manager import LogicalStateManager
from .physical_sync import PhysicalSync, SyncResult

logger = logging.getLogger(__name__)

RunState = Literal["initializing", "running", "stopped"]


@dataclass
class LiveState:
    state: RunState = "initializing"
    started: Optional[datetime] = None
    last_tick: Optional[datetime] = None
    last_event: Optional[datetime] = None
    events_handled: int = 0
    ticks: int = 0
    lights: int = 0
    scenes: int = 0


class Orchestrator:
    """Runs the control loop.

    The event reader and the ticker only feed one queue; the loop takes one
    item at a time so target recomputes and bridge events never interleave.
    Syncs run as background tasks and are skipped while one is in flight.
    """

    def __init__(
        self,
        schedules: Sequence[Schedule],
        gateway: DeviceGateway,
        state_manager: LogicalStateManager,
        sync: PhysicalSync,
        tick_seconds: float = 60.0,
        shutdown_grace_s: float = 5.0,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._schedules: dict[str, Schedule] = {s.name: s for s in schedules}
        self._gateway = gateway
        self._sm = state_manager
        self._sync = sync
        self._tick_seconds = tick_seconds
        self._grace = shutdown_grace_s
        self._clock = clock

        self._queue: asyncio.Queue[tuple[str, object]] = asyncio.Queue()
        self._feeders: list[asyncio.Task] = []
        self._loop_task: Optional[asyncio.Task] = None
        self._sync_tasks: set[asyncio.Task] = set()
        self._discovered: set[str] = set()

        self.live = LiveState()

    @property
    def schedules(self) -> list[Schedule]:
        return list(self._schedules.values())

    def enabled_schedules(self) -> list[Schedule]:
        return [s for s in self._schedules.values() if not s.disabled]

    @property
    def sync(self) -> PhysicalSync:
        return self._sync

    # --- lifecycle ---

    async def initialise(self) -> None:
        """Discover lights and scenes for enabled schedules and compute first targets.

        Errors propagate: the daemon can't run without its lights.
        """
        enabled = self.enabled_schedules()
        await self._discover(enabled)
        await self._sm.update_all_target_states(enabled, self._clock())
        logger.info(
            "Initialised %d schedule(s): %d light(s), %d scene(s)",
            len(enabled), self.live.lights, self.live.scenes,
        )

    async def _discover(self, schedules: Sequence[Schedule]) -> None:
        if not schedules:
            return
        lights = await self._gateway.discover_lights(schedules)
        await self._sm.add_lights(lights)
        scenes = await self._gateway.discover_scenes(schedules)
        await self._sm.add_scenes(scenes)

        self._discovered.update(s.name for s in schedules)
        self.live.lights += len(lights)
        self.live.scenes += len(scenes)

    async def start(self) -> None:
        self.live.state = "running"
        self.live.started = self._clock()
        self._feeders = [
            asyncio.create_task(self._read_events(), name="event_reader"),
            asyncio.create_task(self._tick_timer(), name="tick_timer"),
        ]
        self._loop_task = asyncio.create_task(self._run(), name="orchestrator_loop")

        # bring everything to target straight away
        self.trigger_sync()

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        await self._queue.put(("stop", None))
        await self._loop_task
        self._loop_task = None

        for t in self._feeders:
            t.cancel()
        await asyncio.gather(*self._feeders, return_exceptions=True)
        self._feeders = []

        # in-flight pushes are drained, not interrupted
        if self._sync_tasks:
            logger.info("Waiting up to %ss for %d sync(s) to finish", self._grace, len(self._sync_tasks))
            _, pending = await asyncio.wait(self._sync_tasks, timeout=self._grace)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self.live.state = "stopped"
        logger.info("Orchestrator stopped")

    # --- queue feeders ---

    async def _read_events(self) -> None:
        try:
            async for batch in self._gateway.subscribe():
                await self._queue.put(("event", batch))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event stream failed, no further bridge events will be handled")
        else:
            logger.info("Event stream closed")

    async def _tick_timer(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            await self._queue.put(("tick", self._clock()))

    # --- main loop ---

    async def _run(self) -> None:
        logger.info("Orchestrator loop started (tick_seconds=%s)", self._tick_seconds)
        while True:
            kind, payload = await self._queue.get()
            if kind == "stop":
                logger.info("Stop signal received")
                break

            try:
                if kind == "event":
                    await self.handle_events([payload])
                elif kind == "tick":
                    await self.handle_tick(payload)
            except Exception:
                logger.exception("Orchestrator loop error handling %s", kind)

        logger.info("Orchestrator loop stopped")

    async def handle_tick(self, t: datetime) -> Optional[asyncio.Task]:
        logger.debug("calculating new target states for %s", t)
        self.live.last_tick = t
        self.live.ticks += 1
        await self._sm.update_all_target_states(self.enabled_schedules(), t)
        return self.trigger_sync(t)

    async def handle_events(self, batches: Sequence[EventBatch]) -> None:
        await self._sm.handle_bridge_events(batches)
        self.live.events_handled += len(batches)
        if batches:
            self.live.last_event = batches[-1].creation_time

    def trigger_sync(self, t: Optional[datetime] = None) -> Optional[asyncio.Task]:
        """Start a background sync unless one is already running."""
        if self._sync.busy:
            logger.info("Sync still running, skipping this one")
            return None
        task = asyncio.create_task(self._sync_now(t or self._clock()), name="physical_sync")
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)
        return task

    async def _sync_now(self, t: datetime) -> Optional[SyncResult]:
        try:
            result = await self._sync.sync_all(t)
        except DaylightError as e:
            logger.error("Sync failed: %s", e)
            return None
        except Exception:
            logger.exception("Sync failed")
            return None

        if result is not None:
            logger.info(
                "Sync done: scenes %d ok / %d failed, lights %d ok / %d failed",
                result.scenes_ok, result.scenes_failed, result.lights_ok, result.lights_failed,
            )
        return result

    # --- runtime schedule changes ---

    async def set_schedule_enabled(self, name: str, enabled: bool) -> Schedule:
        sch = self._schedules.get(name)
        if sch is None:
            raise KeyError(name)

        sch = replace(sch, disabled=not enabled)
        self._schedules[name] = sch
        logger.info("Schedule %s %s", name, "enabled" if enabled else "disabled")

        if enabled:
            if name not in self._discovered:
                await self._discover([sch])
            await self._sm.update_all_target_states([sch], self._clock())
        return sch
