from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Optional, Sequence

from ..core.timeutil import now_utc
from ..domain.errors import UnreachableError
from ..domain.models import (
    EVENT_BATCH_UPDATE,
    EVENT_TYPE_LIGHT,
    EVENT_TYPE_ZIGBEE_CONNECTIVITY,
    STATUS_CONNECTED,
    STATUS_CONNECTIVITY_ISSUE,
    EventBatch,
    EventData,
    Light,
    LightState,
    Scene,
    Schedule,
)

logger = logging.getLogger(__name__)


@dataclass
class SimLight:
    id: str
    name: str
    on: bool = False
    brightness: int = 100
    mirek: int = 366
    reachable: bool = True


class SimulatedGateway:
    """In-memory bridge for running without hardware.

    Every room/zone holds `lights_per_group` lights and every schedule owns one
    scene. Successful light writes are echoed back on the event stream the way
    the real bridge does.
    """

    def __init__(
        self,
        lights_per_group: int = 2,
        echo: bool = True,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._lights_per_group = lights_per_group
        self._echo = echo
        self._clock = clock
        self.lights: dict[str, SimLight] = {}
        self.scenes: dict[str, LightState] = {}
        self.pushes: list[tuple[str, LightState]] = []
        self._events: asyncio.Queue[Optional[EventBatch]] = asyncio.Queue()

    async def discover_lights(self, schedules: Sequence[Schedule]) -> list[Light]:
        found: dict[str, Light] = {}
        for sch in schedules:
            for group in (*sch.rooms, *sch.zones):
                for n in range(1, self._lights_per_group + 1):
                    light_id = f"sim-{group}-{n}".lower().replace(" ", "-")
                    if light_id in found:
                        continue
                    sim = self.lights.setdefault(light_id, SimLight(id=light_id, name=f"{group} {n}"))
                    found[light_id] = Light(
                        light_service_id=light_id,
                        zigbee_service_id=f"zb-{light_id}",
                        name=sim.name,
                        schedule_name=sch.name,
                        group_name=group,
                        min_color_temp_mirek=153,
                        max_color_temp_mirek=500,
                        on=sim.on,
                        auto_on_from=sch.auto_on.start if sch.auto_on else None,
                        auto_on_to=sch.auto_on.end if sch.auto_on else None,
                    )
        return list(found.values())

    async def discover_scenes(self, schedules: Sequence[Schedule]) -> list[Scene]:
        scenes = []
        for sch in schedules:
            scene_id = f"sim-scene-{sch.name}".lower().replace(" ", "-")
            self.scenes.setdefault(scene_id, LightState())
            scenes.append(Scene(id=scene_id, schedule_name=sch.name))
        return scenes

    async def update_light_state(self, light_id: str, state: LightState) -> None:
        sim = self.lights[light_id]
        if not sim.reachable:
            raise UnreachableError(light_id)
        sim.on = state.on
        if state.on:
            sim.brightness = state.brightness
            sim.mirek = state.temperature_mirek
        self.pushes.append((light_id, state))
        logger.info("SIM light %s on=%s brightness=%s mirek=%s", light_id, sim.on, sim.brightness, sim.mirek)

        if self._echo:
            data = [EventData(id=light_id, type=EVENT_TYPE_LIGHT, on=state.on)]
            if state.on:
                data.append(EventData(id=light_id, type=EVENT_TYPE_LIGHT, brightness=float(state.brightness)))
                data.append(EventData(id=light_id, type=EVENT_TYPE_LIGHT, mirek=state.temperature_mirek))
            self._emit(*data)

    async def update_scene_state(self, scene_id: str, state: LightState) -> None:
        self.scenes[scene_id] = state

    # --- manual control (dev API / tests) ---

    def manual_change(
        self,
        light_id: str,
        on: Optional[bool] = None,
        brightness: Optional[int] = None,
        mirek: Optional[int] = None,
    ) -> None:
        sim = self.lights[light_id]
        data = []
        if on is not None:
            sim.on = on
            data.append(EventData(id=light_id, type=EVENT_TYPE_LIGHT, on=on))
        if brightness is not None:
            sim.brightness = brightness
            data.append(EventData(id=light_id, type=EVENT_TYPE_LIGHT, brightness=float(brightness)))
        if mirek is not None:
            sim.mirek = mirek
            data.append(EventData(id=light_id, type=EVENT_TYPE_LIGHT, mirek=mirek))
        self._emit(*data)

    def set_reachable(self, light_id: str, reachable: bool) -> None:
        sim = self.lights[light_id]
        sim.reachable = reachable
        if reachable:
            sim.on = True  # power restored
        status = STATUS_CONNECTED if reachable else STATUS_CONNECTIVITY_ISSUE
        self._emit(EventData(id=f"zb-{light_id}", type=EVENT_TYPE_ZIGBEE_CONNECTIVITY, status=status))

    def status(self) -> dict:
        return {
            "lights": {lid: l.__dict__ for lid, l in self.lights.items()},
            "scenes": {sid: s.__dict__ for sid, s in self.scenes.items()},
            "pushes": len(self.pushes),
        }

    def _emit(self, *data: EventData) -> None:
        if data:
            self._events.put_nowait(EventBatch(creation_time=self._clock(), type=EVENT_BATCH_UPDATE, data=tuple(data)))

    async def subscribe(self) -> AsyncIterator[EventBatch]:
        while True:
            batch = await self._events.get()
            if batch is None:
                return
            yield batch

    async def close(self) -> None:
        self._events.put_nowait(None)
