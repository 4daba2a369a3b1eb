from __future__ import annotations
import logging
import math
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from .errors import DaylightError
from .interfaces import LightStateSetter, StateStore
from .models import (
    EVENT_BATCH_UPDATE,
    EVENT_TYPE_LIGHT,
    EVENT_TYPE_ZIGBEE_CONNECTIVITY,
    STATUS_CONNECTED,
    STATUS_CONNECTIVITY_ISSUE,
    ChangeType,
    EventBatch,
    EventData,
    Light,
    Scene,
    Schedule,
)
from .schedule import ScheduleEngine

logger = logging.getLogger(__name__)


class LogicalStateManager:
    """Keeps the store's view of each light in line with schedules and bridge events.

    Bridge events are classified as echoes of our own writes (ignored), manual
    changes (recorded as overrides) or a light becoming controllable again
    (pushed straight to its target).
    """

    def __init__(
        self,
        store: StateStore,
        engine: ScheduleEngine,
        light_state_setter: LightStateSetter,
        settle_window: timedelta = timedelta(seconds=2),
        brightness_tolerance: int = 1,
        colour_temp_tolerance: int = 5,
    ) -> None:
        self._store = store
        self._engine = engine
        self._setter = light_state_setter
        self._settle_window = settle_window
        self._tolerance: dict[ChangeType, int] = {
            "brightness": brightness_tolerance,
            "colour_temp": colour_temp_tolerance,
        }

    async def add_lights(self, lights: Sequence[Light]) -> None:
        await self._store.add_lights(lights)

    async def add_scenes(self, scenes: Sequence[Scene]) -> None:
        await self._store.add_scenes(scenes)

    # --- target computation ---

    async def update_all_target_states(self, schedules: Iterable[Schedule], timestamp: datetime) -> None:
        for sch in schedules:
            if sch.disabled:
                continue
            try:
                interval = self._engine.get_schedule_interval_for_time(sch, timestamp)
                target = interval.calculate_target_light_state(timestamp)
                await self._store.update_target_state(sch.name, target)
                logger.info(
                    "Target for %s: on=%s brightness=%s mirek=%s",
                    sch.name, target.on, target.brightness, target.temperature_mirek,
                )
            except DaylightError as e:
                logger.error("Skipping target update for schedule %s: %s", sch.name, e)

    # --- bridge events ---

    async def handle_bridge_events(self, batches: Iterable[EventBatch]) -> None:
        for batch in batches:
            if batch.type != EVENT_BATCH_UPDATE:
                continue
            for item in batch.data:
                try:
                    await self._handle_event_item(batch.creation_time, item)
                except DaylightError as e:
                    logger.error("Failed to handle %s event for %s: %s", item.type, item.id, e)

    async def _handle_event_item(self, event_time: datetime, item: EventData) -> None:
        if item.type == EVENT_TYPE_ZIGBEE_CONNECTIVITY:
            light_id = await self._store.get_light_service_id_for_zigbee_id(item.id)
            if light_id is None:
                logger.debug("connectivity event for unknown device %s, ignoring", item.id)
                return

            if item.status == STATUS_CONNECTIVITY_ISSUE:
                logger.debug("light (%s) became unreachable", light_id)
                await self._store.set_light_unreachable(light_id, event_time)
                return

            if item.status == STATUS_CONNECTED:
                logger.debug("light (%s) was just powered on", light_id)
                await self._on_off(event_time, light_id, True)
            return

        if item.type != EVENT_TYPE_LIGHT:
            return

        if not await self._store.is_scheduled_light(item.id):
            logger.debug("event received for a light we don't control (%s), ignoring", item.id)
            return

        if item.on is not None:
            await self._on_off(event_time, item.id, item.on)
            return

        if item.brightness is not None:
            await self._change(
                "brightness",
                event_time,
                item.id,
                int(math.floor(item.brightness + 0.5)),
            )

        if item.mirek is not None:
            if item.mirek == 0:
                logger.debug("light (%s) reported colour temp 0, ignoring", item.id)
            else:
                await self._change("colour_temp", event_time, item.id, item.mirek)

    async def _on_off(self, event_time: datetime, light_id: str, event_on: bool) -> None:
        async with self._store.light_lock(light_id):
            target = await self._store.get_light_target_state(light_id)
            push = await self.handle_light_on_off_event(event_time, light_id, event_on, target.on)
        if push:
            await self._setter.set_light_state_to_target(light_id, event_time)

    async def _change(self, change_type: ChangeType, event_time: datetime, light_id: str, value: int) -> None:
        async with self._store.light_lock(light_id):
            target = await self._store.get_light_target_state(light_id)
            target_value = target.brightness if change_type == "brightness" else target.temperature_mirek
            await self.handle_light_change_event(
                change_type, event_time, light_id, value, target_value, self._tolerance[change_type]
            )

    async def handle_light_on_off_event(
        self, event_time: datetime, light_id: str, event_on: bool, target_on: bool
    ) -> bool:
        """Classify an on/off change. Returns True when the light should be pushed to its target."""
        logger.debug("(%s): event on: %s, target: %s", light_id, event_on, target_on)

        if event_on == target_on and await self.event_inside_settle_window(event_time, light_id):
            logger.debug("redundant on/off (%s) update received, probably our own write", target_on)
            return False

        if event_on != target_on:
            logger.debug("(%s) switched %s against target, recording override", light_id, "on" if event_on else "off")
            await self._store.set_light_on_state_override(light_id, event_on, target_on, event_time)
            return False

        # switched externally into the state we want: it is controllable again
        return True

    async def handle_light_change_event(
        self,
        change_type: ChangeType,
        event_time: datetime,
        light_id: str,
        event_value: int,
        target_value: int,
        tolerance: int,
    ) -> None:
        logger.debug("(%s): event %s: %s, target: %s", light_id, change_type, event_value, target_value)

        if event_value == 0:
            logger.debug("light %s update received with zero value, ignoring", change_type)
            return

        if abs(event_value - target_value) <= tolerance:
            logger.debug("redundant light %s update received, probably our own write", change_type)
            await self._store.clear_light_overrides(light_id)
            return

        if await self.event_inside_settle_window(event_time, light_id):
            logger.debug("unexpected %s update closely followed our own write, ignoring", change_type)
            return

        logger.debug("unexpected light update received, setting manual %s override", change_type)
        if change_type == "brightness":
            await self._store.set_light_brightness_override(light_id, event_value, target_value, event_time)
        else:
            await self._store.set_light_colour_temp_override(light_id, event_value, target_value, event_time)

    async def event_inside_settle_window(self, event_time: datetime, light_id: str) -> bool:
        last_update = await self._store.get_light_last_update(light_id)
        reference = last_update if last_update is not None else event_time
        return event_time < reference + self._settle_window
