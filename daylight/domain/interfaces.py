from __future__ import annotations
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import AsyncIterator, Optional, Protocol, Sequence, runtime_checkable
from .models import EventBatch, Light, LightState, Scene, Schedule


@runtime_checkable
class DeviceGateway(Protocol):
    async def discover_lights(self, schedules: Sequence[Schedule]) -> list[Light]:
        ...

    async def discover_scenes(self, schedules: Sequence[Schedule]) -> list[Scene]:
        ...

    async def update_light_state(self, light_id: str, state: LightState) -> None:
        """Raises UnreachableError when the device did not respond."""
        ...

    async def update_scene_state(self, scene_id: str, state: LightState) -> None:
        ...

    def subscribe(self) -> AsyncIterator[EventBatch]:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class StateStore(Protocol):
    async def init(self) -> None:
        ...

    def light_lock(self, light_id: str) -> AbstractAsyncContextManager:
        ...

    async def add_lights(self, lights: Sequence[Light]) -> None:
        ...

    async def add_scenes(self, scenes: Sequence[Scene]) -> None:
        ...

    async def get_light_target_state(self, light_id: str) -> LightState:
        ...

    async def get_scene_target_state(self, scene_id: str) -> LightState:
        ...

    async def update_target_state(self, schedule_name: str, target: LightState) -> None:
        ...

    async def set_light_unreachable(self, light_id: str, at: datetime) -> None:
        ...

    async def set_light_on_state_override(self, light_id: str, on: bool, target_on: bool, at: datetime) -> None:
        ...

    async def set_light_brightness_override(self, light_id: str, brightness: int, target: int, at: datetime) -> None:
        ...

    async def set_light_colour_temp_override(self, light_id: str, mirek: int, target: int, at: datetime) -> None:
        ...

    async def clear_light_overrides(self, light_id: str) -> None:
        ...

    async def is_scheduled_light(self, light_id: str) -> bool:
        ...

    async def get_light_service_id_for_zigbee_id(self, zigbee_id: str) -> Optional[str]:
        ...

    async def get_light_last_update(self, light_id: str) -> Optional[datetime]:
        ...

    async def get_all_controlling_light_ids(self, now: datetime) -> list[str]:
        ...

    async def get_all_scene_ids(self) -> list[str]:
        ...

    async def mark_light_as_updated(self, light_id: str, at: datetime) -> None:
        ...

    async def list_lights(self) -> list[Light]:
        ...


@runtime_checkable
class LightStateSetter(Protocol):
    async def set_light_state_to_target(self, light_id: str, current_time: datetime) -> None:
        ...
