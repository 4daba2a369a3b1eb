from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from pydantic import ValidationError

from ..domain.errors import GatewayError, UnreachableError
from ..domain.models import EventBatch, Light, LightState, Scene, Schedule
from .hue_schemas import (
    DeviceResponse,
    GroupResponse,
    HueScene,
    LightResponse,
    SceneResponse,
    event_batches,
)

logger = logging.getLogger(__name__)


@dataclass
class Group:
    name: str
    # rooms list devices, zones list light services
    device_ids: list[str] = field(default_factory=list)
    light_ids: list[str] = field(default_factory=list)


def decode_events(payload: str) -> list[EventBatch]:
    """Decode one event-stream `data:` payload (a JSON array of batches)."""
    try:
        return [b.to_domain() for b in event_batches.validate_json(payload)]
    except ValidationError as e:
        logger.error("Malformed bridge event payload, skipping: %s", e)
        return []


class HueBridgeGateway:
    """Device gateway for a Hue bridge (CLIP v2 API)."""

    def __init__(
        self,
        bridge_ip: str,
        application_key: str,
        scene_prefix: str = "Hugh_",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        reconnect_backoff_s: float = 1.0,
        max_reconnect_backoff_s: float = 30.0,
    ) -> None:
        self._scene_prefix = scene_prefix
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(
            base_url=f"https://{bridge_ip}",
            headers={"hue-application-key": application_key},
            # the bridge serves a self-signed certificate
            verify=False,
            timeout=timeout,
        )
        self._backoff = reconnect_backoff_s
        self._max_backoff = max_reconnect_backoff_s
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        await self._client.aclose()

    async def _request(self, method: str, path: str, resource_id: str = "", body: Any = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 207:
            # the bridge took the write but the device never acknowledged it
            raise UnreachableError(resource_id or path)
        if resp.status_code != 200:
            raise GatewayError(f"{method} {path} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayError(f"{method} {path} returned invalid JSON") from e

    async def _get(self, path: str, model):
        body = await self._request("GET", path)
        try:
            return model.model_validate(body)
        except ValidationError as e:
            raise GatewayError(f"Unexpected response from {path}: {e}") from e

    # --- topology ---

    async def get_groups(self) -> dict[str, Group]:
        groups: dict[str, Group] = {}
        for kind in ("room", "zone"):
            try:
                resp = await self._get(f"/clip/v2/resource/{kind}", GroupResponse)
            except GatewayError as e:
                logger.error("Error reading %ss from bridge: %s", kind, e)
                continue
            for g in resp.data:
                group = groups.setdefault(g.metadata.name, Group(name=g.metadata.name))
                for child in g.children:
                    if child.rtype == "device":
                        group.device_ids.append(child.rid)
                    elif child.rtype == "light":
                        group.light_ids.append(child.rid)
        return groups

    async def get_light(self, light_id: str) -> Light:
        lresp = await self._get(f"/clip/v2/resource/light/{light_id}", LightResponse)
        if not lresp.data:
            raise GatewayError(f"Light {light_id} not found")
        light = lresp.data[0]

        dresp = await self._get(f"/clip/v2/resource/device/{light.owner.rid}", DeviceResponse)
        zigbee_id = ""
        if dresp.data:
            zigbee_id = next((s.rid for s in dresp.data[0].services if s.rtype == "zigbee_connectivity"), "")

        bounds = light.color_temperature.mirek_schema if light.color_temperature else None
        return Light(
            light_service_id=light.id,
            zigbee_service_id=zigbee_id,
            name=light.metadata.name,
            schedule_name="",
            on=light.on.on,
            min_color_temp_mirek=bounds.mirek_minimum if bounds else 0,
            max_color_temp_mirek=bounds.mirek_maximum if bounds else 0,
        )

    async def _light_ids_for_group(self, group: Group) -> list[str]:
        ids = list(group.light_ids)
        for device_id in group.device_ids:
            try:
                dresp = await self._get(f"/clip/v2/resource/device/{device_id}", DeviceResponse)
            except GatewayError as e:
                logger.warning("Unable to read device with id %s: %s", device_id, e)
                continue
            for device in dresp.data:
                ids.extend(s.rid for s in device.services if s.rtype == "light")
        return ids

    async def discover_lights(self, schedules: Sequence[Schedule]) -> list[Light]:
        groups = await self.get_groups()
        lights: dict[str, Light] = {}

        for sch in schedules:
            for group_name in (*sch.rooms, *sch.zones):
                group = groups.get(group_name)
                if group is None:
                    logger.warning("Schedule %s refers to unknown room/zone %s", sch.name, group_name)
                    continue
                for light_id in await self._light_ids_for_group(group):
                    if light_id in lights:
                        continue
                    try:
                        light = await self.get_light(light_id)
                    except GatewayError as e:
                        logger.error("Skipping light %s: %s", light_id, e)
                        continue
                    lights[light_id] = replace(
                        light,
                        schedule_name=sch.name,
                        group_name=group_name,
                        auto_on_from=sch.auto_on.start if sch.auto_on else None,
                        auto_on_to=sch.auto_on.end if sch.auto_on else None,
                    )

        logger.info("Discovered %d light(s)", len(lights))
        return list(lights.values())

    async def get_scenes(self) -> list[HueScene]:
        return (await self._get("/clip/v2/resource/scene", SceneResponse)).data

    async def discover_scenes(self, schedules: Sequence[Schedule]) -> list[Scene]:
        by_name = {f"{self._scene_prefix}{s.name}": s.name for s in schedules}
        scenes = [
            Scene(id=scene.id, schedule_name=by_name[scene.metadata.name])
            for scene in await self.get_scenes()
            if scene.metadata.name in by_name
        ]
        for scene in scenes:
            logger.debug("Found scene %s for schedule %s", scene.id, scene.schedule_name)
        return scenes

    # --- writes ---

    async def update_light_state(self, light_id: str, state: LightState) -> None:
        if state.on:
            body = {
                "dimming": {"brightness": state.brightness},
                "color_temperature": {"mirek": state.temperature_mirek},
                "on": {"on": True},
            }
        else:
            body = {"on": {"on": False}}
        logger.debug("PUT light %s %s", light_id, body)
        await self._request("PUT", f"/clip/v2/resource/light/{light_id}", resource_id=light_id, body=body)

    async def update_scene_state(self, scene_id: str, state: LightState) -> None:
        resp = await self._get(f"/clip/v2/resource/scene/{scene_id}", SceneResponse)
        if not resp.data:
            raise GatewayError(f"Scene {scene_id} not found")

        actions = []
        for a in resp.data[0].actions:
            action = a.action.model_dump(exclude_none=True)
            action["on"] = {"on": state.on}
            if state.on:
                action["dimming"] = {"brightness": state.brightness}
                action["color_temperature"] = {"mirek": state.temperature_mirek}
            actions.append({"target": a.target.model_dump(), "action": action})

        await self._request("PUT", f"/clip/v2/resource/scene/{scene_id}", resource_id=scene_id, body={"actions": actions})

    # --- events ---

    async def subscribe(self) -> AsyncIterator[EventBatch]:
        """Yield event batches from the bridge, reconnecting until closed."""
        backoff = self._backoff
        while not self._closed:
            try:
                async with self._client.stream(
                    "GET",
                    "/eventstream/clip/v2",
                    headers={"Accept": "text/event-stream"},
                    # events may be minutes apart; only the connect is bounded
                    timeout=httpx.Timeout(self._timeout, read=None),
                ) as resp:
                    if resp.status_code != 200:
                        raise GatewayError(f"event stream returned {resp.status_code}")
                    logger.info("Connected to Hue bridge, listening for events...")
                    backoff = self._backoff

                    data: list[str] = []
                    async for line in resp.aiter_lines():
                        if line.startswith("data:"):
                            data.append(line[5:].lstrip())
                        elif not line and data:
                            payload = "\n".join(data)
                            data = []
                            for batch in decode_events(payload):
                                yield batch
            except (httpx.HTTPError, GatewayError) as e:
                if self._closed:
                    break
                logger.warning("Event stream error: %s", e)

            if self._closed:
                break
            logger.info("Disconnected from Hue bridge, reconnecting in %.0fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._max_backoff)
