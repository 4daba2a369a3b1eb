from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import settings
from ..domain.interfaces import StateStore
from ..domain.models import Light, Schedule
from ..drivers.gateway_sim import SimulatedGateway
from ..services.orchestrator import Orchestrator
from .schemas import SimLightChangeRequest, SimReachableRequest

logger = logging.getLogger(__name__)

router = APIRouter()


# Dependency getters, replaced in main via app.dependency_overrides.
def get_orchestrator() -> Orchestrator:  # overridden in main
    raise RuntimeError("Orchestrator dependency not configured")

def get_store() -> StateStore:  # overridden in main
    raise RuntimeError("Store dependency not configured")

def get_sim_gateway() -> SimulatedGateway:  # overridden in main
    raise RuntimeError("Simulated gateway dependency not configured")


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _light_out(l: Light) -> dict:
    o = l.override
    return {
        "id": l.light_service_id,
        "zigbee_id": l.zigbee_service_id,
        "name": l.name,
        "schedule": l.schedule_name,
        "group": l.group_name,
        "on": l.on,
        "reachable": l.reachable,
        "target": asdict(l.target) if l.target else None,
        "last_applied": {
            "time": _iso(l.last_applied.time),
            "brightness": l.last_applied.brightness,
            "colour_temp": l.last_applied.colour_temp,
            "on": l.last_applied.on_state,
        } if l.last_applied else None,
        "override": {
            attr: {"value": ov.value, "target": ov.target_at_override, "time": _iso(ov.timestamp)}
            for attr, ov in (("on", o.on_state), ("brightness", o.brightness), ("colour_temp", o.colour_temp))
            if ov is not None
        },
    }


def _schedule_out(s: Schedule) -> dict:
    return {
        "name": s.name,
        "day_pattern": s.day_pattern,
        "rooms": list(s.rooms),
        "zones": list(s.zones),
        "auto_on": {"from": s.auto_on.start, "to": s.auto_on.end} if s.auto_on else None,
        "enabled": not s.disabled,
    }


@router.get("/live")
async def get_live(orch: Orchestrator = Depends(get_orchestrator)):
    live = orch.live
    res = orch.sync.last_result
    return {
        "app": settings.app_name,
        "mode": settings.mode,
        "state": live.state,
        "started": _iso(live.started),
        "last_tick": _iso(live.last_tick),
        "ticks": live.ticks,
        "last_event": _iso(live.last_event),
        "events_handled": live.events_handled,
        "lights": live.lights,
        "scenes": live.scenes,
        "sync": {
            "busy": orch.sync.busy,
            "last": {
                "started": _iso(res.started),
                "finished": _iso(res.finished),
                "scenes_ok": res.scenes_ok,
                "scenes_failed": res.scenes_failed,
                "lights_ok": res.lights_ok,
                "lights_failed": res.lights_failed,
            } if res else None,
        },
    }


@router.get("/lights")
async def get_lights(store: StateStore = Depends(get_store)):
    return {"lights": [_light_out(l) for l in await store.list_lights()]}


@router.get("/schedules")
async def get_schedules(orch: Orchestrator = Depends(get_orchestrator)):
    return {"schedules": [_schedule_out(s) for s in orch.schedules]}


async def _set_enabled(orch: Orchestrator, name: str, enabled: bool) -> dict:
    try:
        sch = await orch.set_schedule_enabled(name, enabled)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown schedule: {name}")
    return {"ok": True, "schedule": _schedule_out(sch)}


@router.post("/schedules/{name}/enable")
async def enable_schedule(name: str, orch: Orchestrator = Depends(get_orchestrator)):
    return await _set_enabled(orch, name, True)


@router.post("/schedules/{name}/disable")
async def disable_schedule(name: str, orch: Orchestrator = Depends(get_orchestrator)):
    return await _set_enabled(orch, name, False)


@router.post("/sync")
async def trigger_sync(orch: Orchestrator = Depends(get_orchestrator)):
    task = orch.trigger_sync()
    return {"ok": True, "started": task is not None}


# --- Simulation endpoints ---
@router.get("/sim/status")
async def sim_status(gw: SimulatedGateway = Depends(get_sim_gateway)):
    return gw.status()


@router.post("/sim/lights/{light_id}/manual")
async def sim_manual_change(
    light_id: str,
    req: SimLightChangeRequest,
    gw: SimulatedGateway = Depends(get_sim_gateway),
):
    if light_id not in gw.lights:
        raise HTTPException(status_code=404, detail=f"Unknown light: {light_id}")
    gw.manual_change(light_id, on=req.on, brightness=req.brightness, mirek=req.mirek)
    return {"ok": True}


@router.post("/sim/lights/{light_id}/reachable")
async def sim_set_reachable(
    light_id: str,
    req: SimReachableRequest,
    gw: SimulatedGateway = Depends(get_sim_gateway),
):
    if light_id not in gw.lights:
        raise HTTPException(status_code=404, detail=f"Unknown light: {light_id}")
    gw.set_reachable(light_id, req.reachable)
    return {"ok": True, "reachable": req.reachable}
