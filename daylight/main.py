from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from zoneinfo import ZoneInfo

from fastapi import FastAPI

from .core.config import Settings, settings
from .core.log import configure_logging
from .core.schedule_file import LoadedConfig, load_schedule_file

from .api.routes import router as api_router
import daylight.api.routes as routes_module

from .domain.errors import ConfigError
from .domain.interfaces import DeviceGateway
from .domain.models import GeoLocation
from .domain.schedule import ScheduleEngine
from .domain.state_manager import LogicalStateManager
from .drivers.gateway_sim import SimulatedGateway
from .drivers.hue_gateway import HueBridgeGateway
from .services.orchestrator import Orchestrator
from .services.physical_sync import PhysicalSync
from .services.throttle import RateLimiter
from .storage.sqlite_repo import SQLiteRepository


logger = logging.getLogger(__name__)


gateway: DeviceGateway | None = None
sim_gateway: SimulatedGateway | None = None
repo: SQLiteRepository | None = None
orchestrator: Orchestrator | None = None


def build_gateway(cfg: Settings, loaded: LoadedConfig) -> DeviceGateway:
    global sim_gateway

    if cfg.mode.lower() == "hue":
        bridge_ip = loaded.bridge_ip or cfg.bridge_ip
        key = loaded.hue_application_key or cfg.hue_application_key
        if not bridge_ip or not key:
            raise ConfigError("hue mode needs a bridge ip and an application key")
        return HueBridgeGateway(
            bridge_ip=bridge_ip,
            application_key=key,
            scene_prefix=cfg.scene_prefix,
            timeout=cfg.request_timeout_seconds,
        )

    # default to sim
    sim_gateway = SimulatedGateway()
    return sim_gateway


def build_orchestrator(
    cfg: Settings,
    loaded: LoadedConfig,
    gw: DeviceGateway,
    store: SQLiteRepository,
) -> Orchestrator:
    tz = ZoneInfo(cfg.timezone)
    geo = loaded.geo_location or GeoLocation.parse(cfg.geo_location)

    engine = ScheduleEngine(loaded.day_patterns, geo, tz)
    sync = PhysicalSync(
        gateway=gw,
        store=store,
        limiter=RateLimiter(cfg.push_interval_ms / 1000.0),
        tz=tz,
    )
    state_manager = LogicalStateManager(
        store=store,
        engine=engine,
        light_state_setter=sync,
        settle_window=timedelta(seconds=cfg.settle_window_seconds),
        brightness_tolerance=cfg.brightness_tolerance,
        colour_temp_tolerance=cfg.colour_temp_tolerance,
    )
    return Orchestrator(
        schedules=loaded.schedules,
        gateway=gw,
        state_manager=state_manager,
        sync=sync,
        tick_seconds=cfg.tick_seconds,
        shutdown_grace_s=cfg.shutdown_grace_seconds,
    )


def get_orchestrator() -> Orchestrator:
    assert orchestrator is not None
    return orchestrator


def get_store() -> SQLiteRepository:
    assert repo is not None
    return repo


def get_sim_gateway() -> SimulatedGateway:
    if sim_gateway is None:
        raise RuntimeError("Sim gateway not available (mode is not 'sim').")
    return sim_gateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    global gateway, repo, orchestrator

    configure_logging(
        level=logging.DEBUG if settings.debug_mode else logging.INFO,
        log_path=settings.log_path,
    )
    logger.info("Starting %s (mode=%s)", settings.app_name, settings.mode)

    # config and store failures are fatal
    loaded = load_schedule_file(settings.config_path)
    repo = SQLiteRepository(
        settings.sqlite_path,
        max_override_age=timedelta(minutes=settings.max_override_minutes),
        unreachable_retry=timedelta(minutes=settings.unreachable_retry_minutes),
        reset_on_init=settings.reset_store_on_start,
    )
    await repo.init()

    gateway = build_gateway(settings, loaded)
    try:
        orchestrator = build_orchestrator(settings, loaded, gateway, repo)
        await orchestrator.initialise()
        await orchestrator.start()

        yield
    finally:
        if orchestrator:
            await orchestrator.stop()
        await gateway.close()

        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# Make the dependency functions in routes resolve to the real ones
app.dependency_overrides[routes_module.get_orchestrator] = get_orchestrator
app.dependency_overrides[routes_module.get_store] = get_store
app.dependency_overrides[routes_module.get_sim_gateway] = get_sim_gateway

app.include_router(api_router, prefix="/api")
