import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from daylight.domain.errors import GatewayError, UnreachableError
from daylight.domain.models import LightState
from daylight.services.physical_sync import PhysicalSync, outside_auto_on_window
from daylight.services.throttle import RateLimiter
from daylight.storage.sqlite_repo import SQLiteRepository

from factories import T0, make_light


@pytest.fixture
def gateway():
    return AsyncMock()


@pytest.fixture
def sync(gateway, store):
    return PhysicalSync(gateway, store, RateLimiter(0), clock=lambda: T0)


def pushed_ids(gateway):
    return [c.args[0] for c in gateway.update_light_state.await_args_list]


@pytest.mark.asyncio
async def test_sync_pushes_scenes_and_out_of_date_lights(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)

    result = await sync.sync_all(T0)

    gateway.update_scene_state.assert_awaited_once_with("S1", office_target)
    assert pushed_ids(gateway) == ["L1", "L2"]
    assert (result.scenes_ok, result.lights_ok, result.lights_failed) == (1, 2, 0)
    assert await store.get_all_controlling_light_ids(T0) == []
    assert sync.last_result is result


@pytest.mark.asyncio
async def test_lights_in_sync_are_not_pushed_again(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)
    await sync.sync_all(T0)
    gateway.update_light_state.reset_mock()

    await sync.sync_all(T0 + timedelta(minutes=1))

    gateway.update_light_state.assert_not_awaited()
    # scenes have no state to compare, they always go out
    assert gateway.update_scene_state.await_count == 2


@pytest.mark.asyncio
async def test_overridden_light_is_left_alone(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)
    await store.set_light_brightness_override("L1", 40, 80, T0)

    await sync.sync_all(T0 + timedelta(minutes=3))
    assert pushed_ids(gateway) == ["L2"]


@pytest.mark.asyncio
async def test_unreachable_light_is_marked_and_others_continue(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)

    async def update(light_id, state):
        if light_id == "L1":
            raise UnreachableError(light_id)

    gateway.update_light_state.side_effect = update

    await sync.sync_all(T0)

    lights = {l.light_service_id: l for l in await store.list_lights()}
    assert lights["L1"].reachable is False
    assert lights["L1"].last_applied is None
    assert lights["L2"].last_applied is not None
    assert await store.get_all_controlling_light_ids(T0 + timedelta(minutes=1)) == []


@pytest.mark.asyncio
async def test_transport_failure_is_counted_and_light_stays_candidate(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)
    gateway.update_light_state.side_effect = [GatewayError("timeout"), None]

    result = await sync.sync_all(T0)

    assert (result.lights_ok, result.lights_failed) == (1, 1)
    assert await store.get_all_controlling_light_ids(T0) == ["L1"]


@pytest.mark.asyncio
async def test_failed_scene_does_not_block_lights(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)
    gateway.update_scene_state.side_effect = GatewayError("bad scene")

    result = await sync.sync_all(T0)

    assert result.scenes_failed == 1
    assert pushed_ids(gateway) == ["L1", "L2"]


@pytest.mark.asyncio
async def test_overlapping_sync_is_skipped(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)
    release = asyncio.Event()

    async def slow(scene_id, state):
        await release.wait()

    gateway.update_scene_state.side_effect = slow

    first = asyncio.create_task(sync.sync_all(T0))
    await asyncio.sleep(0)
    assert sync.busy is True
    assert await sync.sync_all(T0) is None

    release.set()
    assert (await first).lights_ok == 2
    assert sync.busy is False


@pytest.mark.asyncio
async def test_auto_on_window_blocks_switching_on(tmp_path, gateway, office_target):
    tz = ZoneInfo("Europe/London")
    repo = SQLiteRepository(str(tmp_path / "db.sqlite"))
    await repo.init()
    await repo.add_lights([make_light("L1", on=False, auto_on_from="07:00", auto_on_to="09:00")])
    await repo.update_target_state("Office", office_target)
    sync = PhysicalSync(gateway, repo, RateLimiter(0), tz=tz)

    # 10:30 London
    await sync.sync_all(datetime(2024, 3, 1, 10, 30, tzinfo=timezone.utc))
    gateway.update_light_state.assert_not_awaited()

    # 08:15 London
    await sync.sync_all(datetime(2024, 3, 1, 8, 15, tzinfo=timezone.utc))
    gateway.update_light_state.assert_awaited_once()


@pytest.mark.asyncio
async def test_set_light_state_to_target_pushes_one_light(sync, gateway, store, office_target):
    await store.update_target_state("Office", office_target)

    await sync.set_light_state_to_target("L2", T0)

    gateway.update_light_state.assert_awaited_once()
    light_id, state = gateway.update_light_state.await_args.args
    assert light_id == "L2"
    assert (state.brightness, state.temperature_mirek, state.on) == (80, 350, True)
    assert await store.get_light_last_update("L2") == T0


def _target(on=True, current=False, frm="07:00", to="09:00"):
    return LightState(brightness=50, temperature_mirek=300, on=on, auto_on_from=frm, auto_on_to=to, current_on_state=current)


@pytest.mark.parametrize(
    "target, hour, skip",
    [
        (_target(), 8, False),
        (_target(), 9, True),
        (_target(), 6, True),
        (_target(current=True), 22, False),  # already on
        (_target(on=False), 22, False),  # switching off is always allowed
        (_target(frm=None, to=None), 22, False),  # no window configured
        (_target(frm="22:00", to="06:00"), 23, False),  # window wraps midnight
        (_target(frm="22:00", to="06:00"), 5, False),
        (_target(frm="22:00", to="06:00"), 6, True),
        (_target(frm="22:00", to="06:00"), 12, True),
    ],
)
def test_outside_auto_on_window(target, hour, skip):
    now = datetime(2024, 3, 1, hour, 0, tzinfo=ZoneInfo("Europe/London"))
    assert outside_auto_on_window(target, now) is skip
