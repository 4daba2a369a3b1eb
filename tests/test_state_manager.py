import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, call
from zoneinfo import ZoneInfo

import pytest

from daylight.domain.errors import StoreError
from daylight.domain.models import DayPattern, EventBatch, GeoLocation, LightState, PatternStep, Schedule
from daylight.domain.schedule import ScheduleEngine
from daylight.domain.state_manager import LogicalStateManager

from factories import T0, light_event, zigbee_event

TARGET = LightState(brightness=80, temperature_mirek=350, on=True)


@pytest.fixture
def store():
    locks = {}
    s = AsyncMock()
    s.light_lock = MagicMock(side_effect=lambda light_id: locks.setdefault(light_id, asyncio.Lock()))
    s.get_light_target_state.return_value = TARGET
    s.is_scheduled_light.return_value = True
    s.get_light_service_id_for_zigbee_id.return_value = "L1"
    s.get_light_last_update.return_value = T0
    return s


@pytest.fixture
def setter():
    return AsyncMock()


@pytest.fixture
def engine():
    pattern = DayPattern(
        name="office",
        type="fixed",
        default=PatternStep("", 2000, 10),
        pattern=(PatternStep("08:00", 2857, 80), PatternStep("18:00", 2857, 80)),
    )
    return ScheduleEngine({"office": pattern}, GeoLocation(51.5, -0.1), ZoneInfo("UTC"))


@pytest.fixture
def manager(store, engine, setter):
    return LogicalStateManager(store, engine, setter)


def assert_no_mutation(store, setter):
    store.set_light_on_state_override.assert_not_awaited()
    store.set_light_brightness_override.assert_not_awaited()
    store.set_light_colour_temp_override.assert_not_awaited()
    store.clear_light_overrides.assert_not_awaited()
    store.set_light_unreachable.assert_not_awaited()
    setter.set_light_state_to_target.assert_not_awaited()


# --- on/off ---

@pytest.mark.asyncio
async def test_on_echo_inside_settle_window_is_ignored(manager, store, setter):
    await manager.handle_bridge_events([light_event(T0 + timedelta(seconds=1), on=True)])
    assert_no_mutation(store, setter)


@pytest.mark.asyncio
async def test_on_event_without_prior_push_counts_as_echo(manager, store, setter):
    store.get_light_last_update.return_value = None
    await manager.handle_bridge_events([light_event(T0, on=True)])
    assert_no_mutation(store, setter)


@pytest.mark.asyncio
async def test_switch_off_against_target_records_override(manager, store, setter):
    t = T0 + timedelta(seconds=1)
    await manager.handle_bridge_events([light_event(t, on=False)])

    store.set_light_on_state_override.assert_awaited_once_with("L1", False, True, t)
    setter.set_light_state_to_target.assert_not_awaited()


@pytest.mark.asyncio
async def test_switch_into_target_state_pushes_full_target(manager, store, setter):
    t = T0 + timedelta(minutes=5)
    await manager.handle_bridge_events([light_event(t, on=True)])

    setter.set_light_state_to_target.assert_awaited_once_with("L1", t)
    store.set_light_on_state_override.assert_not_awaited()


@pytest.mark.asyncio
async def test_push_happens_after_the_light_lock_is_released(manager, store, setter):
    async def check_lock(light_id, t):
        assert not store.light_lock(light_id).locked()

    setter.set_light_state_to_target.side_effect = check_lock
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=5), on=True)])
    setter.set_light_state_to_target.assert_awaited_once()


@pytest.mark.asyncio
async def test_on_field_wins_over_dimming_in_same_item(manager, store, setter):
    t = T0 + timedelta(minutes=3)
    await manager.handle_bridge_events([light_event(t, on=False, brightness=40.0)])

    store.set_light_on_state_override.assert_awaited_once()
    store.set_light_brightness_override.assert_not_awaited()


# --- brightness / colour temperature ---

@pytest.mark.asyncio
@pytest.mark.parametrize("reported", [79.0, 79.6, 80.0, 81.0])
async def test_brightness_within_tolerance_clears_override(manager, store, setter, reported):
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), brightness=reported)])

    store.clear_light_overrides.assert_awaited_once_with("L1")
    store.set_light_brightness_override.assert_not_awaited()


@pytest.mark.asyncio
async def test_brightness_change_outside_tolerance_records_override(manager, store):
    t = T0 + timedelta(minutes=3)
    await manager.handle_bridge_events([light_event(t, brightness=40.0)])

    store.set_light_brightness_override.assert_awaited_once_with("L1", 40, 80, t)


@pytest.mark.asyncio
async def test_change_trailing_our_write_is_ignored(manager, store, setter):
    await manager.handle_bridge_events([light_event(T0 + timedelta(seconds=1), brightness=40.0)])
    assert_no_mutation(store, setter)


@pytest.mark.asyncio
async def test_zero_brightness_is_ignored(manager, store, setter):
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), brightness=0.0)])
    assert_no_mutation(store, setter)


@pytest.mark.asyncio
async def test_zero_mirek_is_ignored(manager, store, setter):
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), mirek=0)])
    assert_no_mutation(store, setter)


@pytest.mark.asyncio
async def test_mirek_within_tolerance_clears_override(manager, store):
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), mirek=355)])
    store.clear_light_overrides.assert_awaited_once_with("L1")


@pytest.mark.asyncio
async def test_mirek_change_records_colour_override(manager, store):
    t = T0 + timedelta(minutes=3)
    await manager.handle_bridge_events([light_event(t, mirek=250)])
    store.set_light_colour_temp_override.assert_awaited_once_with("L1", 250, 350, t)


@pytest.mark.asyncio
async def test_dimming_and_colour_in_one_item_are_both_handled(manager, store):
    t = T0 + timedelta(minutes=3)
    await manager.handle_bridge_events([light_event(t, brightness=40.0, mirek=250)])

    store.set_light_brightness_override.assert_awaited_once_with("L1", 40, 80, t)
    store.set_light_colour_temp_override.assert_awaited_once_with("L1", 250, 350, t)


@pytest.mark.asyncio
async def test_custom_tolerances(store, engine, setter):
    manager = LogicalStateManager(store, engine, setter, brightness_tolerance=5, colour_temp_tolerance=0)
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), brightness=76.0)])
    store.clear_light_overrides.assert_awaited_once()

    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), mirek=351)])
    store.set_light_colour_temp_override.assert_awaited_once()


# --- connectivity ---

@pytest.mark.asyncio
async def test_connectivity_issue_marks_unreachable(manager, store, setter):
    t = T0 + timedelta(minutes=1)
    await manager.handle_bridge_events([zigbee_event(t, "zb-L1", "connectivity_issue")])

    store.get_light_service_id_for_zigbee_id.assert_awaited_once_with("zb-L1")
    store.set_light_unreachable.assert_awaited_once_with("L1", t)
    setter.set_light_state_to_target.assert_not_awaited()


@pytest.mark.asyncio
async def test_powered_on_light_is_pushed_to_target(manager, store, setter):
    t = T0 + timedelta(minutes=10)
    await manager.handle_bridge_events([zigbee_event(t, "zb-L1", "connected")])
    setter.set_light_state_to_target.assert_awaited_once_with("L1", t)


@pytest.mark.asyncio
async def test_powered_on_light_with_off_target_records_override(manager, store, setter):
    store.get_light_target_state.return_value = LightState(on=False)
    t = T0 + timedelta(minutes=10)
    await manager.handle_bridge_events([zigbee_event(t, "zb-L1", "connected")])

    store.set_light_on_state_override.assert_awaited_once_with("L1", True, False, t)
    setter.set_light_state_to_target.assert_not_awaited()


@pytest.mark.asyncio
async def test_connectivity_for_unknown_device_is_ignored(manager, store, setter):
    store.get_light_service_id_for_zigbee_id.return_value = None
    await manager.handle_bridge_events([zigbee_event(T0, "zb-other", "connectivity_issue")])
    assert_no_mutation(store, setter)


# --- filtering and failures ---

@pytest.mark.asyncio
async def test_unscheduled_light_is_ignored(manager, store, setter):
    store.is_scheduled_light.return_value = False
    await manager.handle_bridge_events([light_event(T0 + timedelta(minutes=3), on=False)])
    assert_no_mutation(store, setter)
    store.get_light_target_state.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_update_batches_are_ignored(manager, store, setter):
    batch = light_event(T0 + timedelta(minutes=3), on=False)
    await manager.handle_bridge_events([EventBatch(creation_time=batch.creation_time, type="add", data=batch.data)])
    assert_no_mutation(store, setter)
    store.is_scheduled_light.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_failure_skips_only_that_event(manager, store):
    t = T0 + timedelta(minutes=3)
    store.set_light_brightness_override.side_effect = [StoreError("locked"), None]

    await manager.handle_bridge_events([light_event(t, "L1", brightness=40.0), light_event(t, "L2", brightness=30.0)])

    assert store.set_light_brightness_override.await_args_list == [
        call("L1", 40, 80, t),
        call("L2", 30, 80, t),
    ]


# --- targets ---

@pytest.mark.asyncio
async def test_update_all_target_states_skips_disabled(manager, store):
    t = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    schedules = [
        Schedule(name="Office", day_pattern="office"),
        Schedule(name="Spare", day_pattern="office", disabled=True),
    ]

    await manager.update_all_target_states(schedules, t)

    store.update_target_state.assert_awaited_once_with(
        "Office", LightState(brightness=80, temperature_mirek=350, on=True)
    )


@pytest.mark.asyncio
async def test_broken_schedule_does_not_stop_others(manager, store):
    t = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    schedules = [
        Schedule(name="Broken", day_pattern="missing"),
        Schedule(name="Office", day_pattern="office"),
    ]

    await manager.update_all_target_states(schedules, t)

    store.update_target_state.assert_awaited_once()
    assert store.update_target_state.await_args.args[0] == "Office"


@pytest.mark.asyncio
async def test_settle_window_boundary(manager, store):
    assert await manager.event_inside_settle_window(T0 + timedelta(milliseconds=1999), "L1") is True
    assert await manager.event_inside_settle_window(T0 + timedelta(seconds=2), "L1") is False
