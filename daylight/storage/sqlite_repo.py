from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional, Sequence

import aiosqlite

from ..domain.errors import StoreError
from ..domain.models import (
    AppliedSnapshot,
    AttributeOverride,
    Light,
    LightOverride,
    LightState,
    Scene,
)

_LIGHT_COLUMNS = """
    serviceid_light, serviceid_zigbee, name, controlled_by_schedule, group_name,
    auto_on_from, auto_on_to, unreachable, unreachable_since, on_state,
    target_brightness, target_colour_temp, target_on_state,
    last_update_time, last_update_brightness, last_update_colour_temp, last_update_on_state,
    override_on_state, override_target_on_state, override_on_state_time,
    override_brightness, override_target_brightness, override_brightness_time,
    override_colour_temp, override_target_colour_temp, override_colour_temp_time,
    min_colour_temp, max_colour_temp
"""

_CLEAR_OVERRIDES = """
    override_on_state = NULL,
    override_target_on_state = NULL,
    override_on_state_time = NULL,
    override_brightness = NULL,
    override_target_brightness = NULL,
    override_brightness_time = NULL,
    override_colour_temp = NULL,
    override_target_colour_temp = NULL,
    override_colour_temp_time = NULL,
    override_time = NULL
"""


def _ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def _opt_bool(v: Optional[int]) -> Optional[bool]:
    return None if v is None else bool(v)


class SQLiteRepository:
    """State store for lights and scenes.

    Every statement is atomic on its own; callers hold `light_lock(id)` around
    read-decide-write sequences that touch one light.
    """

    def __init__(
        self,
        path: str,
        max_override_age: timedelta = timedelta(minutes=120),
        unreachable_retry: timedelta = timedelta(minutes=10),
        reset_on_init: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self._path = path
        self._max_override_age = max_override_age
        self._unreachable_retry = unreachable_retry
        self._reset_on_init = reset_on_init
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self._path, timeout=self._timeout) as db:
                yield db
        except aiosqlite.Error as e:
            raise StoreError(str(e)) from e

    def light_lock(self, light_id: str) -> asyncio.Lock:
        lock = self._locks.get(light_id)
        if lock is None:
            lock = self._locks[light_id] = asyncio.Lock()
        return lock

    async def init(self) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS light (
                    serviceid_light TEXT PRIMARY KEY,
                    serviceid_zigbee TEXT,
                    name TEXT,
                    controlled_by_schedule TEXT,
                    group_name TEXT,
                    auto_on_from TEXT,
                    auto_on_to TEXT,
                    unreachable INTEGER NOT NULL DEFAULT 0,
                    unreachable_since TEXT,
                    on_state INTEGER NOT NULL DEFAULT 0,
                    target_brightness INTEGER,
                    target_colour_temp INTEGER,
                    target_on_state INTEGER,
                    last_update_time TEXT,
                    last_update_brightness INTEGER,
                    last_update_colour_temp INTEGER,
                    last_update_on_state INTEGER,
                    override_on_state INTEGER,
                    override_target_on_state INTEGER,
                    override_on_state_time TEXT,
                    override_brightness INTEGER,
                    override_target_brightness INTEGER,
                    override_brightness_time TEXT,
                    override_colour_temp INTEGER,
                    override_target_colour_temp INTEGER,
                    override_colour_temp_time TEXT,
                    override_time TEXT,
                    min_colour_temp INTEGER,
                    max_colour_temp INTEGER
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scene (
                    id TEXT PRIMARY KEY,
                    controlled_by_schedule TEXT,
                    target_brightness INTEGER,
                    target_colour_temp INTEGER,
                    target_on_state INTEGER
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_light_schedule ON light(controlled_by_schedule)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_light_zigbee ON light(serviceid_zigbee)")
            if self._reset_on_init:
                # topology is rediscovered on every start
                await db.execute("DELETE FROM light")
                await db.execute("DELETE FROM scene")
            await db.commit()

    async def add_lights(self, lights: Sequence[Light]) -> None:
        async with self._connect() as db:
            for light in lights:
                await db.execute(
                    """
                    INSERT INTO light
                        (serviceid_light, serviceid_zigbee, name, controlled_by_schedule, group_name,
                         on_state, min_colour_temp, max_colour_temp, auto_on_from, auto_on_to)
                    VALUES (?,?,?,?,?,?,?,?,?,?)
                    ON CONFLICT(serviceid_light) DO UPDATE SET
                        serviceid_zigbee=excluded.serviceid_zigbee,
                        name=excluded.name,
                        controlled_by_schedule=excluded.controlled_by_schedule,
                        group_name=excluded.group_name,
                        on_state=excluded.on_state,
                        min_colour_temp=excluded.min_colour_temp,
                        max_colour_temp=excluded.max_colour_temp,
                        auto_on_from=excluded.auto_on_from,
                        auto_on_to=excluded.auto_on_to
                    """,
                    (
                        light.light_service_id,
                        light.zigbee_service_id,
                        light.name,
                        light.schedule_name,
                        light.group_name,
                        1 if light.on else 0,
                        light.min_color_temp_mirek,
                        light.max_color_temp_mirek,
                        light.auto_on_from,
                        light.auto_on_to,
                    ),
                )
            await db.commit()

    async def add_scenes(self, scenes: Sequence[Scene]) -> None:
        async with self._connect() as db:
            for scene in scenes:
                await db.execute(
                    "INSERT INTO scene(id, controlled_by_schedule) VALUES (?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET controlled_by_schedule=excluded.controlled_by_schedule",
                    (scene.id, scene.schedule_name),
                )
            await db.commit()

    async def update_target_state(self, schedule_name: str, target: LightState) -> None:
        params = (target.brightness, target.temperature_mirek, 1 if target.on else 0, schedule_name)
        async with self._connect() as db:
            await db.execute(
                "UPDATE light SET target_brightness = ?, target_colour_temp = ?, target_on_state = ? "
                "WHERE controlled_by_schedule = ?",
                params,
            )
            await db.execute(
                "UPDATE scene SET target_brightness = ?, target_colour_temp = ?, target_on_state = ? "
                "WHERE controlled_by_schedule = ?",
                params,
            )
            await db.commit()

    async def get_light_target_state(self, light_id: str) -> LightState:
        async with self._connect() as db:
            cur = await db.execute(
                """
                SELECT coalesce(target_brightness, 0), coalesce(target_colour_temp, 0),
                       coalesce(target_on_state, 0), min_colour_temp, max_colour_temp,
                       auto_on_from, auto_on_to, on_state
                FROM light
                WHERE serviceid_light = ?
                """,
                (light_id,),
            )
            row = await cur.fetchone()
        if row is None:
            raise StoreError(f"Unknown light {light_id}")
        b, t, o, mint, maxt, auto_from, auto_to, on = row

        # constrain to what the particular light can do
        if mint and t < mint:
            t = mint
        if maxt and t > maxt:
            t = maxt

        return LightState(
            brightness=b,
            temperature_mirek=t,
            on=bool(o),
            auto_on_from=auto_from or None,
            auto_on_to=auto_to or None,
            current_on_state=bool(on),
        )

    async def get_scene_target_state(self, scene_id: str) -> LightState:
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT coalesce(target_brightness, 0), coalesce(target_colour_temp, 0), coalesce(target_on_state, 0) "
                "FROM scene WHERE id = ?",
                (scene_id,),
            )
            row = await cur.fetchone()
        if row is None:
            raise StoreError(f"Unknown scene {scene_id}")
        b, t, o = row
        return LightState(brightness=b, temperature_mirek=t, on=bool(o))

    async def _update_light(self, sql: str, params: tuple) -> None:
        async with self._connect() as db:
            await db.execute(sql, params)
            await db.commit()

    async def set_light_unreachable(self, light_id: str, at: datetime) -> None:
        # overrides are meaningless once the light has lost power
        await self._update_light(
            f"UPDATE light SET unreachable = 1, unreachable_since = ?, {_CLEAR_OVERRIDES} WHERE serviceid_light = ?",
            (_ts(at), light_id),
        )

    async def set_light_on_state_override(self, light_id: str, on: bool, target_on: bool, at: datetime) -> None:
        await self._update_light(
            """
            UPDATE light
            SET override_on_state = ?, override_target_on_state = ?, override_on_state_time = ?,
                override_time = ?, on_state = ?
            WHERE serviceid_light = ?
            """,
            (1 if on else 0, 1 if target_on else 0, _ts(at), _ts(at), 1 if on else 0, light_id),
        )

    async def set_light_brightness_override(self, light_id: str, brightness: int, target: int, at: datetime) -> None:
        await self._update_light(
            """
            UPDATE light
            SET override_brightness = ?, override_target_brightness = ?, override_brightness_time = ?,
                override_time = ?
            WHERE serviceid_light = ?
            """,
            (brightness, target, _ts(at), _ts(at), light_id),
        )

    async def set_light_colour_temp_override(self, light_id: str, mirek: int, target: int, at: datetime) -> None:
        await self._update_light(
            """
            UPDATE light
            SET override_colour_temp = ?, override_target_colour_temp = ?, override_colour_temp_time = ?,
                override_time = ?
            WHERE serviceid_light = ?
            """,
            (mirek, target, _ts(at), _ts(at), light_id),
        )

    async def clear_light_overrides(self, light_id: str) -> None:
        await self._update_light(f"UPDATE light SET {_CLEAR_OVERRIDES} WHERE serviceid_light = ?", (light_id,))

    async def mark_light_as_updated(self, light_id: str, at: datetime) -> None:
        await self._update_light(
            f"""
            UPDATE light
            SET last_update_time = ?,
                last_update_brightness = target_brightness,
                last_update_colour_temp = target_colour_temp,
                last_update_on_state = target_on_state,
                on_state = coalesce(target_on_state, on_state),
                unreachable = 0,
                unreachable_since = NULL,
                {_CLEAR_OVERRIDES}
            WHERE serviceid_light = ?
            """,
            (_ts(at), light_id),
        )

    async def is_scheduled_light(self, light_id: str) -> bool:
        async with self._connect() as db:
            cur = await db.execute("SELECT 1 FROM light WHERE serviceid_light = ?", (light_id,))
            row = await cur.fetchone()
        return row is not None

    async def get_light_service_id_for_zigbee_id(self, zigbee_id: str) -> Optional[str]:
        async with self._connect() as db:
            cur = await db.execute("SELECT serviceid_light FROM light WHERE serviceid_zigbee = ?", (zigbee_id,))
            row = await cur.fetchone()
        return row[0] if row else None

    async def get_light_last_update(self, light_id: str) -> Optional[datetime]:
        async with self._connect() as db:
            cur = await db.execute("SELECT last_update_time FROM light WHERE serviceid_light = ?", (light_id,))
            row = await cur.fetchone()
        return _dt(row[0]) if row else None

    async def get_all_controlling_light_ids(self, now: datetime) -> List[str]:
        async with self._connect() as db:
            cur = await db.execute(
                """
                SELECT serviceid_light
                FROM light
                WHERE target_on_state IS NOT NULL
                  -- the target differs from what was last pushed
                  AND (    target_brightness  != coalesce(last_update_brightness, -1)
                        OR target_colour_temp != coalesce(last_update_colour_temp, -1)
                        OR target_on_state    != coalesce(last_update_on_state, -1))
                  -- reachable, or unreachable long enough to try again
                  AND (unreachable = 0 OR unreachable_since < ?)
                  -- no override, or only an expired one
                  AND (   (override_on_state IS NULL AND override_brightness IS NULL AND override_colour_temp IS NULL)
                       OR override_time < ?)
                ORDER BY serviceid_light
                """,
                (_ts(now - self._unreachable_retry), _ts(now - self._max_override_age)),
            )
            rows = await cur.fetchall()
        return [r[0] for r in rows]

    async def get_all_scene_ids(self) -> List[str]:
        async with self._connect() as db:
            cur = await db.execute("SELECT id FROM scene ORDER BY id")
            rows = await cur.fetchall()
        return [r[0] for r in rows]

    async def list_lights(self) -> List[Light]:
        async with self._connect() as db:
            cur = await db.execute(f"SELECT {_LIGHT_COLUMNS} FROM light ORDER BY name")
            rows = await cur.fetchall()
        return [self._light_from_row(r) for r in rows]

    @staticmethod
    def _light_from_row(r: tuple) -> Light:
        (
            lid, zid, name, schedule_name, group_name,
            auto_from, auto_to, unreachable, _unreachable_since, on_state,
            tb, tt, to,
            lu_time, lu_b, lu_t, lu_o,
            ov_on, ov_t_on, ov_on_time,
            ov_b, ov_t_b, ov_b_time,
            ov_ct, ov_t_ct, ov_ct_time,
            mint, maxt,
        ) = r

        def override(value, target, at, cast=int):
            if value is None:
                return None
            return AttributeOverride(value=cast(value), target_at_override=cast(target), timestamp=_dt(at))

        return Light(
            light_service_id=lid,
            zigbee_service_id=zid or "",
            name=name or "",
            schedule_name=schedule_name or "",
            group_name=group_name or "",
            min_color_temp_mirek=mint or 0,
            max_color_temp_mirek=maxt or 0,
            on=bool(on_state),
            reachable=not unreachable,
            auto_on_from=auto_from,
            auto_on_to=auto_to,
            target=None if to is None else LightState(brightness=tb, temperature_mirek=tt, on=bool(to)),
            override=LightOverride(
                on_state=override(ov_on, ov_t_on, ov_on_time, cast=bool),
                brightness=override(ov_b, ov_t_b, ov_b_time),
                colour_temp=override(ov_ct, ov_t_ct, ov_ct_time),
            ),
            last_applied=None if lu_time is None else AppliedSnapshot(
                time=_dt(lu_time),
                brightness=lu_b,
                colour_temp=lu_t,
                on_state=_opt_bool(lu_o),
            ),
        )
