from __future__ import annotations
import logging
from datetime import datetime, time
from typing import Mapping, Optional
from zoneinfo import ZoneInfo

from astral import LocationInfo
from astral.sun import elevation as solar_elevation, sun

from ..core.timeutil import at_clock, parse_duration
from .errors import ScheduleError
from .interval import Interval, IntervalStep
from .models import (
    END_OF_DAY,
    START_OF_DAY,
    SUNRISE,
    SUNSET,
    DayPattern,
    GeoLocation,
    PatternStep,
    Schedule,
)

logger = logging.getLogger(__name__)

_END_OF_DAY = time(23, 59, 59, 999999)


def sunrise_sunset(pattern: DayPattern, geo: GeoLocation, day: datetime) -> tuple[datetime, datetime]:
    """Astronomical sunrise/sunset for `day`, clamped to the pattern's bounds."""
    if None in (pattern.sunrise_min, pattern.sunrise_max, pattern.sunset_min, pattern.sunset_max):
        raise ScheduleError(f"Day pattern '{pattern.name}' is dynamic but lacks sunrise/sunset bounds")
    tz = day.tzinfo
    loc = LocationInfo(latitude=geo.latitude, longitude=geo.longitude)
    sunrise_min = at_clock(day, pattern.sunrise_min)
    sunrise_max = at_clock(day, pattern.sunrise_max)
    sunset_min = at_clock(day, pattern.sunset_min)
    sunset_max = at_clock(day, pattern.sunset_max)

    try:
        events = sun(loc.observer, date=day.date(), tzinfo=tz)
        sunrise, sunset = events["sunrise"], events["sunset"]
    except ValueError:
        # polar day or night: pin to whichever bounds match the light outside
        noon = at_clock(day, time(12, 0))
        if solar_elevation(loc.observer, noon) > 0:
            sunrise, sunset = sunrise_min, sunset_max
        else:
            sunrise, sunset = sunrise_max, sunset_min
        logger.warning("No sunrise/sunset on %s, using pattern bounds", day.date())

    sunrise = min(max(sunrise, sunrise_min), sunrise_max)
    sunset = min(max(sunset, sunset_min), sunset_max)
    return sunrise, sunset


def normalize_steps(pattern: DayPattern) -> list[PatternStep]:
    """Bracket the pattern with startofday/endofday steps carrying the default values."""
    steps = list(pattern.pattern)
    default = pattern.default
    if not steps or steps[0].time != START_OF_DAY:
        steps.insert(0, PatternStep(START_OF_DAY, default.temperature, default.brightness, 0))
    if steps[-1].time != END_OF_DAY:
        steps.append(PatternStep(END_OF_DAY, default.temperature, default.brightness, 0))
    return steps


def step_time(
    anchor: str,
    day: datetime,
    sunrise: Optional[datetime],
    sunset: Optional[datetime],
) -> datetime:
    for event, event_time in ((SUNRISE, sunrise), (SUNSET, sunset)):
        if anchor.startswith(event):
            if event_time is None:
                raise ScheduleError(f"'{anchor}' needs a dynamic day pattern")
            offset = anchor[len(event):]
            if not offset:
                return event_time
            try:
                return event_time + parse_duration(offset)
            except ValueError as e:
                raise ScheduleError(f"Invalid offset in '{anchor}': {e}") from e

    if anchor == START_OF_DAY:
        return at_clock(day, time(0, 0))
    if anchor == END_OF_DAY:
        return at_clock(day, _END_OF_DAY)

    try:
        return at_clock(day, anchor)
    except ValueError as e:
        raise ScheduleError(f"Invalid step time '{anchor}'") from e


def resolve_interval(
    pattern: DayPattern,
    geo: GeoLocation,
    t: datetime,
    rooms: tuple[str, ...] = (),
    zones: tuple[str, ...] = (),
) -> Interval:
    """Find the pair of pattern steps bracketing `t` on t's calendar day."""
    sunrise = sunset = None
    if pattern.type == "dynamic":
        sunrise, sunset = sunrise_sunset(pattern, geo, t)

    steps = normalize_steps(pattern)
    times = [step_time(s.time, t, sunrise, sunset) for s in steps]

    last = len(steps) - 2
    for i in range(len(steps) - 1):
        start, end = times[i], times[i + 1]
        # the final interval is closed so the last instant of the day resolves too
        if start <= t < end or (i == last and t == end):
            start_step, end_step = steps[i], steps[i + 1]
            return Interval(
                start=IntervalStep(
                    time=start,
                    brightness=start_step.brightness,
                    temperature_kelvin=start_step.temperature,
                    transition_at=start_step.transition_at,
                    off=start_step.off,
                ),
                end=IntervalStep(
                    time=end,
                    brightness=end_step.brightness,
                    temperature_kelvin=end_step.temperature,
                    transition_at=end_step.transition_at,
                    off=end_step.off,
                ),
                rooms=rooms,
                zones=zones,
            )

    raise ScheduleError(f"No interval of day pattern '{pattern.name}' contains {t.isoformat()}")


class ScheduleEngine:
    def __init__(self, day_patterns: Mapping[str, DayPattern], geo: GeoLocation, tz: ZoneInfo) -> None:
        self._patterns = dict(day_patterns)
        self._geo = geo
        self._tz = tz

    def day_pattern(self, name: str) -> DayPattern:
        try:
            return self._patterns[name]
        except KeyError:
            raise ScheduleError(f"Unknown day pattern '{name}'") from None

    def get_schedule_interval_for_time(self, schedule: Schedule, t: datetime) -> Interval:
        local = t.astimezone(self._tz)
        interval = resolve_interval(
            self.day_pattern(schedule.day_pattern),
            self._geo,
            local,
            rooms=schedule.rooms,
            zones=schedule.zones,
        )
        logger.debug(
            "Active interval for %s: %s -> %s",
            schedule.name,
            interval.start.time.strftime("%H:%M"),
            interval.end.time.strftime("%H:%M"),
        )
        return interval

