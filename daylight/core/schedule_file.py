from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..domain.errors import ConfigError
from ..domain.models import (
    END_OF_DAY,
    START_OF_DAY,
    SUNRISE,
    SUNSET,
    AutoOnWindow,
    DayPattern,
    GeoLocation,
    PatternStep,
    Schedule,
)
from .timeutil import parse_clock, parse_duration

_CLOCK = re.compile(r"^\d{1,2}:\d{2}$")


def _check_clock(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not _CLOCK.match(v):
        raise ValueError(f"Invalid time format: {v}, expected HH:MM")
    parse_clock(v)
    return v


def _check_anchor(v: str) -> str:
    if v in (START_OF_DAY, END_OF_DAY):
        return v
    for event in (SUNRISE, SUNSET):
        if v.startswith(event):
            if v != event:
                parse_duration(v[len(event):])
            return v
    return _check_clock(v)


Clock = Annotated[str, AfterValidator(_check_clock)]
Anchor = Annotated[str, AfterValidator(_check_anchor)]


class PatternStepIn(BaseModel):
    time: Anchor
    temperature: int = Field(gt=0)
    brightness: int = Field(ge=0, le=100)
    transitionAt: int = Field(default=0, ge=0, le=100)
    off: bool = False


class DefaultStepIn(BaseModel):
    time: str = ""
    temperature: int = Field(gt=0)
    brightness: int = Field(ge=0, le=100)


class DayPatternIn(BaseModel):
    type: Literal["fixed", "dynamic"] = "fixed"
    sunriseMin: Optional[Clock] = None
    sunriseMax: Optional[Clock] = None
    sunsetMin: Optional[Clock] = None
    sunsetMax: Optional[Clock] = None
    default: DefaultStepIn
    pattern: List[PatternStepIn] = Field(min_length=1)

    @model_validator(mode="after")
    def check_sun_bounds(self) -> "DayPatternIn":
        bounds = (self.sunriseMin, self.sunriseMax, self.sunsetMin, self.sunsetMax)
        uses_sun = any(s.time.startswith((SUNRISE, SUNSET)) for s in self.pattern)
        if self.type == "dynamic" and None in bounds:
            raise ValueError("dynamic patterns need sunriseMin/Max and sunsetMin/Max")
        if self.type == "fixed" and uses_sun:
            raise ValueError("sunrise/sunset steps need a dynamic pattern")
        return self


class AutoOnIn(BaseModel):
    from_: Clock = Field(alias="from")
    to: Clock


class ScheduleIn(BaseModel):
    name: str = Field(min_length=1)
    disabled: bool = False
    rooms: List[str] = []
    zones: List[str] = []
    dayPattern: str
    autoOn: Optional[AutoOnIn] = None


class ScheduleFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    bridgeIp: Optional[str] = None
    hueApplicationKey: Optional[str] = None
    geoLocation: Optional[str] = None
    schedules: List[ScheduleIn] = Field(min_length=1)
    dayPatterns: Dict[str, DayPatternIn]

    @field_validator("geoLocation")
    @classmethod
    def check_geo(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                GeoLocation.parse(v)
            except ValueError:
                raise ValueError(f"Invalid geoLocation: {v}, expected \"lat,lng\"")
        return v

    @model_validator(mode="after")
    def check_references(self) -> "ScheduleFile":
        names = [s.name for s in self.schedules]
        if len(names) != len(set(names)):
            raise ValueError("schedule names must be unique")
        for s in self.schedules:
            if s.dayPattern not in self.dayPatterns:
                raise ValueError(f"schedule {s.name} refers to unknown day pattern {s.dayPattern}")
        return self


@dataclass(frozen=True)
class LoadedConfig:
    schedules: tuple[Schedule, ...]
    day_patterns: dict[str, DayPattern]
    bridge_ip: Optional[str] = None
    hue_application_key: Optional[str] = None
    geo_location: Optional[GeoLocation] = None


def _day_pattern(name: str, p: DayPatternIn) -> DayPattern:
    return DayPattern(
        name=name,
        type=p.type,
        default=PatternStep(p.default.time, p.default.temperature, p.default.brightness),
        pattern=tuple(
            PatternStep(
                time=s.time,
                temperature=s.temperature,
                brightness=s.brightness,
                transition_at=s.transitionAt,
                off=s.off,
            )
            for s in p.pattern
        ),
        sunrise_min=p.sunriseMin,
        sunrise_max=p.sunriseMax,
        sunset_min=p.sunsetMin,
        sunset_max=p.sunsetMax,
    )


def parse_schedule_file(data: dict) -> LoadedConfig:
    try:
        f = ScheduleFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid schedule configuration: {e}") from e

    return LoadedConfig(
        schedules=tuple(
            Schedule(
                name=s.name,
                day_pattern=s.dayPattern,
                rooms=tuple(s.rooms),
                zones=tuple(s.zones),
                auto_on=AutoOnWindow(start=s.autoOn.from_, end=s.autoOn.to) if s.autoOn else None,
                disabled=s.disabled,
            )
            for s in f.schedules
        ),
        day_patterns={name: _day_pattern(name, p) for name, p in f.dayPatterns.items()},
        bridge_ip=f.bridgeIp,
        hue_application_key=f.hueApplicationKey,
        geo_location=GeoLocation.parse(f.geoLocation) if f.geoLocation else None,
    )


def load_schedule_file(path: str | Path) -> LoadedConfig:
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, ValueError) as e:
        raise ConfigError(f"Unable to read {path}: {e}") from e
    return parse_schedule_file(data)
