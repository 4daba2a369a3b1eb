from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional


# bridge event vocabulary
EVENT_BATCH_UPDATE = "update"
EVENT_TYPE_ZIGBEE_CONNECTIVITY = "zigbee_connectivity"
EVENT_TYPE_LIGHT = "light"
STATUS_CONNECTED = "connected"
STATUS_CONNECTIVITY_ISSUE = "connectivity_issue"

# step anchors
START_OF_DAY = "startofday"
END_OF_DAY = "endofday"
SUNRISE = "sunrise"
SUNSET = "sunset"

PatternType = Literal["fixed", "dynamic"]
ChangeType = Literal["brightness", "colour_temp"]


@dataclass(frozen=True)
class PatternStep:
    time: str  # "HH:MM" | "startofday" | "endofday" | "sunrise[+-dur]" | "sunset[+-dur]"
    temperature: int  # kelvin
    brightness: int  # 0-100
    transition_at: int = 0  # % of the interval the start value holds for
    off: bool = False


@dataclass(frozen=True)
class DayPattern:
    name: str
    type: PatternType
    default: PatternStep
    pattern: tuple[PatternStep, ...]
    sunrise_min: Optional[str] = None
    sunrise_max: Optional[str] = None
    sunset_min: Optional[str] = None
    sunset_max: Optional[str] = None


@dataclass(frozen=True)
class AutoOnWindow:
    start: str  # "HH:MM"
    end: str  # "HH:MM"


@dataclass(frozen=True)
class Schedule:
    name: str
    day_pattern: str
    rooms: tuple[str, ...] = ()
    zones: tuple[str, ...] = ()
    auto_on: Optional[AutoOnWindow] = None
    disabled: bool = False


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float

    @classmethod
    def parse(cls, s: str) -> "GeoLocation":
        lat, lng = s.split(",")
        return cls(latitude=float(lat), longitude=float(lng))


@dataclass(frozen=True)
class LightState:
    brightness: int = 0
    temperature_mirek: int = 0
    on: bool = False

    # only used to decide whether an on-transition should be skipped
    auto_on_from: Optional[str] = None
    auto_on_to: Optional[str] = None
    current_on_state: bool = False


@dataclass(frozen=True)
class AttributeOverride:
    value: int | bool
    target_at_override: int | bool
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LightOverride:
    on_state: Optional[AttributeOverride] = None
    brightness: Optional[AttributeOverride] = None
    colour_temp: Optional[AttributeOverride] = None

    @property
    def active(self) -> bool:
        return any((self.on_state, self.brightness, self.colour_temp))


@dataclass(frozen=True)
class AppliedSnapshot:
    time: datetime
    brightness: Optional[int]
    colour_temp: Optional[int]
    on_state: Optional[bool]


@dataclass(frozen=True)
class Light:
    light_service_id: str
    zigbee_service_id: str
    name: str
    schedule_name: str
    group_name: str = ""
    min_color_temp_mirek: int = 0
    max_color_temp_mirek: int = 0
    on: bool = False
    reachable: bool = True
    auto_on_from: Optional[str] = None
    auto_on_to: Optional[str] = None
    target: Optional[LightState] = None
    override: LightOverride = field(default_factory=LightOverride)
    last_applied: Optional[AppliedSnapshot] = None


@dataclass(frozen=True)
class Scene:
    id: str
    schedule_name: str
    target: Optional[LightState] = None


@dataclass(frozen=True)
class EventData:
    id: str
    type: str
    status: Optional[str] = None
    on: Optional[bool] = None
    brightness: Optional[float] = None
    mirek: Optional[int] = None


@dataclass(frozen=True)
class EventBatch:
    creation_time: datetime
    type: str
    data: tuple[EventData, ...] = ()
