from __future__ import annotations
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from .models import LightState

MIN_TEMPERATURE_KELVIN = 2000


@dataclass(frozen=True)
class IntervalStep:
    time: datetime
    brightness: int
    temperature_kelvin: int
    transition_at: int = 0  # % of the interval before the value starts moving
    off: bool = False


@dataclass(frozen=True)
class Interval:
    start: IntervalStep
    end: IntervalStep
    rooms: tuple[str, ...] = ()
    zones: tuple[str, ...] = ()

    def progress(self, timestamp: datetime) -> float:
        """Fraction of the interval elapsed at `timestamp`, held at 0 until transition_at."""
        # same-zone subtraction counts wall-clock time, not elapsed time
        start = self.start.time.astimezone(timezone.utc)
        end = self.end.time.astimezone(timezone.utc)
        duration = (end - start).total_seconds()
        if duration <= 0:
            return 0.0
        elapsed = (timestamp.astimezone(timezone.utc) - start).total_seconds()
        p = min(1.0, max(0.0, elapsed / duration))
        if p < self.start.transition_at / 100:
            return 0.0
        return p

    def temperature_kelvin_at(self, timestamp: datetime) -> float:
        p = self.progress(timestamp)
        return self.start.temperature_kelvin + p * (self.end.temperature_kelvin - self.start.temperature_kelvin)

    def brightness_at(self, timestamp: datetime) -> int:
        p = self.progress(timestamp)
        return int(math.floor(self.start.brightness + p * (self.end.brightness - self.start.brightness)))

    def calculate_target_light_state(self, timestamp: datetime) -> LightState:
        if self.start.off:
            return LightState(brightness=0, temperature_mirek=0, on=False)

        kelvin = max(self.temperature_kelvin_at(timestamp), MIN_TEMPERATURE_KELVIN)
        return LightState(
            brightness=self.brightness_at(timestamp),
            temperature_mirek=round(1_000_000 / kelvin),
            on=True,
        )
