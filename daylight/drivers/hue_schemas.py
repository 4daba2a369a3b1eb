from __future__ import annotations
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..domain.models import EventBatch, EventData


class ResourceRef(BaseModel):
    rid: str
    rtype: str


class Metadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    archetype: str = ""


class OnState(BaseModel):
    on: bool


class Dimming(BaseModel):
    model_config = ConfigDict(extra="ignore")

    brightness: float


class MirekSchema(BaseModel):
    mirek_minimum: int = 0
    mirek_maximum: int = 0


class ColorTemperature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mirek: Optional[int] = None
    mirek_schema: MirekSchema = Field(default_factory=MirekSchema)


class HueDevice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Metadata = Field(default_factory=Metadata)
    services: List[ResourceRef] = []


class HueLight(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Metadata = Field(default_factory=Metadata)
    on: OnState
    owner: ResourceRef
    dimming: Optional[Dimming] = None
    color_temperature: Optional[ColorTemperature] = None


class HueGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Metadata = Field(default_factory=Metadata)
    children: List[ResourceRef] = []


class SceneActionBody(BaseModel):
    # keep colour/gradient/effects etc. untouched when writing back
    model_config = ConfigDict(extra="allow")

    on: Optional[OnState] = None
    dimming: Optional[Dimming] = None
    color_temperature: Optional[dict[str, Any]] = None


class SceneAction(BaseModel):
    target: ResourceRef
    action: SceneActionBody


class HueScene(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Metadata = Field(default_factory=Metadata)
    actions: List[SceneAction] = []


class DeviceResponse(BaseModel):
    errors: List[Any] = []
    data: List[HueDevice] = []


class LightResponse(BaseModel):
    errors: List[Any] = []
    data: List[HueLight] = []


class GroupResponse(BaseModel):
    errors: List[Any] = []
    data: List[HueGroup] = []


class SceneResponse(BaseModel):
    errors: List[Any] = []
    data: List[HueScene] = []


# --- event stream ---

class EventItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    status: Optional[str] = None
    on: Optional[OnState] = None
    dimming: Optional[Dimming] = None
    color_temperature: Optional[ColorTemperature] = None

    def to_domain(self) -> EventData:
        return EventData(
            id=self.id,
            type=self.type,
            status=self.status,
            on=self.on.on if self.on else None,
            brightness=self.dimming.brightness if self.dimming else None,
            mirek=self.color_temperature.mirek if self.color_temperature else None,
        )


class EventBatchIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    creationtime: datetime
    type: str
    data: List[EventItem] = []

    def to_domain(self) -> EventBatch:
        return EventBatch(
            creation_time=self.creationtime,
            type=self.type,
            data=tuple(item.to_domain() for item in self.data),
        )


event_batches = TypeAdapter(List[EventBatchIn])
