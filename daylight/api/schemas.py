from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional


class SimLightChangeRequest(BaseModel):
    on: Optional[bool] = None
    brightness: Optional[int] = Field(default=None, ge=0, le=100)
    mirek: Optional[int] = Field(default=None, ge=0)


class SimReachableRequest(BaseModel):
    reachable: bool
