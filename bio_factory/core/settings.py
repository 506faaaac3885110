from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DeliveryMode = Literal["immediate", "deferred"]


class KernelSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    trigger_epsilon: float = Field(default=0.001, gt=0)
    disease_progression_seconds: float = Field(default=30.0, gt=0)
    default_recipe_priority: int = 999


class BusSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delivery: DeliveryMode = "immediate"
    max_publish_depth: int = Field(default=32, ge=1, le=1024)
    max_cascade_events: int = Field(default=10_000, ge=1)


class ProgressionSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    autosave_interval_seconds: float = Field(default=30.0, gt=0)


class EngineSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kernel: KernelSettings = Field(default_factory=KernelSettings)
    bus: BusSettings = Field(default_factory=BusSettings)
    progression: ProgressionSettings = Field(default_factory=ProgressionSettings)

    def as_dict(self) -> dict[str, Any]:
        return json.loads(self.model_dump_json())


def merge_settings(payload: dict[str, Any] | None) -> dict[str, Any]:
    if not isinstance(payload, dict):
        payload = {}
    return EngineSettings.model_validate(payload).as_dict()


def default_settings() -> dict[str, Any]:
    return EngineSettings().as_dict()
