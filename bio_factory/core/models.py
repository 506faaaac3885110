from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

BiomarkerMode = Literal["add", "mul"]
TriggerOp = Literal[">=", "<=", ">", "<", "==", "!="]
EntryType = Literal["resource", "building", "recipe", "unit", "technology"]

SAVE_VERSION = 2

# Applies to every recipe output regardless of resource id or tags.
SYSTEM_WIDE_MODIFIER_KEY = "resource_gain"


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ContentModel(BaseModel):
    # Content rows carry descriptive fields (icons, tips, ui data) the engine never reads.
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class StatThresholdCondition(ContentModel):
    type: Literal["STAT_THRESHOLD"]
    stat: str = Field(min_length=1)
    value: float


class ItemCollectedCondition(ContentModel):
    type: Literal["ITEM_COLLECTED"]
    item_id: str = Field(alias="itemId", min_length=1)
    amount: float = Field(default=1, ge=0)


class KillCountCondition(ContentModel):
    type: Literal["KILL_COUNT"]
    unit_id: str = Field(alias="unitId", min_length=1)
    value: int = Field(ge=0)


class ResearchCompleteCondition(ContentModel):
    type: Literal["RESEARCH_COMPLETE"]
    tech_id: str = Field(alias="techId", min_length=1)


class StartDefaultCondition(ContentModel):
    type: Literal["START_DEFAULT"]


UnlockCondition = Annotated[
    Union[
        StatThresholdCondition,
        ItemCollectedCondition,
        KillCountCondition,
        ResearchCompleteCondition,
        StartDefaultCondition,
    ],
    Field(discriminator="type"),
]


class UnlockableEntry(ContentModel):
    id: str = Field(min_length=1)
    name: str = ""
    unlock_condition: UnlockCondition | None = None

    @property
    def requires_unlock(self) -> bool:
        return self.unlock_condition is not None and not isinstance(self.unlock_condition, StartDefaultCondition)


class BiomarkerMod(ContentModel):
    marker_id: str = Field(alias="markerId", min_length=1)
    mode: BiomarkerMode
    value: float


class ResourceType(UnlockableEntry):
    tags: list[str] = Field(default_factory=list)
    transferable: bool = True
    biomarker_mods: list[BiomarkerMod] = Field(default_factory=list)


class ResourceAmount(ContentModel):
    id: str = Field(min_length=1)
    amount: float = Field(gt=0)


class Recipe(UnlockableEntry):
    machine_ids: list[str] = Field(default_factory=list)
    inputs: list[ResourceAmount] = Field(default_factory=list)
    outputs: list[ResourceAmount] = Field(default_factory=list)
    waste_outputs: list[ResourceAmount] = Field(default_factory=list)
    time_seconds: float = Field(gt=0)
    priority: int | None = None
    unlock_by_research: list[str] = Field(default_factory=list)

    def input_map(self) -> dict[str, float]:
        return _sum_amounts(self.inputs)

    def output_map(self) -> dict[str, float]:
        return _sum_amounts(self.outputs)

    def waste_map(self) -> dict[str, float]:
        return _sum_amounts(self.waste_outputs)

    def referenced_resources(self) -> set[str]:
        return {entry.id for entry in (*self.inputs, *self.outputs, *self.waste_outputs)}


class Building(UnlockableEntry):
    size: Any = None
    hp: float | None = None
    supported_recipes: list[str] = Field(default_factory=list)


class Unit(UnlockableEntry):
    faction: str | None = None


class Technology(UnlockableEntry):
    research_time: float = Field(default=30.0, ge=0)


class Biomarker(ContentModel):
    id: str = Field(min_length=1)
    name: str = ""
    unit: str | None = None
    normal_range: tuple[float, float] | None = None
    baseline: float | None = None
    source: str | None = None
    formula: bool = False
    critical_low: float | None = None
    critical_high: float | None = None

    @field_validator("normal_range")
    @classmethod
    def validate_normal_range(cls, value: tuple[float, float] | None) -> tuple[float, float] | None:
        if value is not None and value[0] > value[1]:
            raise ValueError("normal_range minimum cannot exceed its maximum.")
        return value

    @property
    def derived(self) -> bool:
        return self.source is not None or self.formula

    def resting_value(self) -> float:
        if self.baseline is not None:
            return float(self.baseline)
        if self.normal_range is not None:
            low, high = self.normal_range
            return (low + high) / 2
        return 0.0


class DiseaseTrigger(ContentModel):
    marker_id: str = Field(alias="markerId", min_length=1)
    op: TriggerOp
    value: float


class SeverityTier(ContentModel):
    systemic_modifier: dict[str, float] = Field(default_factory=dict)
    effects: list[str] = Field(default_factory=list)


class DiseaseDefinition(ContentModel):
    id: str = Field(min_length=1)
    name: str = ""
    triggers: list[DiseaseTrigger] = Field(default_factory=list)
    effects: list[str] = Field(default_factory=list)
    severity_tiers: list[SeverityTier] = Field(default_factory=list)

    @property
    def max_tier(self) -> int:
        return max(1, len(self.severity_tiers))

    def tier(self, number: int) -> SeverityTier | None:
        if 1 <= number <= len(self.severity_tiers):
            return self.severity_tiers[number - 1]
        return None

    def tier_effects(self, number: int) -> list[str]:
        tier = self.tier(number)
        extra = [effect for effect in tier.effects if effect not in self.effects] if tier else []
        return [*self.effects, *extra]


class Modifier(StrictModel):
    source: str = Field(min_length=1)
    factors: dict[str, float] = Field(default_factory=dict)

    @field_validator("factors")
    @classmethod
    def validate_factors(cls, factors: dict[str, float]) -> dict[str, float]:
        for key, factor in factors.items():
            if not math.isfinite(factor) or factor < 0:
                raise ValueError(f"Modifier factor for '{key}' must be a finite value >= 0.")
        return factors


class ProductionPhase(str, Enum):
    IDLE = "IDLE"
    ACCUMULATING = "ACCUMULATING"
    COMPLETE = "COMPLETE"


@dataclass(slots=True)
class ActiveProductionState:
    instance_id: str
    building_id: str
    x: float
    y: float
    recipe: Recipe | None = None
    progress: float = 0.0
    active: bool = True
    phase: ProductionPhase = ProductionPhase.IDLE


@dataclass(slots=True)
class BiomarkerState:
    value: float
    last_update: float


@dataclass(slots=True)
class ActiveDiseaseState:
    disease_id: str
    onset_time: float
    tier: int = 1
    last_progression: float = 0.0


@dataclass(slots=True)
class DiseaseHistoryEntry:
    event: str
    timestamp: float
    tier: int | None = None


@dataclass(slots=True)
class KernelStats:
    total_produced: dict[str, float] = field(default_factory=dict)
    total_consumed: dict[str, float] = field(default_factory=dict)
    recipes_completed: int = 0
    buildings_destroyed: int = 0


class TrackedStats(StrictModel):
    total_energy_produced: float = Field(default=0.0, ge=0)
    total_resources_consumed: float = Field(default=0.0, ge=0)
    total_resources_crafted: int = Field(default=0, ge=0)
    buildings_built: int = Field(default=0, ge=0)
    playtime_seconds: float = Field(default=0.0, ge=0)
    produced_by_resource: dict[str, float] = Field(default_factory=dict)
    consumed_by_resource: dict[str, float] = Field(default_factory=dict)
    items_collected: dict[str, float] = Field(default_factory=dict)
    enemies_killed: dict[str, int] = Field(default_factory=dict)
    counters: dict[str, float] = Field(default_factory=dict)

    @field_validator("enemies_killed")
    @classmethod
    def validate_kills(cls, kills: dict[str, int]) -> dict[str, int]:
        for unit_id, count in kills.items():
            if count < 0:
                raise ValueError(f"Kill tally for '{unit_id}' cannot be negative.")
        return kills

    def resolve(self, path: str) -> float:
        """Read a dotted statistic path such as ``enemies_killed.UNIT_X``.

        Unknown paths read as zero. Top-level names that are not fields fall
        back to the free-form ``counters`` map.
        """
        head, _, rest = path.partition(".")
        if head in type(self).model_fields:
            value: Any = getattr(self, head)
        else:
            value = self.counters
            rest = path
        if rest:
            if not isinstance(value, dict):
                return 0.0
            value = value.get(rest, 0)
        if isinstance(value, (int, float)):
            return float(value)
        return 0.0


class SnapshotMeta(StrictModel):
    save_version: int = Field(default=SAVE_VERSION, ge=1)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class ProgressionSnapshot(StrictModel):
    meta: SnapshotMeta = Field(default_factory=SnapshotMeta)
    unlocked_entries: list[str] = Field(default_factory=list)
    completed_research: list[str] = Field(default_factory=list)
    tracked_stats: TrackedStats = Field(default_factory=TrackedStats)

    @model_validator(mode="after")
    def dedupe_entries(self) -> "ProgressionSnapshot":
        self.unlocked_entries = list(dict.fromkeys(self.unlocked_entries))
        self.completed_research = list(dict.fromkeys(self.completed_research))
        return self


def _sum_amounts(entries: list[ResourceAmount]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for entry in entries:
        totals[entry.id] = totals.get(entry.id, 0.0) + float(entry.amount)
    return totals
