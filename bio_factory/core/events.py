from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .settings import BusSettings

logger = logging.getLogger(__name__)

RESOURCES_PRODUCED = "RESOURCES_PRODUCED"
RESOURCES_CONSUMED = "RESOURCES_CONSUMED"
WASTE_PRODUCED = "WASTE_PRODUCED"
RECIPE_COMPLETED = "RECIPE_COMPLETED"
BUILDING_REGISTERED = "BUILDING_REGISTERED"
BUILDING_UNREGISTERED = "BUILDING_UNREGISTERED"
BIOMARKER_UPDATED = "BIOMARKER_UPDATED"
BIOMARKER_CRITICAL_LOW = "BIOMARKER_CRITICAL_LOW"
BIOMARKER_CRITICAL_HIGH = "BIOMARKER_CRITICAL_HIGH"
BIOMARKER_THRESHOLD_CROSSED = "BIOMARKER_THRESHOLD_CROSSED"
DISEASE_TRIGGERED = "DISEASE_TRIGGERED"
DISEASE_PROGRESSED = "DISEASE_PROGRESSED"
DISEASE_REMITTED = "DISEASE_REMITTED"
RESEARCH_STARTED = "RESEARCH_STARTED"
RESEARCH_COMPLETED = "RESEARCH_COMPLETED"
RECIPE_UNLOCKED = "RECIPE_UNLOCKED"
ENEMY_KILLED = "ENEMY_KILLED"
ITEM_COUNT_REACHED = "ITEM_COUNT_REACHED"
ENTRY_UNLOCKED = "ENTRY_UNLOCKED"
SIMULATION_TICK = "SIMULATION_TICK"


class UnknownEventError(LookupError):
    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"Event type '{event_type}' is not registered on this bus.")


class EventPayloadError(ValueError):
    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        super().__init__(f"Invalid payload for '{event_type}': {message}")


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class ResourceFlowPayload(EventPayload):
    building_id: str | None = Field(default=None, alias="buildingId")
    resources: dict[str, float]


class RecipeCompletedPayload(EventPayload):
    building_id: str = Field(alias="buildingId")
    instance_id: str = Field(alias="instanceId")
    recipe_id: str = Field(alias="recipeId")
    inputs: dict[str, float]
    outputs: dict[str, float]
    waste: dict[str, float] = Field(default_factory=dict)


class BuildingPlacementPayload(EventPayload):
    building_id: str = Field(alias="buildingId")
    instance_id: str = Field(alias="instanceId")
    x: float
    y: float


class BiomarkerUpdatedPayload(EventPayload):
    biomarker_id: str = Field(alias="biomarkerId")
    old_value: float | None = Field(alias="oldValue")
    new_value: float = Field(alias="newValue")


class BiomarkerCriticalPayload(EventPayload):
    biomarker_id: str = Field(alias="biomarkerId")
    value: float
    critical: float


class BiomarkerThresholdPayload(EventPayload):
    biomarker_id: str = Field(alias="biomarkerId")
    old_value: float | None = Field(alias="oldValue")
    new_value: float = Field(alias="newValue")
    threshold: float


class DiseasePayload(EventPayload):
    disease_id: str = Field(alias="diseaseId")
    tier: int | None = Field(default=None, ge=1)
    effects: list[str] = Field(default_factory=list)


class ResearchStartedPayload(EventPayload):
    tech_id: str = Field(alias="techId")
    duration: float = Field(ge=0)


class ResearchCompletedPayload(EventPayload):
    tech_id: str = Field(alias="techId")


class RecipeUnlockedPayload(EventPayload):
    recipe_id: str = Field(alias="recipeId")


class EnemyKilledPayload(EventPayload):
    unit_id: str = Field(alias="unitId")
    count: int = Field(default=1, ge=1)


class ItemCountPayload(EventPayload):
    item_id: str = Field(alias="itemId")
    count: float = Field(ge=0)


class EntryUnlockedPayload(EventPayload):
    entry_id: str = Field(alias="entryId")
    entry_type: str = Field(alias="entryType")
    condition_type: str | None = Field(default=None, alias="conditionType")


class SimulationTickPayload(EventPayload):
    delta_time: float = Field(alias="deltaTime", ge=0)
    elapsed: float = Field(ge=0)


EVENT_PAYLOADS: dict[str, type[EventPayload]] = {
    RESOURCES_PRODUCED: ResourceFlowPayload,
    RESOURCES_CONSUMED: ResourceFlowPayload,
    WASTE_PRODUCED: ResourceFlowPayload,
    RECIPE_COMPLETED: RecipeCompletedPayload,
    BUILDING_REGISTERED: BuildingPlacementPayload,
    BUILDING_UNREGISTERED: BuildingPlacementPayload,
    BIOMARKER_UPDATED: BiomarkerUpdatedPayload,
    BIOMARKER_CRITICAL_LOW: BiomarkerCriticalPayload,
    BIOMARKER_CRITICAL_HIGH: BiomarkerCriticalPayload,
    BIOMARKER_THRESHOLD_CROSSED: BiomarkerThresholdPayload,
    DISEASE_TRIGGERED: DiseasePayload,
    DISEASE_PROGRESSED: DiseasePayload,
    DISEASE_REMITTED: DiseasePayload,
    RESEARCH_STARTED: ResearchStartedPayload,
    RESEARCH_COMPLETED: ResearchCompletedPayload,
    RECIPE_UNLOCKED: RecipeUnlockedPayload,
    ENEMY_KILLED: EnemyKilledPayload,
    ITEM_COUNT_REACHED: ItemCountPayload,
    ENTRY_UNLOCKED: EntryUnlockedPayload,
    SIMULATION_TICK: SimulationTickPayload,
}

Handler = Callable[[Any], None]


@dataclass(slots=True, eq=False)
class Subscription:
    event_type: str
    handler: Handler
    token_id: int
    bus: "EventBus | None" = field(default=None, repr=False)
    active: bool = True

    def dispose(self) -> None:
        if self.bus is not None:
            self.bus.unsubscribe(self)


class EventBus:
    def __init__(self, settings: BusSettings | None = None) -> None:
        self.settings = settings or BusSettings()
        self._payloads: dict[str, type[EventPayload]] = dict(EVENT_PAYLOADS)
        self._listeners: dict[str, list[Subscription]] = {}
        self._next_token = 1
        self._depth = 0
        self._queue: deque[tuple[str, EventPayload]] = deque()
        self._draining = False
        self.total_events = 0
        self.event_counts: dict[str, int] = {}
        self.dropped_events = 0
        self.handler_errors = 0

    def register_event(self, event_type: str, payload_model: type[EventPayload]) -> None:
        existing = self._payloads.get(event_type)
        if existing is not None and existing is not payload_model:
            raise ValueError(f"Event type '{event_type}' is already registered with {existing.__name__}.")
        self._payloads[event_type] = payload_model

    def is_registered(self, event_type: str) -> bool:
        return event_type in self._payloads

    def subscribe(self, event_type: str, handler: Handler) -> Subscription:
        if event_type not in self._payloads:
            raise UnknownEventError(event_type)
        if not callable(handler):
            raise TypeError(f"Handler for '{event_type}' must be callable, got {type(handler).__name__}.")
        subscription = Subscription(event_type=event_type, handler=handler, token_id=self._next_token, bus=self)
        self._next_token += 1
        self._listeners.setdefault(event_type, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        if not subscription.active:
            return False
        subscription.active = False
        listeners = self._listeners.get(subscription.event_type)
        if listeners is None:
            return False
        try:
            listeners.remove(subscription)
        except ValueError:
            return False
        if not listeners:
            del self._listeners[subscription.event_type]
        return True

    def clear(self, event_type: str | None = None) -> None:
        event_types = list(self._listeners) if event_type is None else [event_type]
        for name in event_types:
            for subscription in self._listeners.pop(name, []):
                subscription.active = False

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, ()))

    def publish(
        self,
        event_type: str,
        payload: Mapping[str, Any] | EventPayload | None = None,
        **fields: Any,
    ) -> None:
        event = self._validate(event_type, payload, fields)
        self.total_events += 1
        self.event_counts[event_type] = self.event_counts.get(event_type, 0) + 1

        if self.settings.delivery == "deferred":
            self._queue.append((event_type, event))
            if not self._draining:
                self._drain()
            return

        if self._depth >= self.settings.max_publish_depth:
            self.dropped_events += 1
            logger.error(
                "Dropped '%s': publish depth %d reached max_publish_depth=%d.",
                event_type,
                self._depth,
                self.settings.max_publish_depth,
            )
            return
        self._deliver(event_type, event)

    def stats(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "event_counts": dict(self.event_counts),
            "listeners_by_type": {name: len(subs) for name, subs in self._listeners.items()},
            "active_event_types": len(self._listeners),
            "dropped_events": self.dropped_events,
            "handler_errors": self.handler_errors,
        }

    def reset_stats(self) -> None:
        self.total_events = 0
        self.event_counts = {}
        self.dropped_events = 0
        self.handler_errors = 0

    def _validate(
        self,
        event_type: str,
        payload: Mapping[str, Any] | EventPayload | None,
        fields: dict[str, Any],
    ) -> EventPayload:
        model = self._payloads.get(event_type)
        if model is None:
            raise UnknownEventError(event_type)
        if isinstance(payload, BaseModel):
            if fields:
                raise EventPayloadError(event_type, "pass either a payload model or keyword fields, not both")
            if not isinstance(payload, model):
                raise EventPayloadError(event_type, f"expected {model.__name__}, got {type(payload).__name__}")
            return payload
        data = dict(payload or {})
        data.update(fields)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in issue.get('loc', ())) or '(root)'}: {issue.get('msg')}"
                for issue in exc.errors()
            )
            raise EventPayloadError(event_type, problems) from exc

    def _deliver(self, event_type: str, event: EventPayload) -> None:
        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        self._depth += 1
        try:
            for subscription in list(listeners):
                if not subscription.active:
                    continue
                try:
                    subscription.handler(event)
                except Exception:
                    self.handler_errors += 1
                    logger.exception(
                        "Handler %s for '%s' failed (token %d).",
                        getattr(subscription.handler, "__qualname__", repr(subscription.handler)),
                        event_type,
                        subscription.token_id,
                    )
        finally:
            self._depth -= 1

    def _drain(self) -> None:
        self._draining = True
        delivered = 0
        try:
            while self._queue:
                if delivered >= self.settings.max_cascade_events:
                    dropped = len(self._queue)
                    self._queue.clear()
                    self.dropped_events += dropped
                    logger.error(
                        "Dropped %d queued events: cascade exceeded max_cascade_events=%d.",
                        dropped,
                        self.settings.max_cascade_events,
                    )
                    break
                event_type, event = self._queue.popleft()
                delivered += 1
                self._deliver(event_type, event)
        finally:
            self._draining = False
