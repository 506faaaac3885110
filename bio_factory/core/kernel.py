from __future__ import annotations

import logging
import math
from typing import Any, Protocol

from .biomarkers import BiomarkerEngine
from .diseases import DiseaseEngine
from .events import (
    BUILDING_REGISTERED,
    BUILDING_UNREGISTERED,
    RECIPE_COMPLETED,
    RESOURCES_CONSUMED,
    RESOURCES_PRODUCED,
    SIMULATION_TICK,
    WASTE_PRODUCED,
    EventBus,
)
from .ledger import ResourceLedger
from .loader import ConfigurationError, ContentBundle
from .models import ActiveProductionState, KernelStats, ProductionPhase, Recipe
from .modifiers import ModifierStack
from .settings import KernelSettings

logger = logging.getLogger(__name__)

# Absorbs float drift when fractional tick sizes sum to a craft duration.
_PROGRESS_EPSILON = 1e-9


class RecipeGate(Protocol):
    def recipe_available(self, recipe: Recipe) -> bool: ...


class SimulationKernel:
    def __init__(
        self,
        content: ContentBundle,
        bus: EventBus,
        *,
        ledger: ResourceLedger | None = None,
        modifiers: ModifierStack | None = None,
        settings: KernelSettings | None = None,
        research: RecipeGate | None = None,
    ) -> None:
        self.content = content
        self.bus = bus
        self.ledger = ledger if ledger is not None else ResourceLedger()
        self.modifiers = modifiers if modifiers is not None else ModifierStack()
        self.settings = settings or KernelSettings()
        self.research = research
        self.biomarkers = BiomarkerEngine(content, self.ledger, bus)
        self.diseases = DiseaseEngine(content, self.biomarkers, self.modifiers, bus, self.settings)
        self.elapsed = 0.0
        self._stats = KernelStats()
        self._production: dict[str, ActiveProductionState] = {}
        self._reported_missing: set[tuple[str, str]] = set()

    # Buildings

    def register_building(
        self,
        building_id: str,
        x: float = 0.0,
        y: float = 0.0,
        instance_id: str | None = None,
    ) -> str | None:
        try:
            self.content.require_building(building_id)
        except ConfigurationError as exc:
            logger.warning("Skipped building registration: %s", exc)
            return None
        key = instance_id or f"{building_id}@{x:g},{y:g}"
        if key in self._production:
            logger.warning("Building instance '%s' is already registered.", key)
            return None
        self._production[key] = ActiveProductionState(instance_id=key, building_id=building_id, x=x, y=y)
        self.bus.publish(BUILDING_REGISTERED, building_id=building_id, instance_id=key, x=x, y=y)
        return key

    def unregister_building(self, instance_id: str) -> bool:
        state = self._production.pop(instance_id, None)
        if state is None:
            logger.warning("Cannot unregister unknown building instance '%s'.", instance_id)
            return False
        self._stats.buildings_destroyed += 1
        self.bus.publish(
            BUILDING_UNREGISTERED,
            building_id=state.building_id,
            instance_id=state.instance_id,
            x=state.x,
            y=state.y,
        )
        return True

    def set_building_active(self, instance_id: str, active: bool) -> bool:
        state = self._production.get(instance_id)
        if state is None:
            logger.warning("Cannot toggle unknown building instance '%s'.", instance_id)
            return False
        state.active = active
        if not active:
            state.phase = ProductionPhase.IDLE
        return True

    def production_state(self, instance_id: str) -> ActiveProductionState | None:
        state = self._production.get(instance_id)
        if state is None:
            return None
        return ActiveProductionState(
            instance_id=state.instance_id,
            building_id=state.building_id,
            x=state.x,
            y=state.y,
            recipe=state.recipe,
            progress=state.progress,
            active=state.active,
            phase=state.phase,
        )

    def candidate_recipes(self, building_id: str) -> list[Recipe]:
        """Recipes this building may start, best priority first."""
        try:
            building = self.content.require_building(building_id)
        except ConfigurationError as exc:
            self._report_missing(exc)
            return []

        recipe_ids = list(building.supported_recipes)
        for recipe in self.content.recipes:
            if building_id in recipe.machine_ids and recipe.id not in recipe_ids:
                recipe_ids.append(recipe.id)

        candidates: list[Recipe] = []
        for recipe_id in recipe_ids:
            try:
                recipe = self.content.require_recipe(recipe_id, context=f"building {building_id}")
                for resource_id in sorted(recipe.referenced_resources()):
                    self.content.require_resource(resource_id, context=f"recipe {recipe.id}")
            except ConfigurationError as exc:
                self._report_missing(exc)
                continue
            if recipe.unlock_by_research and not self._research_complete(recipe):
                continue
            candidates.append(recipe)

        default_priority = self.settings.default_recipe_priority
        candidates.sort(key=lambda recipe: recipe.priority if recipe.priority is not None else default_priority)
        return candidates

    # Ledger access for host code

    def add_resource(self, resource_id: str, amount: float) -> bool:
        if not self._known_resource(resource_id):
            return False
        self.ledger.credit(resource_id, amount)
        self._tally(self._stats.total_produced, {resource_id: float(amount)})
        self.bus.publish(RESOURCES_PRODUCED, building_id=None, resources={resource_id: float(amount)})
        return True

    def remove_resource(self, resource_id: str, amount: float) -> float:
        if not self._known_resource(resource_id):
            return 0.0
        removed = self.ledger.remove(resource_id, amount)
        self._tally(self._stats.total_consumed, {resource_id: removed})
        self.bus.publish(RESOURCES_CONSUMED, building_id=None, resources={resource_id: removed})
        return removed

    def resource(self, resource_id: str) -> float:
        return self.ledger.quantity(resource_id)

    # Tick

    def update(self, delta_time: float) -> None:
        if not math.isfinite(delta_time) or delta_time < 0:
            raise ValueError(f"delta_time must be a finite value >= 0, got {delta_time!r}.")
        self.elapsed += delta_time
        for state in list(self._production.values()):
            if state.instance_id in self._production:
                self._advance(state, delta_time)

        crossed = self.biomarkers.update(self.elapsed)
        if crossed:
            self.diseases.reevaluate(crossed, self.elapsed)
        self.diseases.update(self.elapsed)
        self.bus.publish(SIMULATION_TICK, delta_time=delta_time, elapsed=self.elapsed)

    def _advance(self, state: ActiveProductionState, delta_time: float) -> None:
        if not state.active:
            state.phase = ProductionPhase.IDLE
            return

        if state.progress <= 0:
            state.recipe = self._select_recipe(state.building_id)
        recipe = state.recipe
        if recipe is None:
            state.phase = ProductionPhase.IDLE
            return

        inputs = recipe.input_map()
        if not self.ledger.has(inputs):
            state.phase = ProductionPhase.IDLE
            return

        state.phase = ProductionPhase.ACCUMULATING
        state.progress += delta_time
        if state.progress + _PROGRESS_EPSILON >= recipe.time_seconds:
            state.phase = ProductionPhase.COMPLETE
            self._complete(state, recipe, inputs)
            state.progress = 0.0
            state.phase = ProductionPhase.IDLE

    def _select_recipe(self, building_id: str) -> Recipe | None:
        for recipe in self.candidate_recipes(building_id):
            if self.ledger.has(recipe.input_map()):
                return recipe
        return None

    def _complete(self, state: ActiveProductionState, recipe: Recipe, inputs: dict[str, float]) -> None:
        if not self.ledger.debit_all(inputs):
            return
        outputs = {
            resource_id: self.modifiers.apply(resource_id, amount, self._tags(resource_id))
            for resource_id, amount in recipe.output_map().items()
        }
        waste = recipe.waste_map()
        self.ledger.credit_all(outputs)
        self.ledger.credit_all(waste)

        self._tally(self._stats.total_consumed, inputs)
        self._tally(self._stats.total_produced, outputs)
        self._tally(self._stats.total_produced, waste)
        self._stats.recipes_completed += 1

        if inputs:
            self.bus.publish(RESOURCES_CONSUMED, building_id=state.building_id, resources=inputs)
        if outputs:
            self.bus.publish(RESOURCES_PRODUCED, building_id=state.building_id, resources=outputs)
        if waste:
            self.bus.publish(WASTE_PRODUCED, building_id=state.building_id, resources=waste)
        self.bus.publish(
            RECIPE_COMPLETED,
            building_id=state.building_id,
            instance_id=state.instance_id,
            recipe_id=recipe.id,
            inputs=inputs,
            outputs=outputs,
            waste=waste,
        )

    # Helpers

    def _research_complete(self, recipe: Recipe) -> bool:
        if self.research is None:
            return False
        return self.research.recipe_available(recipe)

    def _tags(self, resource_id: str) -> list[str]:
        resource = self.content.resource_by_id.get(resource_id)
        return list(resource.tags) if resource is not None else []

    def _known_resource(self, resource_id: str) -> bool:
        try:
            self.content.require_resource(resource_id)
        except ConfigurationError as exc:
            logger.warning("Skipped ledger change: %s", exc)
            return False
        return True

    def _report_missing(self, exc: ConfigurationError) -> None:
        key = (exc.kind, exc.ref_id)
        if key in self._reported_missing:
            return
        self._reported_missing.add(key)
        logger.warning("Skipping content reference: %s", exc)

    @staticmethod
    def _tally(totals: dict[str, float], amounts: dict[str, float]) -> None:
        for resource_id, amount in amounts.items():
            totals[resource_id] = totals.get(resource_id, 0.0) + amount

    # Read-only views

    def snapshot(self) -> dict[str, Any]:
        return {
            "elapsed": self.elapsed,
            "ledger": self.ledger.snapshot(),
            "biomarkers": self.biomarkers.values(),
            "active_diseases": self.diseases.snapshot(),
            "modifiers": self.modifiers.snapshot(),
            "production": [
                {
                    "instance_id": state.instance_id,
                    "building_id": state.building_id,
                    "recipe_id": state.recipe.id if state.recipe else None,
                    "progress": state.progress,
                    "active": state.active,
                    "phase": state.phase.value,
                }
                for state in self._production.values()
            ],
        }

    def stats(self) -> dict[str, Any]:
        return {
            "total_produced": dict(sorted(self._stats.total_produced.items())),
            "total_consumed": dict(sorted(self._stats.total_consumed.items())),
            "recipes_completed": self._stats.recipes_completed,
            "disease_onsets": self.diseases.onsets,
            "buildings_destroyed": self._stats.buildings_destroyed,
            "active_buildings": len(self._production),
            "active_diseases": len(self.diseases.active),
        }
