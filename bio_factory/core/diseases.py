from __future__ import annotations

import logging
from typing import Iterable

from .biomarkers import BiomarkerEngine
from .events import DISEASE_PROGRESSED, DISEASE_REMITTED, DISEASE_TRIGGERED, EventBus
from .loader import ContentBundle
from .models import ActiveDiseaseState, DiseaseDefinition, DiseaseHistoryEntry, DiseaseTrigger
from .modifiers import ModifierStack
from .settings import KernelSettings

logger = logging.getLogger(__name__)


def disease_modifier_source(disease_id: str) -> str:
    return f"disease:{disease_id}"


def compare(op: str, value: float, threshold: float, epsilon: float) -> bool:
    if op == ">=":
        return value >= threshold
    if op == "<=":
        return value <= threshold
    if op == ">":
        return value > threshold
    if op == "<":
        return value < threshold
    if op == "==":
        return abs(value - threshold) < epsilon
    if op == "!=":
        return abs(value - threshold) >= epsilon
    raise ValueError(f"Unsupported trigger operator '{op}'.")


class DiseaseEngine:
    """Evaluates trigger conjunctions against biomarker state.

    Diseases without triggers are never started by the engine.
    """

    def __init__(
        self,
        content: ContentBundle,
        biomarkers: BiomarkerEngine,
        modifiers: ModifierStack,
        bus: EventBus,
        settings: KernelSettings | None = None,
    ) -> None:
        self.content = content
        self.biomarkers = biomarkers
        self.modifiers = modifiers
        self.bus = bus
        self.settings = settings or KernelSettings()
        self.active: dict[str, ActiveDiseaseState] = {}
        self.history: dict[str, list[DiseaseHistoryEntry]] = {}
        self.onsets = 0
        self._by_marker: dict[str, list[str]] = {}

        for disease in content.diseases:
            for trigger in disease.triggers:
                listeners = self._by_marker.setdefault(trigger.marker_id, [])
                if disease.id not in listeners:
                    listeners.append(disease.id)
                biomarkers.register_threshold(trigger.marker_id, trigger.value)

    def diseases_for(self, biomarker_id: str) -> list[str]:
        return list(self._by_marker.get(biomarker_id, ()))

    def trigger_met(self, trigger: DiseaseTrigger) -> bool:
        value = self.biomarkers.value(trigger.marker_id)
        if value is None:
            return False
        return compare(trigger.op, value, trigger.value, self.settings.trigger_epsilon)

    def triggers_met(self, disease: DiseaseDefinition) -> bool:
        if not disease.triggers:
            return False
        return all(self.trigger_met(trigger) for trigger in disease.triggers)

    def is_active(self, disease_id: str) -> bool:
        return disease_id in self.active

    def reevaluate(self, biomarker_ids: Iterable[str], now: float) -> None:
        """Onset or remission for diseases that reference the given biomarkers."""
        seen: set[str] = set()
        for biomarker_id in biomarker_ids:
            for disease_id in self._by_marker.get(biomarker_id, ()):
                if disease_id in seen:
                    continue
                seen.add(disease_id)
                self._evaluate(self.content.disease_by_id[disease_id], now, progress=False)

    def update(self, now: float) -> None:
        for disease in self.content.diseases:
            self._evaluate(disease, now, progress=True)

    def _evaluate(self, disease: DiseaseDefinition, now: float, *, progress: bool) -> None:
        met = self.triggers_met(disease)
        state = self.active.get(disease.id)
        if met and state is None:
            self._onset(disease, now)
        elif met and state is not None and progress:
            self._progress(disease, state, now)
        elif not met and state is not None:
            self._remit(disease, state, now)

    def _onset(self, disease: DiseaseDefinition, now: float) -> None:
        state = ActiveDiseaseState(disease_id=disease.id, onset_time=now, tier=1, last_progression=now)
        self.active[disease.id] = state
        self.onsets += 1
        self._record(disease.id, "onset", now, state.tier)
        self._apply_tier(disease, state.tier)
        logger.info("Disease %s triggered at t=%.2f", disease.id, now)
        self.bus.publish(
            DISEASE_TRIGGERED,
            disease_id=disease.id,
            tier=state.tier,
            effects=disease.tier_effects(state.tier),
        )

    def _progress(self, disease: DiseaseDefinition, state: ActiveDiseaseState, now: float) -> None:
        if state.tier >= disease.max_tier:
            return
        if now - state.last_progression < self.settings.disease_progression_seconds:
            return
        state.tier += 1
        state.last_progression = now
        self._record(disease.id, "progression", now, state.tier)
        self._apply_tier(disease, state.tier)
        logger.info("Disease %s progressed to tier %d at t=%.2f", disease.id, state.tier, now)
        self.bus.publish(
            DISEASE_PROGRESSED,
            disease_id=disease.id,
            tier=state.tier,
            effects=disease.tier_effects(state.tier),
        )

    def _remit(self, disease: DiseaseDefinition, state: ActiveDiseaseState, now: float) -> None:
        del self.active[disease.id]
        self.modifiers.remove_source(disease_modifier_source(disease.id))
        self._record(disease.id, "remission", now, state.tier)
        logger.info("Disease %s remitted at t=%.2f", disease.id, now)
        self.bus.publish(DISEASE_REMITTED, disease_id=disease.id, tier=state.tier)

    def _apply_tier(self, disease: DiseaseDefinition, tier_number: int) -> None:
        source = disease_modifier_source(disease.id)
        tier = disease.tier(tier_number)
        if tier is None or not tier.systemic_modifier:
            self.modifiers.remove_source(source)
            return
        self.modifiers.add(source, tier.systemic_modifier)

    def _record(self, disease_id: str, event: str, now: float, tier: int | None) -> None:
        self.history.setdefault(disease_id, []).append(DiseaseHistoryEntry(event=event, timestamp=now, tier=tier))

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        return {
            disease_id: {
                "tier": state.tier,
                "onset_time": state.onset_time,
                "last_progression": state.last_progression,
            }
            for disease_id, state in sorted(self.active.items())
        }
