from __future__ import annotations

import logging

from .events import (
    BIOMARKER_CRITICAL_HIGH,
    BIOMARKER_CRITICAL_LOW,
    BIOMARKER_THRESHOLD_CROSSED,
    BIOMARKER_UPDATED,
    EventBus,
)
from .ledger import ResourceLedger
from .loader import ContentBundle
from .models import Biomarker, BiomarkerMod, BiomarkerState

logger = logging.getLogger(__name__)


def crossed(old: float | None, new: float, threshold: float) -> bool:
    if old is None:
        return False
    return (old < threshold) != (new < threshold) or (old <= threshold) != (new <= threshold)


class BiomarkerEngine:
    def __init__(self, content: ContentBundle, ledger: ResourceLedger, bus: EventBus) -> None:
        self.content = content
        self.ledger = ledger
        self.bus = bus
        self._states: dict[str, BiomarkerState] = {}
        self._mods: dict[str, list[tuple[str, BiomarkerMod]]] = {}
        self._thresholds: dict[str, set[float]] = {}

        for resource in content.resources:
            for mod in resource.biomarker_mods:
                self._mods.setdefault(mod.marker_id, []).append((resource.id, mod))

        for biomarker in content.biomarkers:
            if not biomarker.derived:
                self._states[biomarker.id] = BiomarkerState(value=biomarker.resting_value(), last_update=0.0)
            for bound in (biomarker.critical_low, biomarker.critical_high):
                if bound is not None:
                    self.register_threshold(biomarker.id, bound)
            if biomarker.normal_range is not None:
                for bound in biomarker.normal_range:
                    self.register_threshold(biomarker.id, bound)

    def register_threshold(self, biomarker_id: str, value: float) -> None:
        self._thresholds.setdefault(biomarker_id, set()).add(float(value))

    def thresholds(self, biomarker_id: str) -> list[float]:
        return sorted(self._thresholds.get(biomarker_id, ()))

    def value(self, biomarker_id: str) -> float | None:
        state = self._states.get(biomarker_id)
        return state.value if state is not None else None

    def state(self, biomarker_id: str) -> BiomarkerState | None:
        state = self._states.get(biomarker_id)
        if state is None:
            return None
        return BiomarkerState(value=state.value, last_update=state.last_update)

    def values(self) -> dict[str, float]:
        return {biomarker_id: state.value for biomarker_id, state in sorted(self._states.items())}

    def compute(self, biomarker: Biomarker) -> float | None:
        if biomarker.source is not None:
            return self.ledger.quantity(biomarker.source)
        if not biomarker.formula:
            return None
        additive = biomarker.resting_value()
        factor = 1.0
        for resource_id, mod in self._mods.get(biomarker.id, ()):
            quantity = self.ledger.quantity(resource_id)
            if mod.mode == "add":
                additive += mod.value * quantity
            else:
                factor *= max(0.0, 1.0 + (mod.value - 1.0) * quantity)
        return additive * factor

    def update(self, now: float) -> list[str]:
        """Recompute derived biomarkers and return the ids that crossed a threshold."""
        crossed_ids: list[str] = []
        for biomarker in self.content.biomarkers:
            new_value = self.compute(biomarker)
            if new_value is None:
                continue
            state = self._states.get(biomarker.id)
            old_value = state.value if state is not None else None
            if old_value is not None and old_value == new_value:
                continue

            if state is None:
                self._states[biomarker.id] = BiomarkerState(value=new_value, last_update=now)
            else:
                state.value = new_value
                state.last_update = now

            self.bus.publish(
                BIOMARKER_UPDATED,
                biomarker_id=biomarker.id,
                old_value=old_value,
                new_value=new_value,
            )

            hit = False
            for threshold in self.thresholds(biomarker.id):
                if crossed(old_value, new_value, threshold):
                    hit = True
                    self.bus.publish(
                        BIOMARKER_THRESHOLD_CROSSED,
                        biomarker_id=biomarker.id,
                        old_value=old_value,
                        new_value=new_value,
                        threshold=threshold,
                    )
            if hit:
                crossed_ids.append(biomarker.id)

            self._publish_critical(biomarker, old_value, new_value)
        return crossed_ids

    def _publish_critical(self, biomarker: Biomarker, old_value: float | None, new_value: float) -> None:
        low = biomarker.critical_low
        if low is not None and new_value <= low and (old_value is None or old_value > low):
            logger.warning("Biomarker %s critically low: %.4f <= %.4f", biomarker.id, new_value, low)
            self.bus.publish(BIOMARKER_CRITICAL_LOW, biomarker_id=biomarker.id, value=new_value, critical=low)
        high = biomarker.critical_high
        if high is not None and new_value >= high and (old_value is None or old_value < high):
            logger.warning("Biomarker %s critically high: %.4f >= %.4f", biomarker.id, new_value, high)
            self.bus.publish(BIOMARKER_CRITICAL_HIGH, biomarker_id=biomarker.id, value=new_value, critical=high)
