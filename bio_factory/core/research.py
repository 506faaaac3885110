from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .events import RECIPE_UNLOCKED, RESEARCH_COMPLETED, RESEARCH_STARTED, EventBus
from .loader import ContentBundle
from .models import Recipe

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingResearch:
    tech_id: str
    duration: float
    elapsed: float = 0.0

    @property
    def progress(self) -> float:
        if self.duration <= 0:
            return 1.0
        return min(1.0, self.elapsed / self.duration)


class ResearchTracker:
    def __init__(self, content: ContentBundle, bus: EventBus, completed: Iterable[str] = ()) -> None:
        self.content = content
        self.bus = bus
        self._completed: dict[str, None] = dict.fromkeys(completed)
        self._pending: dict[str, PendingResearch] = {}

    def restore(self, completed: Iterable[str]) -> None:
        """Mark techs complete from saved state without publishing events."""
        for tech_id in completed:
            self._completed[tech_id] = None
            self._pending.pop(tech_id, None)

    def is_complete(self, tech_id: str) -> bool:
        return tech_id in self._completed

    def completed(self) -> list[str]:
        return list(self._completed)

    def pending(self) -> list[PendingResearch]:
        return list(self._pending.values())

    def recipe_available(self, recipe: Recipe) -> bool:
        return all(tech_id in self._completed for tech_id in recipe.unlock_by_research)

    def progress(self, tech_id: str) -> float:
        if tech_id in self._completed:
            return 1.0
        pending = self._pending.get(tech_id)
        return pending.progress if pending is not None else 0.0

    def start_research(self, tech_id: str) -> bool:
        if tech_id in self._completed or tech_id in self._pending:
            return False
        tech = self.content.technology_by_id.get(tech_id)
        if tech is None:
            logger.warning("Cannot start research: unknown technology '%s'.", tech_id)
            return False
        self._pending[tech_id] = PendingResearch(tech_id=tech_id, duration=tech.research_time)
        self.bus.publish(RESEARCH_STARTED, tech_id=tech_id, duration=tech.research_time)
        if tech.research_time <= 0:
            self.complete_research(tech_id)
        return True

    def update(self, delta_time: float) -> list[str]:
        finished: list[str] = []
        for pending in list(self._pending.values()):
            pending.elapsed += delta_time
            if pending.elapsed >= pending.duration:
                finished.append(pending.tech_id)
        for tech_id in finished:
            self.complete_research(tech_id)
        return finished

    def complete_research(self, tech_id: str) -> bool:
        if tech_id in self._completed:
            return False
        if tech_id not in self.content.technology_by_id:
            logger.warning("Cannot complete research: unknown technology '%s'.", tech_id)
            return False
        self._pending.pop(tech_id, None)
        self._completed[tech_id] = None
        logger.info("Research %s complete.", tech_id)
        self.bus.publish(RESEARCH_COMPLETED, tech_id=tech_id)
        for recipe in self.content.recipes:
            if tech_id in recipe.unlock_by_research and self.recipe_available(recipe):
                self.bus.publish(RECIPE_UNLOCKED, recipe_id=recipe.id)
        return True
