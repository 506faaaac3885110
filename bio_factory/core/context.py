from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from .events import EventBus, Subscription
from .kernel import SimulationKernel
from .ledger import ResourceLedger
from .loader import ContentBundle
from .modifiers import ModifierStack
from .persistence import ProgressionStore
from .progression import ProgressionDispatcher, UnlockCallback
from .research import ResearchTracker
from .settings import EngineSettings


@dataclass(slots=True)
class SimulationContext:
    """Every stateful component of one simulation, constructed once and passed around."""

    content: ContentBundle
    settings: EngineSettings
    bus: EventBus
    ledger: ResourceLedger
    modifiers: ModifierStack
    kernel: SimulationKernel
    research: ResearchTracker
    progression: ProgressionDispatcher
    store: ProgressionStore | None = None
    subscriptions: list[Subscription] = field(default_factory=list)

    def tick(self, delta_time: float) -> None:
        self.kernel.update(delta_time)
        self.research.update(delta_time)
        self.progression.update(delta_time)

    def close(self) -> None:
        self.progression.save()
        for subscription in self.subscriptions:
            subscription.dispose()
        self.subscriptions.clear()
        self.progression.close()


def build_context(
    content: ContentBundle,
    settings: EngineSettings | None = None,
    store: ProgressionStore | None = None,
    initial_resources: Mapping[str, float] | None = None,
    on_unlock: UnlockCallback | None = None,
) -> SimulationContext:
    settings = settings or EngineSettings()
    bus = EventBus(settings.bus)
    ledger = ResourceLedger(initial_resources)
    modifiers = ModifierStack()
    research = ResearchTracker(content, bus)
    kernel = SimulationKernel(
        content,
        bus,
        ledger=ledger,
        modifiers=modifiers,
        settings=settings.kernel,
        research=research,
    )
    progression = ProgressionDispatcher(
        content,
        bus=bus,
        store=store,
        settings=settings.progression,
        on_unlock=on_unlock,
    )
    progression.initialize()
    research.restore(progression.completed_research())
    subscriptions = progression.bind(bus)

    return SimulationContext(
        content=content,
        settings=settings,
        bus=bus,
        ledger=ledger,
        modifiers=modifiers,
        kernel=kernel,
        research=research,
        progression=progression,
        store=store,
        subscriptions=subscriptions,
    )
