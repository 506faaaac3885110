from __future__ import annotations

from bio_factory.core.events import RECIPE_UNLOCKED, RESEARCH_COMPLETED, RESEARCH_STARTED, EventBus
from bio_factory.core.loader import ContentBundle
from bio_factory.core.models import Recipe, ResourceType, Technology
from bio_factory.core.research import ResearchTracker


def _tracker() -> tuple[ResearchTracker, list[tuple[str, str]]]:
    content = ContentBundle.from_tables(
        resources=[ResourceType(id="RES_GLUCOSE"), ResourceType(id="RES_ATP")],
        recipes=[
            Recipe.model_validate(
                {
                    "id": "RECIPE_AEROBIC",
                    "inputs": [{"id": "RES_GLUCOSE", "amount": 1}],
                    "outputs": [{"id": "RES_ATP", "amount": 30}],
                    "time_seconds": 5,
                    "unlock_by_research": ["TECH_OXPHOS", "TECH_CRISTAE"],
                }
            )
        ],
        technologies=[
            Technology(id="TECH_OXPHOS", research_time=10),
            Technology(id="TECH_CRISTAE", research_time=0),
        ],
    )
    bus = EventBus()
    events: list[tuple[str, str]] = []
    bus.subscribe(RESEARCH_STARTED, lambda event: events.append((RESEARCH_STARTED, event.tech_id)))
    bus.subscribe(RESEARCH_COMPLETED, lambda event: events.append((RESEARCH_COMPLETED, event.tech_id)))
    bus.subscribe(RECIPE_UNLOCKED, lambda event: events.append((RECIPE_UNLOCKED, event.recipe_id)))
    return ResearchTracker(content, bus), events


def test_research_completes_after_duration() -> None:
    tracker, events = _tracker()

    assert tracker.start_research("TECH_OXPHOS") is True
    assert tracker.update(4.0) == []
    assert tracker.progress("TECH_OXPHOS") == 0.4
    assert tracker.update(6.0) == ["TECH_OXPHOS"]

    assert tracker.is_complete("TECH_OXPHOS")
    assert events == [(RESEARCH_STARTED, "TECH_OXPHOS"), (RESEARCH_COMPLETED, "TECH_OXPHOS")]


def test_gated_recipe_announced_once_every_gate_is_done() -> None:
    tracker, events = _tracker()
    tracker.start_research("TECH_OXPHOS")
    tracker.update(10.0)
    assert (RECIPE_UNLOCKED, "RECIPE_AEROBIC") not in events

    assert tracker.start_research("TECH_CRISTAE") is True
    assert tracker.is_complete("TECH_CRISTAE")
    assert events[-1] == (RECIPE_UNLOCKED, "RECIPE_AEROBIC")


def test_start_research_rejects_unknown_and_repeated_ids(caplog) -> None:
    tracker, _ = _tracker()

    assert tracker.start_research("TECH_TELEPORT") is False
    assert "TECH_TELEPORT" in caplog.text
    assert tracker.start_research("TECH_OXPHOS") is True
    assert tracker.start_research("TECH_OXPHOS") is False
    assert [pending.tech_id for pending in tracker.pending()] == ["TECH_OXPHOS"]


def test_restore_marks_complete_without_events() -> None:
    tracker, events = _tracker()
    tracker.restore(["TECH_OXPHOS", "TECH_CRISTAE"])

    assert tracker.completed() == ["TECH_OXPHOS", "TECH_CRISTAE"]
    assert tracker.complete_research("TECH_OXPHOS") is False
    assert events == []
