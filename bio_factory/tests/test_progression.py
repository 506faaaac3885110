from __future__ import annotations

from typing import Any

import pytest

from bio_factory.core.events import (
    ENEMY_KILLED,
    ENTRY_UNLOCKED,
    ITEM_COUNT_REACHED,
    RESEARCH_COMPLETED,
    RESOURCES_PRODUCED,
    EventBus,
)
from bio_factory.core.loader import ContentBundle
from bio_factory.core.models import Building, ProgressionSnapshot, ResourceType, Technology, TrackedStats, Unit
from bio_factory.core.persistence import MemoryStore, PersistenceError
from bio_factory.core.progression import ProgressionDispatcher
from bio_factory.core.settings import ProgressionSettings


def _content() -> ContentBundle:
    return ContentBundle.from_tables(
        resources=[
            ResourceType(id="RES_ATP", name="ATP", tags=["energy"]),
            ResourceType(id="RES_CELL_DEBRIS", name="Cell Debris"),
        ],
        buildings=[
            Building.model_validate({"id": "BLD_EXTRACTOR", "unlock_condition": {"type": "START_DEFAULT"}}),
            Building.model_validate(
                {
                    "id": "BLD_MITOCHONDRIA",
                    "unlock_condition": {"type": "STAT_THRESHOLD", "stat": "total_energy_produced", "value": 500},
                }
            ),
            Building.model_validate(
                {
                    "id": "BLD_CATABOLISM_CELL",
                    "unlock_condition": {"type": "ITEM_COLLECTED", "itemId": "RES_CELL_DEBRIS", "amount": 5},
                }
            ),
            Building.model_validate(
                {"id": "BLD_NO_SPRAYER", "unlock_condition": {"type": "RESEARCH_COMPLETE", "techId": "TECH_VASODILATION"}}
            ),
            Building.model_validate(
                {"id": "BLD_MITOSIS_CHAMBER", "unlock_condition": {"type": "STAT_THRESHOLD", "stat": "cells_divided", "value": 3}}
            ),
        ],
        units=[
            Unit.model_validate({"id": "UNIT_BACTERIA", "name": "Bacteria", "unlock_condition": {"type": "START_DEFAULT"}}),
            Unit.model_validate(
                {
                    "id": "UNIT_MACROPHAGE",
                    "unlock_condition": {"type": "STAT_THRESHOLD", "stat": "enemies_killed.UNIT_BACTERIA", "value": 10},
                }
            ),
            Unit.model_validate(
                {"id": "UNIT_NEUTROPHIL", "unlock_condition": {"type": "KILL_COUNT", "unitId": "UNIT_BACTERIA", "value": 25}}
            ),
        ],
        technologies=[Technology(id="TECH_VASODILATION", name="Vasodilation", research_time=20)],
    )


def _dispatcher(
    store: Any = None, **kwargs: Any
) -> tuple[ProgressionDispatcher, EventBus, list[str], list[tuple[str, str]]]:
    bus = EventBus()
    published: list[str] = []
    callbacks: list[tuple[str, str]] = []
    bus.subscribe(ENTRY_UNLOCKED, lambda event: published.append(event.entry_id))
    dispatcher = ProgressionDispatcher(
        _content(),
        bus=bus,
        store=store,
        on_unlock=lambda entry_type, entry, condition: callbacks.append((entry_type, entry.id)),
        **kwargs,
    )
    dispatcher.initialize()
    dispatcher.bind(bus)
    return dispatcher, bus, published, callbacks


class FlakyStore(MemoryStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def save(self, snapshot: ProgressionSnapshot) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("disk full")
        super().save(snapshot)


def test_stat_threshold_unlocks_exactly_once() -> None:
    dispatcher, bus, published, callbacks = _dispatcher()

    bus.publish(RESOURCES_PRODUCED, building_id="BLD_EXTRACTOR", resources={"RES_ATP": 499})
    assert not dispatcher.is_unlocked("BLD_MITOCHONDRIA")

    bus.publish(RESOURCES_PRODUCED, building_id="BLD_EXTRACTOR", resources={"RES_ATP": 1})
    assert dispatcher.is_unlocked("BLD_MITOCHONDRIA")

    bus.publish(RESOURCES_PRODUCED, building_id="BLD_EXTRACTOR", resources={"RES_ATP": 100})
    assert published == ["BLD_MITOCHONDRIA"]
    assert callbacks == [("building", "BLD_MITOCHONDRIA")]


def test_default_and_unconditioned_entries_unlock_silently() -> None:
    dispatcher, _, published, callbacks = _dispatcher()

    assert dispatcher.is_unlocked("BLD_EXTRACTOR")
    assert dispatcher.is_unlocked("UNIT_BACTERIA")
    assert dispatcher.is_unlocked("RES_ATP")
    assert published == []
    assert callbacks == []
    assert dispatcher.locked_entries("unit") == ["UNIT_MACROPHAGE", "UNIT_NEUTROPHIL"]


def test_kills_feed_stat_and_kill_count_conditions() -> None:
    dispatcher, bus, published, _ = _dispatcher()

    bus.publish(ENEMY_KILLED, unit_id="UNIT_BACTERIA", count=10)
    assert dispatcher.is_unlocked("UNIT_MACROPHAGE")
    assert not dispatcher.is_unlocked("UNIT_NEUTROPHIL")
    assert dispatcher.get_unlock_hint("UNIT_NEUTROPHIL") == "Defeat 25 Bacteria (10/25)."

    bus.publish(ENEMY_KILLED, unit_id="UNIT_BACTERIA", count=15)
    assert published == ["UNIT_MACROPHAGE", "UNIT_NEUTROPHIL"]


def test_unknown_and_invalid_kills_are_ignored(caplog) -> None:
    dispatcher, _, _, _ = _dispatcher()

    dispatcher.on_enemy_killed("UNIT_GHOST", 50)
    dispatcher.on_enemy_killed("UNIT_BACTERIA", 0)

    assert dispatcher.stats.enemies_killed == {}
    assert "UNIT_GHOST" in caplog.text


def test_item_collection_counts_production_and_reported_totals() -> None:
    dispatcher, bus, _, _ = _dispatcher()

    bus.publish(RESOURCES_PRODUCED, resources={"RES_CELL_DEBRIS": 3})
    assert dispatcher.get_unlock_hint("BLD_CATABOLISM_CELL") == "Collect 5 Cell Debris (have 3, 2 to go)."

    bus.publish(ITEM_COUNT_REACHED, item_id="RES_CELL_DEBRIS", count=2)
    assert dispatcher.stats.items_collected["RES_CELL_DEBRIS"] == 3
    assert not dispatcher.is_unlocked("BLD_CATABOLISM_CELL")

    bus.publish(ITEM_COUNT_REACHED, item_id="RES_CELL_DEBRIS", count=5)
    assert dispatcher.is_unlocked("BLD_CATABOLISM_CELL")


def test_research_completion_unlocks_dependents() -> None:
    dispatcher, bus, _, _ = _dispatcher()
    assert dispatcher.get_unlock_hint("BLD_NO_SPRAYER") == "Complete research Vasodilation."

    bus.publish(RESEARCH_COMPLETED, tech_id="TECH_VASODILATION")

    assert dispatcher.is_unlocked("BLD_NO_SPRAYER")
    assert dispatcher.completed_research() == ["TECH_VASODILATION"]
    assert dispatcher.listener_counts()["research"] == 0


def test_unlock_hints() -> None:
    dispatcher, _, _, _ = _dispatcher()
    dispatcher.on_resource_produced("RES_ATP", 120)

    assert dispatcher.get_unlock_hint("BLD_MITOCHONDRIA") == (
        "Requires total_energy_produced >= 500 (current 120, 380 to go)."
    )
    assert dispatcher.get_unlock_hint("BLD_EXTRACTOR") == "Unlocked."
    assert dispatcher.get_unlock_hint("RES_ATP") is None
    assert dispatcher.get_unlock_hint("BLD_NOWHERE") is None


def test_custom_counters_drive_stat_conditions() -> None:
    dispatcher, _, published, _ = _dispatcher()

    dispatcher.record_stat("cells_divided")
    dispatcher.record_stat("cells_divided", 2)

    assert published == ["BLD_MITOSIS_CHAMBER"]
    with pytest.raises(ValueError):
        dispatcher.record_stat("total_energy_produced", 10)


def test_listener_index_shrinks_as_entries_unlock() -> None:
    dispatcher, _, _, _ = _dispatcher()
    assert dispatcher.listener_counts() == {"stat": 3, "item": 1, "kill": 1, "research": 1}

    dispatcher.on_resource_produced("RES_ATP", 500)
    assert dispatcher.listener_counts()["stat"] == 2


def test_unlock_order_does_not_change_final_state() -> None:
    first, _, _, _ = _dispatcher()
    first.on_enemy_killed("UNIT_BACTERIA", 30)
    first.on_resource_produced("RES_CELL_DEBRIS", 600)

    second, _, _, _ = _dispatcher()
    second.on_resource_produced("RES_CELL_DEBRIS", 600)
    second.on_enemy_killed("UNIT_BACTERIA", 30)

    assert sorted(first.unlocked_entries()) == sorted(second.unlocked_entries())


def test_forced_unlock_is_monotonic() -> None:
    dispatcher, _, published, _ = _dispatcher()

    assert dispatcher.unlock("BLD_NO_SPRAYER") is True
    assert dispatcher.unlock("BLD_NO_SPRAYER") is False
    dispatcher.on_research_complete("TECH_VASODILATION")
    assert published == ["BLD_NO_SPRAYER"]


def test_each_unlock_saves_and_startup_saves_once() -> None:
    store = MemoryStore()
    dispatcher, _, _, _ = _dispatcher(store)
    assert store.save_count == 1

    dispatcher.on_resource_produced("RES_ATP", 500)
    assert store.save_count == 2
    assert "BLD_MITOCHONDRIA" in store.snapshot.unlocked_entries


def test_failed_save_keeps_memory_and_retries_on_next_unlock(caplog) -> None:
    store = FlakyStore(failures=2)
    dispatcher, _, _, _ = _dispatcher(store)
    assert dispatcher.dirty is True

    dispatcher.on_resource_produced("RES_ATP", 500)
    assert dispatcher.is_unlocked("BLD_MITOCHONDRIA")
    assert dispatcher.save_failures == 2
    assert store.snapshot is None
    assert "disk full" in caplog.text

    dispatcher.on_enemy_killed("UNIT_BACTERIA", 10)
    assert dispatcher.dirty is False
    assert set(store.snapshot.unlocked_entries) >= {"BLD_MITOCHONDRIA", "UNIT_MACROPHAGE"}


def test_autosave_runs_on_interval() -> None:
    store = MemoryStore()
    dispatcher, _, _, _ = _dispatcher(store, settings=ProgressionSettings(autosave_interval_seconds=10))

    dispatcher.update(6)
    assert store.save_count == 1
    dispatcher.update(6)
    assert store.save_count == 2
    assert store.snapshot.tracked_stats.playtime_seconds == 12


def test_loading_saved_progress_catches_up_on_conditions() -> None:
    saved = ProgressionSnapshot(
        unlocked_entries=["BLD_EXTRACTOR"],
        completed_research=["TECH_VASODILATION"],
        tracked_stats=TrackedStats(total_energy_produced=750, enemies_killed={"UNIT_BACTERIA": 12}),
    )
    store = MemoryStore(saved)
    dispatcher, _, _, callbacks = _dispatcher(store)

    for entry_id in ("BLD_MITOCHONDRIA", "UNIT_MACROPHAGE", "BLD_NO_SPRAYER"):
        assert dispatcher.is_unlocked(entry_id)
    assert not dispatcher.is_unlocked("UNIT_NEUTROPHIL")
    assert ("building", "BLD_MITOCHONDRIA") in callbacks
    assert store.save_count == 1


def test_load_snapshot_replaces_stats_but_keeps_unlocks() -> None:
    dispatcher, _, _, _ = _dispatcher()
    dispatcher.unlock("UNIT_NEUTROPHIL")

    dispatcher.load_snapshot(ProgressionSnapshot(tracked_stats=TrackedStats(buildings_built=4)))

    assert dispatcher.is_unlocked("UNIT_NEUTROPHIL")
    assert dispatcher.stats.buildings_built == 4


def test_duplicate_ids_across_tables_keep_first(caplog) -> None:
    content = ContentBundle.from_tables(
        resources=[ResourceType(id="SHARED_ID")],
        buildings=[Building.model_validate({"id": "SHARED_ID", "unlock_condition": {"type": "KILL_COUNT", "unitId": "UNIT_X", "value": 1}})],
    )
    dispatcher = ProgressionDispatcher(content)
    dispatcher.initialize()

    assert dispatcher.is_unlocked("SHARED_ID")
    assert dispatcher.unlocked_entries("resource") == ["SHARED_ID"]
    assert "SHARED_ID" in caplog.text


class BrokenStore(MemoryStore):
    def save(self, snapshot: ProgressionSnapshot) -> None:
        raise RuntimeError("database is locked")


def test_store_errors_do_not_strand_research_dependents(caplog) -> None:
    content = ContentBundle.from_tables(
        buildings=[
            Building.model_validate({"id": "BLD_1", "unlock_condition": {"type": "RESEARCH_COMPLETE", "techId": "TECH_A"}}),
            Building.model_validate({"id": "BLD_2", "unlock_condition": {"type": "RESEARCH_COMPLETE", "techId": "TECH_A"}}),
        ],
        technologies=[Technology(id="TECH_A")],
    )
    bus = EventBus()
    dispatcher = ProgressionDispatcher(content, bus=bus, store=BrokenStore())
    dispatcher.initialize()
    dispatcher.bind(bus)

    bus.publish(RESEARCH_COMPLETED, tech_id="TECH_A")

    assert dispatcher.is_unlocked("BLD_1")
    assert dispatcher.is_unlocked("BLD_2")
    assert dispatcher.listener_counts()["research"] == 0
    assert dispatcher.dirty is True
    assert dispatcher.save_failures == 3
    assert "database is locked" in caplog.text
    assert bus.handler_errors == 0


def test_counter_conditions_accept_either_spelling() -> None:
    content = ContentBundle.from_tables(
        buildings=[
            Building.model_validate(
                {"id": "BLD_FUSION_CHAMBER", "unlock_condition": {"type": "STAT_THRESHOLD", "stat": "counters.cells_fused", "value": 2}}
            ),
        ],
    )
    dispatcher = ProgressionDispatcher(content)
    dispatcher.initialize()

    assert dispatcher.record_stat("cells_fused") == 1
    assert not dispatcher.is_unlocked("BLD_FUSION_CHAMBER")
    assert dispatcher.record_stat("counters.cells_fused") == 2
    assert dispatcher.is_unlocked("BLD_FUSION_CHAMBER")
    assert dispatcher.stats.counters == {"cells_fused": 2.0}
    with pytest.raises(ValueError):
        dispatcher.record_stat("counters.buildings_built")
