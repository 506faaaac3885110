from __future__ import annotations

import logging
from typing import Any, Callable

from .events import (
    BUILDING_REGISTERED,
    ENEMY_KILLED,
    ENTRY_UNLOCKED,
    ITEM_COUNT_REACHED,
    RECIPE_COMPLETED,
    RESEARCH_COMPLETED,
    RESOURCES_CONSUMED,
    RESOURCES_PRODUCED,
    EventBus,
    Subscription,
)
from .loader import ContentBundle
from .models import (
    EntryType,
    ItemCollectedCondition,
    KillCountCondition,
    ProgressionSnapshot,
    ResearchCompleteCondition,
    StatThresholdCondition,
    TrackedStats,
    UnlockableEntry,
)
from .persistence import ProgressionStore
from .settings import ProgressionSettings

logger = logging.getLogger(__name__)

UnlockCallback = Callable[[EntryType, UnlockableEntry, Any], None]

STAT = "stat"
ITEM = "item"
KILL = "kill"
RESEARCH = "research"


def _fmt(value: float) -> str:
    return f"{value:g}"


def _stat_key(path: str) -> str:
    head, dot, rest = path.partition(".")
    if head == "counters" and dot and rest.partition(".")[0] not in TrackedStats.model_fields:
        return rest
    return path


class ProgressionDispatcher:
    def __init__(
        self,
        content: ContentBundle,
        *,
        bus: EventBus | None = None,
        store: ProgressionStore | None = None,
        settings: ProgressionSettings | None = None,
        on_unlock: UnlockCallback | None = None,
    ) -> None:
        self.content = content
        self.bus = bus
        self.store = store
        self.settings = settings or ProgressionSettings()
        self.on_unlock = on_unlock
        self.stats = TrackedStats()
        self.dirty = False
        self.save_failures = 0
        self.load_failed = False
        self._unlocked: dict[str, None] = {}
        self._completed_research: dict[str, None] = {}
        self._entries: dict[str, tuple[EntryType, UnlockableEntry]] = {}
        self._listeners: dict[str, dict[str, list[str]]] = {STAT: {}, ITEM: {}, KILL: {}, RESEARCH: {}}
        self._subscriptions: list[Subscription] = []
        self._since_save = 0.0
        self._initializing = False

        for entry_type, entry in content.unlockable_entries():
            if entry.id in self._entries:
                logger.warning(
                    "Unlockable id '%s' appears in both %s and %s tables; keeping the first.",
                    entry.id,
                    self._entries[entry.id][0],
                    entry_type,
                )
                continue
            self._entries[entry.id] = (entry_type, entry)

    # Lifecycle

    def initialize(self) -> None:
        """Load saved state, index locked entries and run one catch-up pass."""
        self._initializing = True
        try:
            snapshot = self._load_snapshot()
            if snapshot is not None:
                self._apply_snapshot(snapshot)
            self._build_index()
            self._catch_up()
        finally:
            self._initializing = False
        if self.load_failed:
            self.dirty = True
        else:
            self.save()

    def load_snapshot(self, snapshot: ProgressionSnapshot) -> None:
        self.load_failed = False
        self._initializing = True
        try:
            self._apply_snapshot(snapshot)
            self._build_index()
            self._catch_up()
        finally:
            self._initializing = False
        self.save()

    def bind(self, bus: EventBus) -> list[Subscription]:
        self.bus = bus
        self._subscriptions.extend(
            [
                bus.subscribe(RESOURCES_PRODUCED, self._handle_produced),
                bus.subscribe(RESOURCES_CONSUMED, self._handle_consumed),
                bus.subscribe(RECIPE_COMPLETED, self._handle_recipe_completed),
                bus.subscribe(BUILDING_REGISTERED, self._handle_building_registered),
                bus.subscribe(ENEMY_KILLED, self._handle_enemy_killed),
                bus.subscribe(ITEM_COUNT_REACHED, self._handle_item_count),
                bus.subscribe(RESEARCH_COMPLETED, self._handle_research_completed),
            ]
        )
        return list(self._subscriptions)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()

    # Gameplay handlers

    def on_resource_produced(self, resource_id: str, amount: float) -> None:
        if amount < 0:
            logger.warning("Ignored negative production of %s: %s", resource_id, amount)
            return
        stats = self.stats
        stats.total_energy_produced += amount
        stats.produced_by_resource[resource_id] = stats.produced_by_resource.get(resource_id, 0.0) + amount
        stats.items_collected[resource_id] = stats.items_collected.get(resource_id, 0.0) + amount
        self._check(STAT, "total_energy_produced")
        self._check(STAT, f"produced_by_resource.{resource_id}")
        self._check(STAT, f"items_collected.{resource_id}")
        self._check(ITEM, resource_id)

    def on_resource_consumed(self, resource_id: str, amount: float) -> None:
        if amount < 0:
            logger.warning("Ignored negative consumption of %s: %s", resource_id, amount)
            return
        stats = self.stats
        stats.total_resources_consumed += amount
        stats.consumed_by_resource[resource_id] = stats.consumed_by_resource.get(resource_id, 0.0) + amount
        self._check(STAT, "total_resources_consumed")
        self._check(STAT, f"consumed_by_resource.{resource_id}")

    def on_recipe_completed(self, recipe_id: str | None = None) -> None:
        self.stats.total_resources_crafted += 1
        self._check(STAT, "total_resources_crafted")

    def on_building_built(self, building_id: str | None = None) -> None:
        self.stats.buildings_built += 1
        self._check(STAT, "buildings_built")

    def on_enemy_killed(self, unit_id: str, count: int = 1) -> None:
        if count < 1:
            logger.warning("Ignored kill report for %s with count %s.", unit_id, count)
            return
        if unit_id not in self.content.unit_by_id:
            logger.warning("Ignored kill of unknown unit '%s'.", unit_id)
            return
        kills = self.stats.enemies_killed
        kills[unit_id] = kills.get(unit_id, 0) + int(count)
        self._check(KILL, unit_id)
        self._check(STAT, f"enemies_killed.{unit_id}")

    def on_item_count_reached(self, item_id: str, count: float) -> None:
        items = self.stats.items_collected
        items[item_id] = max(items.get(item_id, 0.0), float(count))
        self._check(ITEM, item_id)
        self._check(STAT, f"items_collected.{item_id}")

    def on_research_complete(self, tech_id: str) -> None:
        self._completed_research[tech_id] = None
        for entry_id in list(self._listeners[RESEARCH].get(tech_id, [])):
            self._unlock(entry_id)

    def record_stat(self, path: str, delta: float = 1.0) -> float:
        path = _stat_key(path)
        head = path.partition(".")[0]
        if head in TrackedStats.model_fields:
            raise ValueError(f"'{path}' is a built-in statistic; use the matching event handler.")
        counters = self.stats.counters
        counters[path] = counters.get(path, 0.0) + float(delta)
        self._check(STAT, path)
        return counters[path]

    def update(self, delta_time: float) -> None:
        self.stats.playtime_seconds += delta_time
        self._check(STAT, "playtime_seconds")
        self._since_save += delta_time
        if self._since_save >= self.settings.autosave_interval_seconds:
            self._since_save = 0.0
            self.save()

    # Unlocking

    def unlock(self, entry_id: str) -> bool:
        """Unlock an entry regardless of its condition."""
        return self._unlock(entry_id)

    def _unlock(self, entry_id: str) -> bool:
        if entry_id in self._unlocked:
            return False
        found = self._entries.get(entry_id)
        if found is None:
            logger.warning("Cannot unlock unknown entry '%s'.", entry_id)
            return False
        entry_type, entry = found
        condition = entry.unlock_condition
        self._unlocked[entry_id] = None
        self._drop_from_index(entry)
        logger.info("Unlocked %s %s.", entry_type, entry_id)

        if self.on_unlock is not None:
            try:
                self.on_unlock(entry_type, entry, condition)
            except Exception:
                logger.exception("Unlock callback failed for '%s'.", entry_id)
        if self.bus is not None:
            self.bus.publish(
                ENTRY_UNLOCKED,
                entry_id=entry_id,
                entry_type=entry_type,
                condition_type=condition.type if condition is not None else None,
            )
        if not self._initializing:
            self.save()
        return True

    def save(self) -> bool:
        if self.store is None:
            return False
        try:
            self.store.save(self.snapshot())
        except OSError as exc:
            self._save_failed()
            logger.error("Progression save failed; keeping in-memory state: %s", exc)
            return False
        except Exception:
            self._save_failed()
            logger.exception("Progression store raised while saving; keeping in-memory state.")
            return False
        self.dirty = False
        return True

    def snapshot(self) -> ProgressionSnapshot:
        return ProgressionSnapshot(
            unlocked_entries=list(self._unlocked),
            completed_research=list(self._completed_research),
            tracked_stats=self.stats.model_copy(deep=True),
        )

    def _save_failed(self) -> None:
        self.dirty = True
        self.save_failures += 1

    # Queries

    def is_unlocked(self, entry_id: str) -> bool:
        return entry_id in self._unlocked

    def completed_research(self) -> list[str]:
        return list(self._completed_research)

    def unlocked_entries(self, entry_type: EntryType | None = None) -> list[str]:
        return [
            entry_id
            for entry_id, (kind, _) in self._entries.items()
            if entry_id in self._unlocked and (entry_type is None or kind == entry_type)
        ]

    def locked_entries(self, entry_type: EntryType | None = None) -> list[str]:
        return [
            entry_id
            for entry_id, (kind, _) in self._entries.items()
            if entry_id not in self._unlocked and (entry_type is None or kind == entry_type)
        ]

    def listener_counts(self) -> dict[str, int]:
        return {kind: sum(len(bucket) for bucket in index.values()) for kind, index in self._listeners.items()}

    def get_unlock_hint(self, entry_id: str) -> str | None:
        found = self._entries.get(entry_id)
        if found is None:
            return None
        condition = found[1].unlock_condition
        if condition is None:
            return None
        if entry_id in self._unlocked:
            return "Unlocked."
        if isinstance(condition, StatThresholdCondition):
            current = self.stats.resolve(condition.stat)
            remaining = max(0.0, condition.value - current)
            return (
                f"Requires {condition.stat} >= {_fmt(condition.value)} "
                f"(current {_fmt(current)}, {_fmt(remaining)} to go)."
            )
        if isinstance(condition, ItemCollectedCondition):
            have = self.stats.items_collected.get(condition.item_id, 0.0)
            remaining = max(0.0, condition.amount - have)
            return (
                f"Collect {_fmt(condition.amount)} {self._label(condition.item_id)} "
                f"(have {_fmt(have)}, {_fmt(remaining)} to go)."
            )
        if isinstance(condition, KillCountCondition):
            kills = self.stats.enemies_killed.get(condition.unit_id, 0)
            return f"Defeat {condition.value} {self._label(condition.unit_id)} ({kills}/{condition.value})."
        if isinstance(condition, ResearchCompleteCondition):
            return f"Complete research {self._label(condition.tech_id)}."
        return None

    # Internals

    def _label(self, ref_id: str) -> str:
        found = self._entries.get(ref_id)
        if found is not None and found[1].name:
            return found[1].name
        return ref_id

    def _load_snapshot(self) -> ProgressionSnapshot | None:
        if self.store is None:
            return None
        try:
            return self.store.load()
        except OSError as exc:
            self.load_failed = True
            logger.error("Progression load failed; starting from a fresh state: %s", exc)
            return None
        except Exception:
            self.load_failed = True
            logger.exception("Progression store raised while loading; starting from a fresh state.")
            return None

    def _apply_snapshot(self, snapshot: ProgressionSnapshot) -> None:
        for entry_id in snapshot.unlocked_entries:
            self._unlocked[entry_id] = None
        for tech_id in snapshot.completed_research:
            self._completed_research[tech_id] = None
        self.stats = snapshot.tracked_stats.model_copy(deep=True)

    def _index_key(self, entry: UnlockableEntry) -> tuple[str, str] | None:
        condition = entry.unlock_condition
        if isinstance(condition, StatThresholdCondition):
            return STAT, _stat_key(condition.stat)
        if isinstance(condition, ItemCollectedCondition):
            return ITEM, condition.item_id
        if isinstance(condition, KillCountCondition):
            return KILL, condition.unit_id
        if isinstance(condition, ResearchCompleteCondition):
            return RESEARCH, condition.tech_id
        return None

    def _build_index(self) -> None:
        for index in self._listeners.values():
            index.clear()
        for entry_id, (_, entry) in self._entries.items():
            if entry_id in self._unlocked:
                continue
            if not entry.requires_unlock:
                self._unlocked[entry_id] = None
                continue
            key = self._index_key(entry)
            if key is not None:
                kind, value = key
                self._listeners[kind].setdefault(value, []).append(entry_id)

    def _catch_up(self) -> None:
        for kind, index in self._listeners.items():
            for key in list(index):
                if kind == RESEARCH and key in self._completed_research:
                    for entry_id in list(index.get(key, [])):
                        self._unlock(entry_id)
                else:
                    self._check(kind, key)

    def _drop_from_index(self, entry: UnlockableEntry) -> None:
        key = self._index_key(entry)
        if key is None:
            return
        kind, value = key
        bucket = self._listeners[kind].get(value)
        if bucket is None:
            return
        if entry.id in bucket:
            bucket.remove(entry.id)
        if not bucket:
            del self._listeners[kind][value]

    def _satisfied(self, entry: UnlockableEntry) -> bool:
        condition = entry.unlock_condition
        if isinstance(condition, StatThresholdCondition):
            return self.stats.resolve(condition.stat) >= condition.value
        if isinstance(condition, ItemCollectedCondition):
            return self.stats.items_collected.get(condition.item_id, 0.0) >= condition.amount
        if isinstance(condition, KillCountCondition):
            return self.stats.enemies_killed.get(condition.unit_id, 0) >= condition.value
        if isinstance(condition, ResearchCompleteCondition):
            return condition.tech_id in self._completed_research
        return True

    def _check(self, kind: str, key: str) -> None:
        bucket = self._listeners[kind].get(key)
        if not bucket:
            return
        for entry_id in list(bucket):
            if self._satisfied(self._entries[entry_id][1]):
                self._unlock(entry_id)

    # Bus adapters

    def _handle_produced(self, event: Any) -> None:
        for resource_id, amount in event.resources.items():
            self.on_resource_produced(resource_id, amount)

    def _handle_consumed(self, event: Any) -> None:
        for resource_id, amount in event.resources.items():
            self.on_resource_consumed(resource_id, amount)

    def _handle_recipe_completed(self, event: Any) -> None:
        self.on_recipe_completed(event.recipe_id)

    def _handle_building_registered(self, event: Any) -> None:
        self.on_building_built(event.building_id)

    def _handle_enemy_killed(self, event: Any) -> None:
        self.on_enemy_killed(event.unit_id, event.count)

    def _handle_item_count(self, event: Any) -> None:
        self.on_item_count_reached(event.item_id, event.count)

    def _handle_research_completed(self, event: Any) -> None:
        self.on_research_complete(event.tech_id)

