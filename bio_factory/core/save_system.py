from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Callable

from .models import SAVE_VERSION, TrackedStats

_FLOAT_STATS = ("total_energy_produced", "total_resources_consumed", "playtime_seconds")
_INT_STATS = ("total_resources_crafted", "buildings_built")
_TALLY_STATS = ("produced_by_resource", "consumed_by_resource", "items_collected")


def _coerce_dict(value: Any, default: dict[str, Any] | None = None) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {} if default is None else dict(default)


def _coerce_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number) or number < 0:
        return default
    return number


def _coerce_ids(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(entry) for entry in value if isinstance(entry, str) and entry]


def _coerce_timestamp(value: Any) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        # Legacy saves stored epoch milliseconds.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    return datetime.now(timezone.utc).isoformat()


def _migrate_v0_to_v1(payload: dict[str, Any]) -> dict[str, Any]:
    payload["meta"] = {"save_version": 1, "timestamp": datetime.now(timezone.utc).isoformat()}
    payload["unlocked_entries"] = _coerce_ids(payload.get("unlocked_entries"))
    payload["tracked_stats"] = _coerce_dict(payload.get("tracked_stats"))
    return payload


def _migrate_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    meta = _coerce_dict(payload.get("meta"))
    legacy = dict(_coerce_dict(payload.get("tracked_stats")))
    stats: dict[str, Any] = {}
    counters: dict[str, float] = {}

    for key in _FLOAT_STATS:
        stats[key] = _coerce_float(legacy.pop(key, 0.0))
    for key in _INT_STATS:
        stats[key] = int(_coerce_float(legacy.pop(key, 0)))

    kills = _coerce_dict(legacy.pop("enemies_killed", None))
    stats["enemies_killed"] = {
        str(unit_id): int(_coerce_float(count)) for unit_id, count in kills.items()
    }
    for key in _TALLY_STATS:
        tally = _coerce_dict(legacy.pop(key, None))
        stats[key] = {str(item_id): _coerce_float(amount) for item_id, amount in tally.items()}

    for key, value in _coerce_dict(legacy.pop("counters", None)).items():
        counters[str(key)] = _coerce_float(value)
    # Any other flat numeric stat from the legacy record becomes a free-form counter.
    for key, value in legacy.items():
        if isinstance(value, (int, float)) and not isinstance(value, bool) and key not in TrackedStats.model_fields:
            counters[str(key)] = _coerce_float(value)
    stats["counters"] = counters

    payload["tracked_stats"] = stats
    payload["unlocked_entries"] = _coerce_ids(payload.get("unlocked_entries"))
    payload["completed_research"] = _coerce_ids(payload.get("completed_research"))
    payload["meta"] = {"save_version": 2, "timestamp": _coerce_timestamp(meta.get("timestamp"))}
    return payload


MIGRATION_STEPS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    0: _migrate_v0_to_v1,
    1: _migrate_v1_to_v2,
}


def snapshot_version(payload: dict[str, Any]) -> int:
    meta = payload.get("meta")
    if not isinstance(meta, dict):
        return 0
    version_raw = meta.get("save_version")
    try:
        # Version 1 saves wrote a float (1.0).
        version = int(float(version_raw)) if version_raw is not None else 0
    except (TypeError, ValueError):
        version = 0
    return max(0, min(SAVE_VERSION, version))


def migrate_snapshot(payload: Any) -> dict[str, Any]:
    """Upgrade a raw snapshot dict to the current save version."""
    state = dict(_coerce_dict(payload))
    version = snapshot_version(state)
    while version < SAVE_VERSION:
        step = MIGRATION_STEPS.get(version)
        if step is None:
            raise ValueError(f"No migration step defined from version {version}.")
        state = step(state)
        version = int(state["meta"]["save_version"])
    meta = dict(_coerce_dict(state.get("meta")))
    meta["save_version"] = SAVE_VERSION
    meta["timestamp"] = _coerce_timestamp(meta.get("timestamp"))
    state["meta"] = meta
    return state
