from __future__ import annotations

import json
from pathlib import Path

from bio_factory.app.services.settings_store import SettingsStore


def test_settings_store_read_write(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    store = SettingsStore(path)
    loaded = store.load()
    assert loaded["bus"]["delivery"] == "immediate"
    assert path.exists()

    loaded["bus"]["delivery"] = "deferred"
    loaded["kernel"]["trigger_epsilon"] = 0.01
    loaded["progression"]["autosave_interval_seconds"] = 5
    store.save(loaded)

    reloaded = store.load_engine_settings()
    assert reloaded.bus.delivery == "deferred"
    assert reloaded.kernel.trigger_epsilon == 0.01
    assert reloaded.progression.autosave_interval_seconds == 5


def test_partial_settings_are_filled_with_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"kernel": {"disease_progression_seconds": 12}, "legacy": True}), encoding="utf-8")

    loaded = SettingsStore(path).load()

    assert loaded["kernel"]["disease_progression_seconds"] == 12
    assert loaded["kernel"]["default_recipe_priority"] == 999
    assert "legacy" not in json.loads(path.read_text(encoding="utf-8"))


def test_corrupt_or_invalid_settings_fall_back_to_defaults(tmp_path: Path, caplog) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{oops", encoding="utf-8")
    assert SettingsStore(path).load()["bus"]["max_publish_depth"] == 32

    path.write_text(json.dumps({"bus": {"max_publish_depth": 0}}), encoding="utf-8")
    assert SettingsStore(path).load()["bus"]["max_publish_depth"] == 32
    assert "invalid values" in caplog.text
