from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from bio_factory.core.loader import ConfigurationError, ContentValidationError, load_content

CONTENT_DIR = Path(__file__).resolve().parents[1] / "content"


def _copy_content(tmp_path: Path) -> Path:
    test_content = tmp_path / "content"
    shutil.copytree(CONTENT_DIR, test_content)
    return test_content


def test_shipped_content_loads_without_reference_warnings():
    content = load_content(CONTENT_DIR)

    assert content.warnings == []
    assert "RES_GLUCOSE" in content.resource_by_id
    assert content.require_building("BLD_MITOCHONDRIA").supported_recipes


def test_duplicate_resource_id_raises_clear_error(tmp_path: Path):
    test_content = _copy_content(tmp_path)
    resources_path = test_content / "resources.json"
    resources = json.loads(resources_path.read_text(encoding="utf-8"))
    resources.append(dict(resources[0]))
    resources_path.write_text(json.dumps(resources, indent=2), encoding="utf-8")

    with pytest.raises(ContentValidationError, match="Duplicate resource id 'RES_GLUCOSE'"):
        load_content(test_content)


def test_recipe_without_craft_time_is_rejected(tmp_path: Path):
    test_content = _copy_content(tmp_path)
    recipes_path = test_content / "recipes.json"
    recipes = json.loads(recipes_path.read_text(encoding="utf-8"))
    del recipes[0]["time_seconds"]
    recipes_path.write_text(json.dumps(recipes, indent=2), encoding="utf-8")

    with pytest.raises(ContentValidationError, match="time_seconds"):
        load_content(test_content)


def test_missing_references_are_reported_as_warnings(tmp_path: Path):
    test_content = _copy_content(tmp_path)
    buildings_path = test_content / "buildings.json"
    buildings = json.loads(buildings_path.read_text(encoding="utf-8"))
    buildings[0]["supported_recipes"].append("RECIPE_GHOST")
    buildings_path.write_text(json.dumps(buildings, indent=2), encoding="utf-8")

    content = load_content(test_content)

    assert any("missing recipe 'RECIPE_GHOST'" in warning for warning in content.warnings)
    with pytest.raises(ConfigurationError, match="Unknown recipe 'RECIPE_GHOST'"):
        content.require_recipe("RECIPE_GHOST")


def test_unknown_condition_type_fails_schema(tmp_path: Path):
    test_content = _copy_content(tmp_path)
    units_path = test_content / "units.json"
    units = json.loads(units_path.read_text(encoding="utf-8"))
    units[0]["unlock_condition"] = {"type": "MOON_PHASE"}
    units_path.write_text(json.dumps(units, indent=2), encoding="utf-8")

    with pytest.raises(ContentValidationError, match="units.json"):
        load_content(test_content)
