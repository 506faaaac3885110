from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, TypeVar

from pydantic import TypeAdapter, ValidationError

from .models import (
    Biomarker,
    Building,
    DiseaseDefinition,
    EntryType,
    ItemCollectedCondition,
    KillCountCondition,
    Recipe,
    ResearchCompleteCondition,
    ResourceType,
    Technology,
    Unit,
    UnlockableEntry,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_DIR = Path(__file__).resolve().parents[1] / "content"


class ContentValidationError(ValueError):
    def __init__(self, message: str, details: list[str] | None = None) -> None:
        self.details = details or []
        suffix = "\n".join(self.details)
        super().__init__(f"{message}\n{suffix}" if suffix else message)


class ConfigurationError(LookupError):
    """A referenced id is absent from the Content Database."""

    def __init__(self, kind: str, ref_id: str, context: str | None = None) -> None:
        self.kind = kind
        self.ref_id = ref_id
        where = f" ({context})" if context else ""
        super().__init__(f"Unknown {kind} '{ref_id}'{where}.")


@dataclass(slots=True)
class ContentBundle:
    resources: list[ResourceType]
    recipes: list[Recipe]
    buildings: list[Building]
    biomarkers: list[Biomarker]
    diseases: list[DiseaseDefinition]
    units: list[Unit] = field(default_factory=list)
    technologies: list[Technology] = field(default_factory=list)
    resource_by_id: dict[str, ResourceType] = field(default_factory=dict)
    recipe_by_id: dict[str, Recipe] = field(default_factory=dict)
    building_by_id: dict[str, Building] = field(default_factory=dict)
    biomarker_by_id: dict[str, Biomarker] = field(default_factory=dict)
    disease_by_id: dict[str, DiseaseDefinition] = field(default_factory=dict)
    unit_by_id: dict[str, Unit] = field(default_factory=dict)
    technology_by_id: dict[str, Technology] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_tables(
        cls,
        *,
        resources: list[ResourceType] | None = None,
        recipes: list[Recipe] | None = None,
        buildings: list[Building] | None = None,
        biomarkers: list[Biomarker] | None = None,
        diseases: list[DiseaseDefinition] | None = None,
        units: list[Unit] | None = None,
        technologies: list[Technology] | None = None,
    ) -> "ContentBundle":
        tables = {
            "resource": resources or [],
            "recipe": recipes or [],
            "building": buildings or [],
            "biomarker": biomarkers or [],
            "disease": diseases or [],
            "unit": units or [],
            "technology": technologies or [],
        }
        for kind, values in tables.items():
            _assert_unique_ids(kind, values)

        bundle = cls(
            resources=tables["resource"],
            recipes=tables["recipe"],
            buildings=tables["building"],
            biomarkers=tables["biomarker"],
            diseases=tables["disease"],
            units=tables["unit"],
            technologies=tables["technology"],
            resource_by_id={entry.id: entry for entry in tables["resource"]},
            recipe_by_id={entry.id: entry for entry in tables["recipe"]},
            building_by_id={entry.id: entry for entry in tables["building"]},
            biomarker_by_id={entry.id: entry for entry in tables["biomarker"]},
            disease_by_id={entry.id: entry for entry in tables["disease"]},
            unit_by_id={entry.id: entry for entry in tables["unit"]},
            technology_by_id={entry.id: entry for entry in tables["technology"]},
        )
        bundle.warnings = _collect_reference_warnings(bundle)
        for warning in bundle.warnings:
            logger.warning("Content reference: %s", warning)
        return bundle

    def unlockable_entries(self) -> Iterator[tuple[EntryType, UnlockableEntry]]:
        for entry in self.resources:
            yield "resource", entry
        for entry in self.buildings:
            yield "building", entry
        for entry in self.recipes:
            yield "recipe", entry
        for entry in self.units:
            yield "unit", entry
        for entry in self.technologies:
            yield "technology", entry

    def find_entry(self, entry_id: str) -> tuple[EntryType, UnlockableEntry] | None:
        for entry_type, entry in self.unlockable_entries():
            if entry.id == entry_id:
                return entry_type, entry
        return None

    def require_resource(self, resource_id: str, context: str | None = None) -> ResourceType:
        resource = self.resource_by_id.get(resource_id)
        if resource is None:
            raise ConfigurationError("resource", resource_id, context)
        return resource

    def require_building(self, building_id: str) -> Building:
        building = self.building_by_id.get(building_id)
        if building is None:
            raise ConfigurationError("building", building_id)
        return building

    def require_recipe(self, recipe_id: str, context: str | None = None) -> Recipe:
        recipe = self.recipe_by_id.get(recipe_id)
        if recipe is None:
            raise ConfigurationError("recipe", recipe_id, context)
        return recipe

    def require_disease(self, disease_id: str) -> DiseaseDefinition:
        disease = self.disease_by_id.get(disease_id)
        if disease is None:
            raise ConfigurationError("disease", disease_id)
        return disease


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ContentValidationError(f"Missing content file: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ContentValidationError(f"Invalid JSON in {path.name}: {exc.msg} at line {exc.lineno}") from exc


def _load_typed_list(path: Path, item_type: type[T]) -> list[T]:
    data = _load_json(path)
    adapter = TypeAdapter(list[item_type])  # type: ignore[index]
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        errors = []
        for issue in exc.errors():
            issue_path = ".".join(str(part) for part in issue.get("loc", [])) or "(root)"
            errors.append(f"{path.name}:{issue_path}: {issue.get('msg', 'validation error')}")
        raise ContentValidationError(f"Schema validation failed for {path.name}.", errors) from exc


def _load_optional_typed_list(path: Path, item_type: type[T]) -> list[T]:
    if not path.exists():
        return []
    return _load_typed_list(path, item_type)


def _assert_unique_ids(kind: str, values: list[Any]) -> None:
    seen: set[str] = set()
    for entry in values:
        entry_id = entry.id
        if entry_id in seen:
            raise ContentValidationError(f"Duplicate {kind} id '{entry_id}'.")
        seen.add(entry_id)


def _collect_reference_warnings(bundle: ContentBundle) -> list[str]:
    warnings: list[str] = []
    resource_ids = set(bundle.resource_by_id)
    biomarker_ids = set(bundle.biomarker_by_id)

    for resource in bundle.resources:
        for mod in resource.biomarker_mods:
            if mod.marker_id not in biomarker_ids:
                warnings.append(f"resource '{resource.id}' biomarker_mods references missing biomarker '{mod.marker_id}'.")

    for recipe in bundle.recipes:
        for resource_id in sorted(recipe.referenced_resources() - resource_ids):
            warnings.append(f"recipe '{recipe.id}' references missing resource '{resource_id}'.")
        for machine_id in recipe.machine_ids:
            if machine_id not in bundle.building_by_id:
                warnings.append(f"recipe '{recipe.id}' machine_ids references missing building '{machine_id}'.")
        for tech_id in recipe.unlock_by_research:
            if tech_id not in bundle.technology_by_id:
                warnings.append(f"recipe '{recipe.id}' unlock_by_research references missing technology '{tech_id}'.")

    for building in bundle.buildings:
        for recipe_id in building.supported_recipes:
            if recipe_id not in bundle.recipe_by_id:
                warnings.append(f"building '{building.id}' supported_recipes references missing recipe '{recipe_id}'.")

    for biomarker in bundle.biomarkers:
        if biomarker.source is not None and biomarker.source not in resource_ids:
            warnings.append(f"biomarker '{biomarker.id}' source references missing resource '{biomarker.source}'.")

    for disease in bundle.diseases:
        for idx, trigger in enumerate(disease.triggers):
            if trigger.marker_id not in biomarker_ids:
                warnings.append(
                    f"disease '{disease.id}' triggers[{idx}] references missing biomarker '{trigger.marker_id}'."
                )

    for entry_type, entry in bundle.unlockable_entries():
        condition = entry.unlock_condition
        if isinstance(condition, ItemCollectedCondition) and condition.item_id not in resource_ids:
            warnings.append(f"{entry_type} '{entry.id}' unlock_condition references missing item '{condition.item_id}'.")
        elif isinstance(condition, KillCountCondition) and condition.unit_id not in bundle.unit_by_id:
            warnings.append(f"{entry_type} '{entry.id}' unlock_condition references missing unit '{condition.unit_id}'.")
        elif isinstance(condition, ResearchCompleteCondition) and condition.tech_id not in bundle.technology_by_id:
            warnings.append(
                f"{entry_type} '{entry.id}' unlock_condition references missing technology '{condition.tech_id}'."
            )
    return warnings


def load_content(content_dir: Path | str = DEFAULT_CONTENT_DIR) -> ContentBundle:
    base_path = Path(content_dir)
    return ContentBundle.from_tables(
        resources=_load_typed_list(base_path / "resources.json", ResourceType),
        recipes=_load_typed_list(base_path / "recipes.json", Recipe),
        buildings=_load_typed_list(base_path / "buildings.json", Building),
        biomarkers=_load_optional_typed_list(base_path / "biomarkers.json", Biomarker),
        diseases=_load_optional_typed_list(base_path / "diseases.json", DiseaseDefinition),
        units=_load_optional_typed_list(base_path / "units.json", Unit),
        technologies=_load_optional_typed_list(base_path / "technologies.json", Technology),
    )
