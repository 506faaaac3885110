from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from bio_factory.app.services.logger import EVENTS_LOGGER_NAME, configure_logging
from bio_factory.app.services.paths import resolve_user_paths
from bio_factory.app.services.settings_store import SettingsStore
from bio_factory.core.context import SimulationContext, build_context
from bio_factory.core.events import EVENT_PAYLOADS
from bio_factory.core.loader import DEFAULT_CONTENT_DIR, ContentValidationError, load_content
from bio_factory.core.persistence import JsonFileStore
from bio_factory.core.settings import EngineSettings

app = typer.Typer(add_completion=False, help="Run a deterministic headless factory simulation.")
console = Console()
events_logger = logging.getLogger(EVENTS_LOGGER_NAME)


def _parse_stock(entries: list[str]) -> dict[str, float]:
    stock: dict[str, float] = {}
    for raw in entries:
        resource_id, sep, amount = raw.partition("=")
        if not sep or not resource_id:
            raise typer.BadParameter(f"Expected RES_ID=AMOUNT, got '{raw}'.", param_hint="--stock")
        try:
            value = float(amount)
        except ValueError as exc:
            raise typer.BadParameter(f"Amount in '{raw}' is not a number.", param_hint="--stock") from exc
        if value < 0:
            raise typer.BadParameter(f"Amount in '{raw}' cannot be negative.", param_hint="--stock")
        stock[resource_id.strip()] = stock.get(resource_id.strip(), 0.0) + value
    return stock


def _trace_events(context: SimulationContext) -> None:
    def trace(event: Any) -> None:
        events_logger.info("%s %s", type(event).__name__, event.model_dump_json(by_alias=True))

    for event_type in EVENT_PAYLOADS:
        context.subscriptions.append(context.bus.subscribe(event_type, trace))


def _signature_payload(context: SimulationContext) -> dict[str, Any]:
    snapshot = context.kernel.snapshot()
    return {
        "elapsed": round(snapshot["elapsed"], 6),
        "ledger": {key: round(value, 6) for key, value in snapshot["ledger"].items()},
        "biomarkers": {key: round(value, 6) for key, value in snapshot["biomarkers"].items()},
        "active_diseases": {key: value["tier"] for key, value in snapshot["active_diseases"].items()},
        "unlocked": sorted(context.progression.unlocked_entries()),
        "research": sorted(context.research.completed()),
        "event_counts": dict(sorted(context.bus.event_counts.items())),
    }


def _render(context: SimulationContext) -> None:
    snapshot = context.kernel.snapshot()

    ledger = Table(title="Ledger")
    ledger.add_column("Resource", style="cyan", no_wrap=True)
    ledger.add_column("Quantity", justify="right")
    for resource_id, quantity in snapshot["ledger"].items():
        ledger.add_row(resource_id, f"{quantity:.2f}")

    biomarkers = Table(title="Biomarkers")
    biomarkers.add_column("Biomarker", style="cyan", no_wrap=True)
    biomarkers.add_column("Value", justify="right")
    biomarkers.add_column("Normal", style="dim")
    for biomarker in context.content.biomarkers:
        value = snapshot["biomarkers"].get(biomarker.id)
        normal = f"{biomarker.normal_range[0]:g}-{biomarker.normal_range[1]:g}" if biomarker.normal_range else "-"
        biomarkers.add_row(biomarker.id, "-" if value is None else f"{value:.4f}", normal)

    diseases = Table(title="Active Diseases")
    diseases.add_column("Disease", style="red", no_wrap=True)
    diseases.add_column("Tier", justify="right")
    diseases.add_column("Onset", justify="right")
    for disease_id, state in snapshot["active_diseases"].items():
        diseases.add_row(disease_id, str(state["tier"]), f"{state['onset_time']:.1f}s")

    unlocks = Table(title="Unlocked Entries")
    unlocks.add_column("Type", style="cyan")
    unlocks.add_column("Entries")
    for entry_type in ("resource", "building", "recipe", "unit", "technology"):
        unlocked = context.progression.unlocked_entries(entry_type)
        unlocks.add_row(entry_type, ", ".join(unlocked) or "-")

    counts = Table(title="Event Counts")
    counts.add_column("Event", style="cyan", no_wrap=True)
    counts.add_column("Count", justify="right")
    for event_type, count in sorted(context.bus.event_counts.items()):
        counts.add_row(event_type, str(count))

    for table in (ledger, biomarkers, diseases, unlocks, counts):
        console.print(table)


@app.command()
def main(
    content_dir: Path = typer.Option(DEFAULT_CONTENT_DIR, "--content-dir", help="Directory holding the content JSON tables."),
    seconds: float = typer.Option(60.0, "--seconds", min=0.0, help="Simulated seconds to run."),
    dt: float = typer.Option(0.5, "--dt", min=0.001, help="Tick size in seconds."),
    stock: list[str] = typer.Option([], "--stock", help="Starting stock as RES_ID=AMOUNT (repeatable)."),
    building: list[str] = typer.Option([], "--building", help="Building id to register (repeatable)."),
    research: list[str] = typer.Option([], "--research", help="Technology id to start researching (repeatable)."),
    settings: Optional[Path] = typer.Option(None, "--settings", help="Engine settings JSON (created with defaults if missing)."),
    save: Optional[Path] = typer.Option(None, "--save", help="Progression snapshot file to load and save."),
    logs_dir: Optional[Path] = typer.Option(None, "--logs-dir", help="Write latest.log and an events.log trace here."),
    profile: bool = typer.Option(
        False, "--profile", help="Use the per-user data folder for settings, progression and logs unless given explicitly."
    ),
) -> None:
    if profile:
        user_paths = resolve_user_paths()
        settings = settings or user_paths.settings_file
        save = save or user_paths.progression_file
        logs_dir = logs_dir or user_paths.logs
    if logs_dir is not None:
        configure_logging(logs_dir, console=False)

    engine_settings = SettingsStore(settings).load_engine_settings() if settings is not None else EngineSettings()

    try:
        content = load_content(content_dir)
    except ContentValidationError as exc:
        console.print(f"[bold red]Content load failed:[/bold red] {exc}")
        raise typer.Exit(1) from exc

    initial = _parse_stock(stock)
    unknown = sorted(resource_id for resource_id in initial if resource_id not in content.resource_by_id)
    if unknown:
        console.print(f"[bold red]Unknown resources in --stock:[/bold red] {', '.join(unknown)}")
        raise typer.Exit(1)

    store = JsonFileStore(save) if save is not None else None
    context = build_context(content, settings=engine_settings, store=store, initial_resources=initial)
    _trace_events(context)

    for index, building_id in enumerate(building):
        if context.kernel.register_building(building_id, x=float(index), y=0.0) is None:
            console.print(f"[yellow]Skipped unknown building '{building_id}'.[/yellow]")
    for tech_id in research:
        if not context.research.start_research(tech_id):
            console.print(f"[yellow]Research '{tech_id}' was not started.[/yellow]")

    ticks = int(round(seconds / dt))
    for _ in range(ticks):
        context.tick(dt)
    context.close()

    _render(context)
    payload = _signature_payload(context)
    signature = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()[:16]
    console.print(f"\n[bold green]Deterministic signature:[/bold green] {signature}")


if __name__ == "__main__":
    app()
