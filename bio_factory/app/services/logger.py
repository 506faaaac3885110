from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

EVENTS_LOGGER_NAME = "bio_factory.events"


@dataclass(slots=True)
class EngineLoggerBundle:
    app: logging.Logger
    events: logging.Logger
    latest_log_path: Path
    events_log_path: Path


def _rotate_latest_log(logs_dir: Path, keep_archives: int = 5) -> Path:
    logs_dir.mkdir(parents=True, exist_ok=True)
    latest = logs_dir / "latest.log"
    if latest.exists():
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        latest.replace(logs_dir / f"latest_{stamp}.log")

    archives = sorted(
        (path for path in logs_dir.glob("latest_*.log") if path.is_file()),
        key=lambda p: (p.stat().st_mtime, p.name),
        reverse=True,
    )
    for stale in archives[keep_archives:]:
        stale.unlink(missing_ok=True)
    return latest


def configure_logging(logs_dir: Path, level: int = logging.INFO, *, console: bool = True) -> EngineLoggerBundle:
    latest = _rotate_latest_log(logs_dir)
    events_log_path = logs_dir / "events.log"

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    app_logger = logging.getLogger("bio_factory")
    app_logger.setLevel(level)
    for handler in list(app_logger.handlers):
        handler.close()
    app_logger.handlers.clear()
    app_logger.propagate = False

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        app_logger.addHandler(stream_handler)

    file_handler = logging.FileHandler(latest, mode="w", encoding="utf-8")
    file_handler.setFormatter(formatter)
    app_logger.addHandler(file_handler)

    events_logger = logging.getLogger(EVENTS_LOGGER_NAME)
    events_logger.setLevel(logging.INFO)
    for handler in list(events_logger.handlers):
        handler.close()
    events_logger.handlers.clear()
    events_logger.propagate = False

    events_handler = logging.FileHandler(events_log_path, mode="w", encoding="utf-8")
    events_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    events_logger.addHandler(events_handler)

    return EngineLoggerBundle(
        app=app_logger,
        events=events_logger,
        latest_log_path=latest,
        events_log_path=events_log_path,
    )
