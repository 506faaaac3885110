from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


APP_DIR_NAME = "BioFactory"
HOME_ENV_VAR = "BIO_FACTORY_HOME"
PRIMARY_WINDOWS_ROOT = Path(r"C:\BioFactory")


@dataclass(slots=True)
class UserPaths:
    root: Path
    saves: Path
    logs: Path
    config: Path

    @classmethod
    def under(cls, root: Path) -> "UserPaths":
        return cls(root=root, saves=root / "saves", logs=root / "logs", config=root / "config")

    @property
    def progression_file(self) -> Path:
        return self.saves / "progression.json"

    @property
    def settings_file(self) -> Path:
        return self.config / "settings.json"

    def directories(self) -> tuple[Path, Path, Path]:
        return self.saves, self.logs, self.config


def _is_windows() -> bool:
    return os.name == "nt"


def _candidate_roots(app_name: str) -> list[Path]:
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return [Path(override)]

    candidates: list[Path] = []
    if _is_windows():
        candidates.append(PRIMARY_WINDOWS_ROOT)
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        candidates.append(Path(local_app_data) / app_name)
    candidates.append(Path.home() / app_name)
    return candidates


def resolve_user_paths(app_name: str = APP_DIR_NAME) -> UserPaths:
    """Return the first data root whose saves, logs and config folders can be created."""
    last_error: Exception | None = None
    for root in _candidate_roots(app_name):
        paths = UserPaths.under(root)
        try:
            for directory in paths.directories():
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            last_error = exc
            continue
        return paths
    raise RuntimeError(f"Unable to initialize {app_name} data directories.") from last_error
