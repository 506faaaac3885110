from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from .models import SAVE_VERSION, ProgressionSnapshot
from .save_system import migrate_snapshot

logger = logging.getLogger(__name__)


class PersistenceError(OSError):
    """A progression snapshot could not be read or written."""


@runtime_checkable
class ProgressionStore(Protocol):
    def load(self) -> ProgressionSnapshot | None: ...

    def save(self, snapshot: ProgressionSnapshot) -> None: ...


class MemoryStore:
    def __init__(self, snapshot: ProgressionSnapshot | None = None) -> None:
        self.snapshot = snapshot
        self.save_count = 0

    def load(self) -> ProgressionSnapshot | None:
        if self.snapshot is None:
            return None
        return self.snapshot.model_copy(deep=True)

    def save(self, snapshot: ProgressionSnapshot) -> None:
        self.snapshot = snapshot.model_copy(deep=True)
        self.save_count += 1


class JsonFileStore:
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.backup_path: Path | None = None
        self._unreadable = False

    def load(self) -> ProgressionSnapshot | None:
        if not self.path.exists():
            return None
        self._unreadable = True
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceError(f"Unable to read {self.path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Invalid JSON in {self.path.name}: {exc.msg} at line {exc.lineno}") from exc
        try:
            snapshot = ProgressionSnapshot.model_validate(migrate_snapshot(payload))
        except (ValidationError, ValueError) as exc:
            raise PersistenceError(f"Unreadable progression snapshot {self.path.name}: {exc}") from exc
        self._unreadable = False
        return snapshot

    def save(self, snapshot: ProgressionSnapshot) -> None:
        snapshot.meta.save_version = SAVE_VERSION
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._unreadable and self.path.exists():
                self._set_aside()
            temp_path.write_text(json.dumps(snapshot.model_dump(mode="json"), indent=2), encoding="utf-8")
            temp_path.replace(self.path)
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self.path}: {exc}") from exc
        logger.debug("Saved progression snapshot to %s", self.path)

    def _set_aside(self) -> None:
        backup = self.path.with_name(f"{self.path.name}.corrupt")
        self.path.replace(backup)
        self.backup_path = backup
        self._unreadable = False
        logger.warning("Moved unreadable progression snapshot to %s", backup)
