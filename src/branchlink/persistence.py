"""Persistence backends and versioned-document loading.

Backends move plain JSON-compatible data. ``load_versioned`` layers schema
detection, forward migration and validation on top, and turns anything
unreadable into a backed-up file plus an empty document.
"""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from pydantic import ValidationError

from .errors import PersistenceCorrupt
from .fs import atomic_write_json, backup_file, read_text
from .observability import log_debug, log_warning

T = TypeVar("T")

Migration = Callable[[Dict[str, Any]], Dict[str, Any]]


class PersistenceBackend(ABC):
    """Where one JSON document lives."""

    @abstractmethod
    def load(self) -> Optional[Any]:
        """Return the decoded document, None if absent.

        Raises:
            PersistenceCorrupt: content exists but cannot be decoded
        """

    @abstractmethod
    def save(self, data: Any) -> None:
        """Replace the document atomically. Raises OSError on failure."""

    @abstractmethod
    def backup(self) -> Optional[str]:
        """Preserve the current (unreadable) content; return where it went."""

    @abstractmethod
    def describe(self) -> str:
        ...


class JsonFileBackend(PersistenceBackend):
    """Document stored as a JSON file, written via temp file + rename."""

    def __init__(self, path: Path, *, backup_count: int = 3):
        self.path = Path(path)
        self.backup_count = backup_count

    def load(self) -> Optional[Any]:
        try:
            text = read_text(self.path)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceCorrupt(f"Cannot read {self.path}: {e}", path=str(self.path))
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PersistenceCorrupt(f"Invalid JSON in {self.path}: {e}", path=str(self.path))

    def save(self, data: Any) -> None:
        atomic_write_json(self.path, data)

    def backup(self) -> Optional[str]:
        dest = backup_file(self.path, keep=self.backup_count, tag=f"{self.path.stem}.corrupt")
        return str(dest) if dest else None

    def describe(self) -> str:
        return str(self.path)


class MemoryBackend(PersistenceBackend):
    """In-memory document, for tests and ephemeral sessions."""

    def __init__(self, data: Any = None):
        self._data = copy.deepcopy(data)
        self.backups: list[Any] = []
        self.saves = 0
        self.fail_saves = False

    def load(self) -> Optional[Any]:
        return copy.deepcopy(self._data)

    def save(self, data: Any) -> None:
        if self.fail_saves:
            raise OSError("simulated write failure")
        self._data = copy.deepcopy(data)
        self.saves += 1

    def backup(self) -> Optional[str]:
        if self._data is None:
            return None
        self.backups.append(copy.deepcopy(self._data))
        return f"memory-backup-{len(self.backups)}"

    def describe(self) -> str:
        return "memory"

    @property
    def data(self) -> Any:
        return copy.deepcopy(self._data)


def detect_schema_version(raw: Any) -> int:
    """Version of a decoded document. Unversioned legacy content is version 0."""
    if isinstance(raw, list):
        return 0
    if not isinstance(raw, dict):
        raise PersistenceCorrupt(f"Expected a JSON object, got {type(raw).__name__}")
    if "schemaVersion" not in raw:
        return 0
    version = raw["schemaVersion"]
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        raise PersistenceCorrupt(f"Invalid schemaVersion: {version!r}")
    return version


def load_versioned(
    backend: PersistenceBackend,
    *,
    current_version: int,
    migrations: Dict[int, Migration],
    validate: Callable[[Dict[str, Any]], T],
    empty: Callable[[], T],
    label: str,
) -> tuple[T, Optional[str]]:
    """Load, migrate and validate a document.

    ``migrations[n]`` upgrades a version-n document to version n+1.

    Returns:
        (document, warning). ``warning`` is None on a clean load and a
        human-readable message when the content was unreadable and replaced
        by an empty document (after being backed up).
    """
    try:
        raw = backend.load()
        if raw is None:
            return empty(), None
        version = detect_schema_version(raw)
        if version > current_version:
            raise PersistenceCorrupt(
                f"schemaVersion {version} is newer than supported version {current_version}"
            )
        data: Any = raw
        while version < current_version:
            step = migrations.get(version)
            if step is None:
                raise PersistenceCorrupt(f"No migration from schemaVersion {version}")
            data = step(data)
            log_debug(f"[STORE] migrated {label}", source=backend.describe(), from_version=version)
            version += 1
        return validate(data), None
    except (PersistenceCorrupt, ValidationError, KeyError, TypeError, ValueError) as e:
        try:
            backup = backend.backup()
        except OSError as backup_error:
            backup = None
            log_warning(f"[STORE] could not back up unreadable {label}", error=str(backup_error))
        message = (
            f"Unreadable {label} at {backend.describe()} was reset to empty"
            + (f"; backup saved to {backup}" if backup else "")
        )
        log_warning(f"[STORE] {message}", kind="persistence_corrupt", error=str(e))
        return empty(), message
