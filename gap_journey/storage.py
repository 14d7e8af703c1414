"""
Storage adapters and the persisted journey layout.

The engine persists through a small key-value interface: ``get`` returns
the stored string or ``None``, ``set`` stores a string and ``remove``
deletes a key.  Two adapters are provided:

- ``MemoryStorage``: dict-backed, used for tests and for the
  session-scoped analytics record
- ``FileStorage``: one JSON document per profile inside a storage
  directory, suitable for a single local user

Journey fields are stored under separate keys (see
``gap_journey.config.JOURNEY_STORAGE_KEYS``); composite values are JSON
encoded.  No multi-key transaction is assumed: every key is read and
written on its own.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from gap_journey.config import JOURNEY_STORAGE_KEYS
from gap_journey.exceptions import StorageError
from gap_journey.gap_engine import AssessmentResults, IdentifiedGap
from gap_journey.state import JourneyState, ToolUsage

logger = logging.getLogger(__name__)

KEYS = JOURNEY_STORAGE_KEYS


class StorageAdapter:
    """Synchronous key-value store interface."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class MemoryStorage(StorageAdapter):
    """In-memory store. Contents are lost when the object is discarded."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class FileStorage(StorageAdapter):
    """Stores all keys of one profile in ``<storage_dir>/<profile>.json``."""

    def __init__(self, storage_dir: str = "journey_data", profile: str = "default") -> None:
        self.storage_dir = Path(storage_dir)
        self.profile = profile
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            # Keep stored profiles out of version control
            gitignore_path = self.storage_dir / ".gitignore"
            if not gitignore_path.exists():
                gitignore_path.write_text("*\n!.gitignore\n")
        except OSError as exc:
            raise StorageError("init", reason=str(exc)) from exc

    @property
    def file_path(self) -> Path:
        return self.storage_dir / f"{self.profile}.json"

    def _read_all(self) -> Dict[str, str]:
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = decode_json(f.read())
        except (OSError, ValueError, RecursionError) as exc:
            raise StorageError("get", reason=f"cannot read {self.file_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError("get", reason=f"{self.file_path} does not hold an object")
        return data

    def _write_all(self, data: Dict[str, str], key: Optional[str], operation: str) -> None:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.storage_dir, suffix=".tmp")
        except OSError as exc:
            raise StorageError(operation, key, str(exc)) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.file_path)
        except (OSError, TypeError, ValueError) as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise StorageError(operation, key, str(exc)) from exc

    def get(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data, key, "set")

    def remove(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data, key, "remove")

    def keys(self) -> List[str]:
        return list(self._read_all())


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not allowed")


def decode_json(raw: str) -> Any:
    """``json.loads`` that refuses ``NaN``, ``Infinity`` and ``-Infinity``."""
    return json.loads(raw, parse_constant=_reject_constant)


def read_json(storage: StorageAdapter, key: str, default: Any) -> Any:
    """Read and decode a JSON value; a corrupt value raises ``StorageError``."""
    raw = storage.get(key)
    if raw is None or raw == "":
        return default
    try:
        return decode_json(raw)
    except (ValueError, RecursionError) as exc:
        raise StorageError("get", key, f"corrupt JSON value: {exc}") from exc


def write_json(storage: StorageAdapter, key: str, value: Any) -> None:
    storage.set(key, json.dumps(value, ensure_ascii=False))


def load_journey_state(storage: StorageAdapter) -> JourneyState:
    """Read the journey snapshot from its individual keys.

    Missing keys fall back to a fresh journey's values.  Raises
    ``StorageError`` when the store fails or a value cannot be decoded.
    """
    raw_step = storage.get(KEYS["CURRENT_STEP"])
    try:
        current_step_index = int(raw_step) if raw_step else 0
    except ValueError as exc:
        raise StorageError("get", KEYS["CURRENT_STEP"], f"not an integer: {raw_step!r}") from exc

    try:
        return JourneyState(
            current_step_index=current_step_index,
            completed_steps=[str(s) for s in read_json(storage, KEYS["COMPLETED_STEPS"], [])],
            identified_gaps=[
                IdentifiedGap.from_dict(g) for g in read_json(storage, KEYS["IDENTIFIED_GAPS"], [])
            ],
            completed_gap_ids=[str(g) for g in read_json(storage, KEYS["COMPLETED_GAPS"], [])],
            completed_tool_ids=[str(t) for t in read_json(storage, KEYS["COMPLETED_TOOLS"], [])],
            has_completed_assessment=storage.get(KEYS["ASSESSMENT_COMPLETED"]) == "true",
            version=storage.get(KEYS["VERSION"]) or None,
            started_at=storage.get(KEYS["JOURNEY_STARTED_AT"]) or None,
            last_updated_at=storage.get(KEYS["LAST_UPDATED_AT"]) or None,
        )
    except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as exc:
        raise StorageError("get", reason=f"malformed journey record: {exc}") from exc


def save_journey_state(storage: StorageAdapter, state: JourneyState) -> None:
    """Write every journey field to its own key."""
    storage.set(KEYS["CURRENT_STEP"], str(state.current_step_index))
    write_json(storage, KEYS["COMPLETED_STEPS"], state.completed_steps)
    write_json(storage, KEYS["IDENTIFIED_GAPS"], [g.to_dict() for g in state.identified_gaps])
    write_json(storage, KEYS["COMPLETED_GAPS"], state.completed_gap_ids)
    write_json(storage, KEYS["COMPLETED_TOOLS"], state.completed_tool_ids)
    storage.set(KEYS["ASSESSMENT_COMPLETED"], "true" if state.has_completed_assessment else "false")
    if state.version:
        storage.set(KEYS["VERSION"], state.version)
    if state.last_updated_at:
        storage.set(KEYS["LAST_UPDATED_AT"], state.last_updated_at)
    if state.started_at:
        storage.set(KEYS["JOURNEY_STARTED_AT"], state.started_at)


def load_tool_usage(storage: StorageAdapter) -> List[ToolUsage]:
    try:
        return [ToolUsage.from_dict(u) for u in read_json(storage, KEYS["TOOL_USAGE_HISTORY"], [])]
    except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as exc:
        raise StorageError("get", KEYS["TOOL_USAGE_HISTORY"], f"malformed usage record: {exc}") from exc


def save_tool_usage(storage: StorageAdapter, usage: Iterable[ToolUsage]) -> None:
    write_json(storage, KEYS["TOOL_USAGE_HISTORY"], [u.to_dict() for u in usage])


def load_assessment_results(storage: StorageAdapter) -> Optional[AssessmentResults]:
    data = read_json(storage, KEYS["ASSESSMENT_RESULTS"], None)
    if not isinstance(data, dict):
        return None
    return AssessmentResults.from_dict(data)


def save_assessment_results(storage: StorageAdapter, results: AssessmentResults) -> None:
    write_json(storage, KEYS["ASSESSMENT_RESULTS"], results.to_dict())


def has_visited(storage: StorageAdapter) -> bool:
    return storage.get(KEYS["VISITED"]) == "true"


def mark_visited(storage: StorageAdapter) -> None:
    storage.set(KEYS["VISITED"], "true")


def clear_journey_state(storage: StorageAdapter) -> None:
    """Remove every journey key.

    Each key is attempted even if an earlier removal fails; the first
    failure is re-raised once all keys have been tried.
    """
    first_error: Optional[StorageError] = None
    for key in KEYS.values():
        try:
            storage.remove(key)
        except StorageError as exc:
            logger.error("Error removing %s: %s", key, exc)
            if first_error is None:
                first_error = exc
    if first_error is not None:
        raise first_error
