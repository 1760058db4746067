"""Key-value persistence for saved table state."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from ..config import STATE_KEY_PREFIX, STATE_STORE_MAX_ENTRIES, STATE_TTL

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    def get(self, key: str) -> Optional[Mapping[str, Any]]: ...

    def set(self, key: str, value: Mapping[str, Any]) -> None: ...

    def clear(self, key: str) -> None: ...


def state_key(table_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{table_id}_state"


class InMemoryStateStore:
    """Process-local store; least recently used keys are evicted first."""

    def __init__(self, max_entries: int = STATE_STORE_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def get(self, key: str) -> Optional[Mapping[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return dict(entry)

    def set(self, key: str, value: Mapping[str, Any]) -> None:
        with self._lock:
            self._entries[key] = dict(value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileStateStore:
    """One JSON document per key inside ``directory``."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._lock = threading.RLock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Optional[Mapping[str, Any]]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except (OSError, ValueError) as exc:
                logger.warning("Unable to read saved state %s: %s", path, exc)
                return None
        return data if isinstance(data, dict) else None

    def set(self, key: str, value: Mapping[str, Any]) -> None:
        path = self._path(key)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(dict(value), handle, sort_keys=True)
            tmp_path.replace(path)

    def clear(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)


def save_query_state(
    store: StateStore,
    table_id: str,
    snapshot: Mapping[str, Any],
    column_visibility: Optional[Mapping[str, bool]] = None,
) -> bool:
    """Persist ``snapshot`` with a timestamp; failures are logged, not raised."""
    record = dict(snapshot)
    record["timestamp"] = time.time()
    if column_visibility is not None:
        record["columnVisibility"] = dict(column_visibility)
    try:
        store.set(state_key(table_id), record)
    except Exception as exc:
        logger.warning("Failed to save state for table %s: %s", table_id, exc)
        return False
    return True


def load_query_state(
    store: StateStore, table_id: str, ttl: float = STATE_TTL
) -> Optional[Dict[str, Any]]:
    """Return the saved snapshot, or ``None`` when absent, invalid or expired."""
    key = state_key(table_id)
    try:
        record = store.get(key)
    except Exception as exc:
        logger.warning("Failed to load state for table %s: %s", table_id, exc)
        return None
    if not record:
        return None

    try:
        timestamp = float(record.get("timestamp", 0))
    except (TypeError, ValueError):
        timestamp = 0.0
    if time.time() - timestamp > ttl:
        logger.info("Discarding expired saved state for table %s", table_id)
        clear_query_state(store, table_id)
        return None
    return dict(record)


def clear_query_state(store: StateStore, table_id: str) -> None:
    try:
        store.clear(state_key(table_id))
    except Exception as exc:
        logger.warning("Failed to clear state for table %s: %s", table_id, exc)


__all__ = [
    "InMemoryStateStore",
    "JsonFileStateStore",
    "StateStore",
    "clear_query_state",
    "load_query_state",
    "save_query_state",
    "state_key",
]
