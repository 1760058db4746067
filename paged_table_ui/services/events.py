"""Notifications emitted by a table controller."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class TableEvent(str, Enum):
    INIT = "init"
    LOADING = "loading"
    LOADED = "loaded"
    FETCH_ERROR = "fetch-error"
    SEARCH_CHANGED = "search-changed"
    FILTER_CHANGED = "filter-changed"
    SORT_CHANGED = "sort-changed"
    PAGE_CHANGED = "page-changed"
    PER_PAGE_CHANGED = "per-page-changed"
    RESET = "reset"
    RELOAD = "reload"
    SELECTION_CHANGED = "selection-changed"
    ROW_SELECTED = "row-selected"
    ROW_DESELECTED = "row-deselected"
    ALL_SELECTED = "all-selected"
    ALL_DESELECTED = "all-deselected"
    ROW_ACTIVATED = "row-activated"
    STATE_RESTORED = "state-restored"
    COLUMN_VISIBILITY_CHANGED = "column-visibility-changed"
    EXPORT_STARTED = "export-started"
    EXPORT_PROGRESS = "export-progress"
    EXPORT_COMPLETED = "export-completed"
    EXPORT_FAILED = "export-failed"
    EXPORT_CANCELLED = "export-cancelled"


@dataclass(frozen=True)
class Notification:
    event: TableEvent
    payload: Mapping[str, Any] = field(default_factory=dict)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event.value, "payload": dict(self.payload), "seq": self.sequence}


Listener = Callable[[Notification], None]


class EventEmitter:
    """Fan-out of notifications to listeners plus a bounded history.

    A failing listener is logged and skipped so the remaining listeners and
    the emitting operation are unaffected.
    """

    def __init__(self, history: int = 200) -> None:
        self._listeners: Dict[Optional[TableEvent], List[Listener]] = {}
        self._history: Deque[Notification] = deque(maxlen=history)
        self._sequence = 0

    def on(self, event: Optional[TableEvent], listener: Listener) -> None:
        """Register ``listener`` for ``event``; ``None`` receives every event."""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: Optional[TableEvent], listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: TableEvent, **payload: Any) -> Notification:
        self._sequence += 1
        notification = Notification(event=event, payload=payload, sequence=self._sequence)
        self._history.append(notification)
        targets = list(self._listeners.get(event, ())) + list(self._listeners.get(None, ()))
        for listener in targets:
            try:
                listener(notification)
            except Exception:
                logger.exception("Listener failed for %s", event.value)
        return notification

    def history(self, since: int = 0) -> List[Notification]:
        return [item for item in self._history if item.sequence > since]

    @property
    def last_sequence(self) -> int:
        return self._sequence


__all__ = ["EventEmitter", "Notification", "TableEvent"]
