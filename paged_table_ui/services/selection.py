"""Row selection keyed by row id."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import SELECT_MODES

logger = logging.getLogger(__name__)

SelectionListener = Callable[["SelectionChange"], None]


@dataclass(frozen=True)
class SelectionChange:
    reason: str
    selected_ids: Tuple[Any, ...]
    added: Tuple[Any, ...] = ()
    removed: Tuple[Any, ...] = ()


class SelectionModel:
    """Set of selected row ids with ``single`` or ``multiple`` mode.

    Ids are kept whether or not the row is on the rendered page, so a
    selection survives pagination. Operations that leave membership as it
    was do not notify listeners.
    """

    def __init__(
        self,
        mode: str = "single",
        listener: Optional[SelectionListener] = None,
    ) -> None:
        if mode not in SELECT_MODES:
            raise ValueError(f"Unknown selection mode: {mode!r}")
        self._mode = mode
        # dict keeps insertion order for stable id listings
        self._selected: Dict[Any, None] = {}
        self._listeners: List[SelectionListener] = []
        if listener is not None:
            self._listeners.append(listener)

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def multiple(self) -> bool:
        return self._mode == "multiple"

    def add_listener(self, listener: SelectionListener) -> None:
        self._listeners.append(listener)

    def is_selected(self, row_id: Any) -> bool:
        return row_id in self._selected

    def selected_ids(self) -> List[Any]:
        return list(self._selected)

    @property
    def count(self) -> int:
        return len(self._selected)

    def _commit(
        self, reason: str, added: Sequence[Any], removed: Sequence[Any]
    ) -> Optional[SelectionChange]:
        if not added and not removed:
            return None
        change = SelectionChange(
            reason=reason,
            selected_ids=tuple(self._selected),
            added=tuple(added),
            removed=tuple(removed),
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Selection listener failed for %s", reason)
        return change

    def _clear_members(self, keep: Any = None) -> List[Any]:
        removed = [row_id for row_id in self._selected if row_id != keep]
        for row_id in removed:
            del self._selected[row_id]
        return removed

    def select(self, row_id: Any) -> Optional[SelectionChange]:
        if self._mode == "single":
            if row_id in self._selected and len(self._selected) == 1:
                return None
            removed = self._clear_members(keep=row_id)
            added = [] if row_id in self._selected else [row_id]
            self._selected[row_id] = None
            return self._commit("select", added, removed)
        if row_id in self._selected:
            return None
        self._selected[row_id] = None
        return self._commit("select", [row_id], [])

    def deselect(self, row_id: Any) -> Optional[SelectionChange]:
        if row_id not in self._selected:
            return None
        del self._selected[row_id]
        return self._commit("deselect", [], [row_id])

    def toggle(self, row_id: Any, force: Optional[bool] = None) -> bool:
        """Flip membership of ``row_id`` (or apply ``force``); return membership."""
        if self._mode == "single" and force is None:
            if row_id in self._selected and len(self._selected) == 1:
                self.deselect(row_id)
                return False
            self.select(row_id)
            return True

        should_select = (row_id not in self._selected) if force is None else bool(force)
        if should_select:
            self.select(row_id)
        else:
            self.deselect(row_id)
        return should_select

    def select_all(self, visible_ids: Iterable[Any]) -> Optional[SelectionChange]:
        if self._mode == "single":
            return None
        added = []
        for row_id in visible_ids:
            if row_id not in self._selected:
                self._selected[row_id] = None
                added.append(row_id)
        return self._commit("select_all", added, [])

    def clear(self) -> Optional[SelectionChange]:
        removed = self._clear_members()
        return self._commit("clear", [], removed)

    def set_selection(self, ids: Iterable[Any]) -> Optional[SelectionChange]:
        wanted = list(dict.fromkeys(ids))
        if self._mode == "single":
            wanted = wanted[:1]
        removed = [row_id for row_id in self._selected if row_id not in wanted]
        added = [row_id for row_id in wanted if row_id not in self._selected]
        self._selected = dict.fromkeys(wanted)
        return self._commit("set", added, removed)

    def invert(self, visible_ids: Sequence[Any]) -> Optional[SelectionChange]:
        if self._mode == "single":
            if not visible_ids:
                return None
            first = visible_ids[0]
            if first in self._selected and len(self._selected) == 1:
                return self.deselect(first)
            return self.select(first)
        added, removed = [], []
        for row_id in visible_ids:
            if row_id in self._selected:
                del self._selected[row_id]
                removed.append(row_id)
            else:
                self._selected[row_id] = None
                added.append(row_id)
        return self._commit("invert", added, removed)

    def select_range(
        self, ordered_ids: Sequence[Any], from_id: Any, to_id: Any
    ) -> Optional[SelectionChange]:
        if self._mode == "single":
            return None
        try:
            start = list(ordered_ids).index(from_id)
            end = list(ordered_ids).index(to_id)
        except ValueError:
            return None
        if start > end:
            start, end = end, start
        added = []
        for row_id in ordered_ids[start : end + 1]:
            if row_id not in self._selected:
                self._selected[row_id] = None
                added.append(row_id)
        return self._commit("range", added, [])

    def set_mode(self, mode: str) -> Optional[SelectionChange]:
        if mode not in SELECT_MODES:
            logger.warning("Ignoring unknown selection mode %r", mode)
            return None
        self._mode = mode
        if mode == "single" and len(self._selected) > 1:
            keep = next(iter(self._selected))
            removed = self._clear_members(keep=keep)
            return self._commit("mode", [], removed)
        return None


__all__ = ["SelectionChange", "SelectionModel"]
