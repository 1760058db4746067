"""Keyboard navigation over the rendered rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

from .selection import SelectionModel

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


class NavCommand(str, Enum):
    MOVE_UP = "move_up"
    MOVE_DOWN = "move_down"
    FIRST_ROW = "first_row"
    LAST_ROW = "last_row"
    PREVIOUS_PAGE = "previous_page"
    NEXT_PAGE = "next_page"
    FIRST_PAGE = "first_page"
    LAST_PAGE = "last_page"
    ACTIVATE = "activate"
    TOGGLE_ROW = "toggle_row"
    SELECT_ALL = "select_all"
    CLEAR_SELECTION = "clear_selection"
    FOCUS_SEARCH = "focus_search"
    PRINT = "print"
    EXPORT_WORKBOOK = "export_workbook"
    EXPORT_DOCUMENT = "export_document"
    RELOAD = "reload"
    RESET = "reset"


# commands the navigator hands back to the controller
DELEGATED_COMMANDS = frozenset(
    {
        NavCommand.PREVIOUS_PAGE,
        NavCommand.NEXT_PAGE,
        NavCommand.FIRST_PAGE,
        NavCommand.LAST_PAGE,
        NavCommand.FOCUS_SEARCH,
        NavCommand.PRINT,
        NavCommand.EXPORT_WORKBOOK,
        NavCommand.EXPORT_DOCUMENT,
        NavCommand.RELOAD,
        NavCommand.RESET,
    }
)

_PLAIN_KEYS = {
    "ArrowUp": NavCommand.MOVE_UP,
    "ArrowDown": NavCommand.MOVE_DOWN,
    "ArrowLeft": NavCommand.PREVIOUS_PAGE,
    "ArrowRight": NavCommand.NEXT_PAGE,
    "Home": NavCommand.FIRST_ROW,
    "End": NavCommand.LAST_ROW,
    "Enter": NavCommand.ACTIVATE,
    "Escape": NavCommand.CLEAR_SELECTION,
    " ": NavCommand.TOGGLE_ROW,
    "Space": NavCommand.TOGGLE_ROW,
    "/": NavCommand.FOCUS_SEARCH,
    "a": NavCommand.SELECT_ALL,
}

_CTRL_KEYS = {
    "home": NavCommand.FIRST_PAGE,
    "end": NavCommand.LAST_PAGE,
    "p": NavCommand.PRINT,
    "s": NavCommand.FOCUS_SEARCH,
    "f": NavCommand.FOCUS_SEARCH,
    "e": NavCommand.EXPORT_WORKBOOK,
    "d": NavCommand.EXPORT_DOCUMENT,
    "r": NavCommand.RELOAD,
    "z": NavCommand.RESET,
}


@dataclass(frozen=True)
class KeyEvent:
    key: str
    ctrl: bool = False
    meta: bool = False
    alt: bool = False
    shift: bool = False

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "KeyEvent":
        return cls(
            key=str(data.get("key") or ""),
            ctrl=bool(data.get("ctrlKey")),
            meta=bool(data.get("metaKey")),
            alt=bool(data.get("altKey")),
            shift=bool(data.get("shiftKey")),
        )


def command_for(event: KeyEvent) -> Optional[NavCommand]:
    """Map a key event to a command, or ``None`` when the key is unbound."""
    if event.alt:
        return None
    if event.ctrl or event.meta:
        # Ctrl+C stays with the platform copy action
        if event.key.lower() == "c":
            return None
        return _CTRL_KEYS.get(event.key.lower())
    return _PLAIN_KEYS.get(event.key)


class KeyboardNavigator:
    """Cursor over the rendered rows, synchronised with a :class:`SelectionModel`.

    The cursor is an index into the current page only. A new row set makes it
    unknown; the next command re-derives it from the selected ids, or starts
    from no cursor when none of them is on the page.
    """

    def __init__(
        self,
        selection: SelectionModel,
        *,
        text_entry_focused: Callable[[], bool] = lambda: False,
        on_activate: Optional[Callable[[Row], None]] = None,
        on_command: Optional[Callable[[NavCommand], None]] = None,
        enabled: bool = True,
    ) -> None:
        self.selection = selection
        self.enabled = enabled
        self._text_entry_focused = text_entry_focused
        self._on_activate = on_activate
        self._on_command = on_command
        self._rows: Tuple[Row, ...] = ()
        self._cursor: Optional[int] = None

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    @property
    def rows(self) -> Tuple[Row, ...]:
        return self._rows

    def sync_rows(self, rows: Sequence[Row]) -> None:
        self._rows = tuple(rows)
        self._cursor = None

    def handle_key(self, event: KeyEvent) -> Optional[NavCommand]:
        if not self.enabled:
            return None
        if self._text_entry_focused():
            return None
        command = command_for(event)
        if command is None:
            return None
        if command is NavCommand.SELECT_ALL and not self.selection.multiple:
            return None
        self.dispatch(command)
        return command

    def dispatch(self, command: NavCommand) -> None:
        if command is NavCommand.MOVE_UP:
            self.move(-1)
        elif command is NavCommand.MOVE_DOWN:
            self.move(1)
        elif command is NavCommand.FIRST_ROW:
            self.first_row()
        elif command is NavCommand.LAST_ROW:
            self.last_row()
        elif command is NavCommand.ACTIVATE:
            self.activate()
        elif command is NavCommand.TOGGLE_ROW:
            self.toggle_current()
        elif command is NavCommand.SELECT_ALL:
            self.select_all()
        elif command is NavCommand.CLEAR_SELECTION:
            self.selection.clear()
        elif command in DELEGATED_COMMANDS:
            if self._on_command is not None:
                self._on_command(command)
            else:
                logger.debug("No handler for delegated command %s", command.value)

    def _row_id(self, index: int) -> Any:
        return self._rows[index].get("id")

    def _resolve_cursor(self) -> Optional[int]:
        if self._cursor is not None and self._cursor < len(self._rows):
            return self._cursor
        self._cursor = None
        selected = self.selection.selected_ids()
        if not selected:
            return None
        for index, row in enumerate(self._rows):
            if row.get("id") in selected:
                self._cursor = index
                return index
        return None

    def _land(self, index: int) -> None:
        if self.selection.mode == "single":
            # one change: select() replaces the previous member in single mode
            self.selection.select(self._row_id(index))
        self._cursor = index

    def move(self, delta: int) -> Optional[int]:
        if not self._rows:
            return None
        current = self._resolve_cursor()
        start = -1 if current is None else current
        target = max(0, min(start + delta, len(self._rows) - 1))
        if target == current:
            return current
        self._land(target)
        return target

    def first_row(self) -> Optional[int]:
        if not self._rows:
            return None
        self._resolve_cursor()
        self._land(0)
        return 0

    def last_row(self) -> Optional[int]:
        if not self._rows:
            return None
        self._resolve_cursor()
        last = len(self._rows) - 1
        self._land(last)
        return last

    def current_row(self) -> Optional[Row]:
        cursor = self._resolve_cursor()
        return None if cursor is None else self._rows[cursor]

    def activate(self) -> Optional[Row]:
        cursor = self._resolve_cursor()
        if cursor is not None:
            target_id = self._row_id(cursor)
        else:
            selected = self.selection.selected_ids()
            if not selected:
                return None
            target_id = selected[0]
        row = next((row for row in self._rows if row.get("id") == target_id), None)
        if row is None:
            logger.debug("Row %r is not on the current page; ignoring activate", target_id)
            return None
        if self._on_activate is not None:
            self._on_activate(row)
        return row

    def toggle_current(self) -> Optional[bool]:
        if not self.selection.multiple:
            return None
        cursor = self._resolve_cursor()
        if cursor is None:
            return None
        return self.selection.toggle(self._row_id(cursor))

    def select_all(self) -> None:
        if not self.selection.multiple:
            return
        self.selection.select_all(row.get("id") for row in self._rows)


__all__ = [
    "DELEGATED_COMMANDS",
    "KeyEvent",
    "KeyboardNavigator",
    "NavCommand",
    "command_for",
]
