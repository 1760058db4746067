"""Column definitions, per-format value transforms and visibility."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from markupsafe import Markup

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]
CellTransform = Callable[[Any, Row], Any]

# export formats whose override is ``export_render``
_TABULAR_FORMATS = {"csv", "workbook"}


@dataclass(frozen=True)
class Column:
    name: str
    label: str = ""
    visible: bool = True
    sortable: bool = True
    filterable: bool = False
    required: bool = False
    exportable: bool = True
    formatter: Optional[CellTransform] = None
    render: Optional[CellTransform] = None
    use_render_for_export: bool = False
    export_render: Optional[CellTransform] = None
    print_render: Optional[CellTransform] = None
    document_render: Optional[CellTransform] = None

    @property
    def title(self) -> str:
        return self.label or self.name

    @classmethod
    def from_payload(cls, data: Any) -> "Column":
        if isinstance(data, str):
            return cls(name=data)
        if not isinstance(data, Mapping) or not str(data.get("name") or "").strip():
            raise ValueError("Each column needs a non-empty 'name'")
        return cls(
            name=str(data["name"]).strip(),
            label=str(data.get("label") or ""),
            visible=data.get("visible", True) is not False,
            sortable=data.get("sortable", True) is not False,
            filterable=bool(data.get("filterable") or data.get("columnSearch")),
            required=bool(data.get("required")),
            exportable=data.get("exportable", True) is not False,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.title,
            "sortable": self.sortable,
            "filterable": self.filterable,
            "required": self.required,
            "exportable": self.exportable,
        }

    def _override_for(self, export_format: Optional[str]) -> Optional[CellTransform]:
        if export_format in _TABULAR_FORMATS:
            return self.export_render
        if export_format == "print":
            return self.print_render
        if export_format == "document":
            return self.document_render
        return None

    def value_for(self, row: Row, export_format: Optional[str] = None) -> Any:
        """Cell value for ``export_format`` (or display when ``None``).

        A format-specific override wins over ``render`` reused as plain text,
        which wins over the generic ``formatter``.
        """
        raw = row.get(self.name)
        value: Any = "" if raw is None else raw

        override = self._override_for(export_format)
        if override is not None:
            return override(value, row)
        if self.render is not None and (
            export_format is None or self.use_render_for_export
        ):
            return Markup(str(self.render(value, row))).striptags()
        if self.formatter is not None:
            return self.formatter(value, row)
        return value


class ColumnSet:
    """Ordered columns plus the current visibility state."""

    def __init__(self, columns: Iterable[Column]) -> None:
        self._columns: List[Column] = list(columns)
        names = [column.name for column in self._columns]
        if len(names) != len(set(names)):
            raise ValueError("Column names must be unique")
        self._visibility: Dict[str, bool] = {
            column.name: column.visible or column.required for column in self._columns
        }

    def __iter__(self):
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    @property
    def names(self) -> List[str]:
        return [column.name for column in self._columns]

    def get(self, name: str) -> Optional[Column]:
        return next((column for column in self._columns if column.name == name), None)

    def is_sortable(self, name: str) -> bool:
        column = self.get(name)
        return column is not None and column.sortable

    def is_visible(self, name: str) -> bool:
        return self._visibility.get(name, False)

    def visible_columns(self) -> List[Column]:
        return [column for column in self._columns if self._visibility[column.name]]

    def visibility(self) -> Dict[str, bool]:
        return dict(self._visibility)

    def set_visible(self, name: str, visible: Optional[bool] = None) -> bool:
        """Show, hide or (``visible=None``) flip a column; return its visibility."""
        column = self.get(name)
        if column is None:
            logger.warning("Column %r not found", name)
            return False
        current = self._visibility[name]
        target = (not current) if visible is None else bool(visible)
        if not target and column.required:
            logger.warning("Column %r is required and cannot be hidden", name)
            return True
        self._visibility[name] = target
        return target

    def show_all(self) -> None:
        for column in self._columns:
            self._visibility[column.name] = True

    def hide_all(self) -> None:
        for column in self._columns:
            if not column.required:
                self._visibility[column.name] = False

    def reset_visibility(self) -> None:
        for column in self._columns:
            self._visibility[column.name] = column.visible or column.required

    def apply_visibility(self, state: Mapping[str, Any]) -> None:
        for name, visible in state.items():
            if name in self._visibility:
                self.set_visible(name, bool(visible))

    def exportable_columns(self) -> List[Column]:
        return [column for column in self.visible_columns() if column.exportable]


def row_values(
    row: Row, columns: Sequence[Column], export_format: Optional[str] = None
) -> List[Any]:
    return [column.value_for(row, export_format) for column in columns]


def plain_columns(names: Iterable[str]) -> List[Column]:
    return [Column(name=name) for name in names]


__all__ = ["Column", "ColumnSet", "plain_columns", "row_values"]
