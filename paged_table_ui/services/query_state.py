"""Immutable query snapshot and its transitions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from ..config import DEFAULT_ORDER, DEFAULT_PAGE_SIZE, DEFAULT_SORT, SORT_ORDERS

logger = logging.getLogger(__name__)


def normalize_order(order: Any) -> Optional[str]:
    text = str(order or "").strip().lower()
    if text in {"descending", "desc"}:
        return "desc"
    if text in {"ascending", "asc"}:
        return "asc"
    return None


def _parse_positive(value: Any) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _frozen_filters(filters: Optional[Mapping[str, Any]]) -> Mapping[str, str]:
    cleaned: Dict[str, str] = {}
    for column, value in (filters or {}).items():
        text = "" if value is None else str(value)
        if not str(column).strip() or not text.strip():
            continue
        cleaned[str(column)] = text
    return MappingProxyType(cleaned)


@dataclass(frozen=True)
class QueryState:
    """Snapshot of search, column filters, sort and pagination.

    Every transition returns a new snapshot. Changing the search term, a
    column filter or the page size always lands back on page 1; sort changes
    keep the current page.
    """

    search: str = ""
    column_filters: Mapping[str, str] = field(default_factory=dict)
    sort: str = DEFAULT_SORT
    order: str = DEFAULT_ORDER
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    default_sort: str = field(default=DEFAULT_SORT, compare=False)
    default_order: str = field(default=DEFAULT_ORDER, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.column_filters, MappingProxyType):
            object.__setattr__(
                self, "column_filters", _frozen_filters(self.column_filters)
            )
        if self.order not in SORT_ORDERS:
            object.__setattr__(self, "order", self.default_order)
        if self.page < 1:
            object.__setattr__(self, "page", 1)
        if self.page_size < 1:
            object.__setattr__(self, "page_size", DEFAULT_PAGE_SIZE)

    @classmethod
    def initial(
        cls,
        page_size: int = DEFAULT_PAGE_SIZE,
        default_sort: str = DEFAULT_SORT,
        default_order: str = DEFAULT_ORDER,
    ) -> "QueryState":
        order = normalize_order(default_order) or DEFAULT_ORDER
        return cls(
            sort=default_sort,
            order=order,
            page_size=page_size,
            default_sort=default_sort,
            default_order=order,
        )

    # transitions

    def set_search(self, term: Any) -> "QueryState":
        return replace(self, search=str(term or "").strip(), page=1)

    def set_column_filter(self, column: str, value: Any) -> "QueryState":
        filters = dict(self.column_filters)
        text = "" if value is None else str(value)
        if text.strip():
            filters[column] = text
        else:
            filters.pop(column, None)
        return replace(self, column_filters=_frozen_filters(filters), page=1)

    def clear_column_filters(self) -> "QueryState":
        return replace(self, column_filters=_frozen_filters({}), page=1)

    def set_sort(self, column: str, direction: Any = "asc") -> "QueryState":
        order = normalize_order(direction)
        if order is None:
            logger.warning(
                "Invalid sort direction %r - must be 'asc' or 'desc'", direction
            )
            return self
        return replace(self, sort=str(column), order=order)

    def toggle_sort(self, column: str) -> "QueryState":
        if self.sort == column and self.order == "asc":
            return self.set_sort(column, "desc")
        return self.set_sort(column, "asc")

    def clear_sort(self) -> "QueryState":
        return replace(self, sort="", order=self.default_order)

    def set_page(self, page: Any) -> "QueryState":
        parsed = _parse_positive(page)
        if parsed is None:
            logger.warning("Invalid page number: %r", page)
            return self
        return replace(self, page=parsed)

    def set_page_size(self, size: Any) -> "QueryState":
        parsed = _parse_positive(size)
        if parsed is None:
            logger.warning("Invalid page size: %r", size)
            return self
        return replace(self, page_size=parsed, page=1)

    def reset(self) -> "QueryState":
        return replace(
            self,
            search="",
            column_filters=_frozen_filters({}),
            sort=self.default_sort,
            order=self.default_order,
            page=1,
        )

    def confirm_page(self, page: int) -> "QueryState":
        """Adopt the page the endpoint actually served."""
        if page < 1 or page == self.page:
            return self
        return replace(self, page=page)

    # projections

    def to_params(self, export: bool = False) -> Dict[str, str]:
        params = {
            "search": self.search,
            "sortBy": self.sort,
            "order": self.order,
            "page": str(self.page),
            "perPage": str(self.page_size),
            "columnFilters": json.dumps(dict(self.column_filters), sort_keys=True),
        }
        if export:
            params["export"] = "true"
        return params

    def export_params(self, page: int, per_page: int) -> Dict[str, str]:
        params = self.to_params(export=True)
        params["page"] = str(page)
        params["perPage"] = str(per_page)
        return params

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "sort": self.sort,
            "order": self.order,
            "page": self.page,
            "perPage": self.page_size,
            "filters": dict(self.column_filters),
            "search": self.search,
        }

    def from_snapshot(self, snapshot: Mapping[str, Any]) -> "QueryState":
        """Return a copy of this state with the persisted values applied."""
        filters = snapshot.get("filters")
        return replace(
            self,
            sort=str(snapshot.get("sort") if snapshot.get("sort") is not None else self.sort),
            order=normalize_order(snapshot.get("order")) or self.order,
            page=_parse_positive(snapshot.get("page")) or 1,
            page_size=_parse_positive(snapshot.get("perPage")) or self.page_size,
            column_filters=_frozen_filters(filters if isinstance(filters, Mapping) else {}),
            search=str(snapshot.get("search") or ""),
        )


__all__ = ["QueryState", "normalize_order"]
