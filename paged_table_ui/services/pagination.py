"""Pagination view-model planning."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..config import DEFAULT_PAGE_SIZE, PAGINATION_MODES, PAGINATION_WINDOW

PAGE = "page"
ELLIPSIS = "ellipsis"


@dataclass(frozen=True)
class PageButton:
    kind: str
    page: Optional[int] = None
    active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "page": self.page, "active": self.active}


@dataclass(frozen=True)
class PaginationView:
    mode: str
    current_page: int
    last_page: int
    total: int
    buttons: Tuple[PageButton, ...]
    previous_enabled: bool
    next_enabled: bool
    page_info: str
    info_text: str

    @property
    def pages(self) -> List[Optional[int]]:
        """Button pages in order, ``None`` standing for an ellipsis."""
        return [button.page for button in self.buttons]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "currentPage": self.current_page,
            "lastPage": self.last_page,
            "total": self.total,
            "buttons": [button.to_dict() for button in self.buttons],
            "previousEnabled": self.previous_enabled,
            "nextEnabled": self.next_enabled,
            "pageInfo": self.page_info,
            "infoText": self.info_text,
        }


def _page_window(current: int, last: int, window: int) -> List[PageButton]:
    start = max(1, current - window)
    end = min(last, current + window)
    buttons: List[PageButton] = []

    if start > 1:
        buttons.append(PageButton(PAGE, 1))
        if start > 2:
            buttons.append(PageButton(ELLIPSIS))

    for page in range(start, end + 1):
        buttons.append(PageButton(PAGE, page, active=page == current))

    if end < last:
        if end < last - 1:
            buttons.append(PageButton(ELLIPSIS))
        buttons.append(PageButton(PAGE, last))
    return buttons


def info_text(current: int, total: int, page_size: int) -> str:
    if total <= 0:
        return "Showing 0 to 0 of 0 entries"
    start = (current - 1) * page_size + 1
    end = min(current * page_size, total)
    return f"Showing {start} to {end} of {total} entries"


def plan_pagination(
    current_page: int,
    last_page: int,
    *,
    mode: str = "detailed",
    total: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
    window: int = PAGINATION_WINDOW,
) -> PaginationView:
    """Build the pagination view-model from the endpoint's page metadata.

    Detailed mode shows the first and last page plus ``window`` pages either
    side of the current one, with an ellipsis wherever the window does not
    reach the boundary page. Simple mode only carries previous/next.
    """
    if mode not in PAGINATION_MODES:
        mode = "detailed"
    last = max(1, int(last_page))
    current = min(max(1, int(current_page)), last)

    buttons: Tuple[PageButton, ...] = ()
    if mode == "detailed":
        buttons = tuple(_page_window(current, last, max(0, window)))

    return PaginationView(
        mode=mode,
        current_page=current,
        last_page=last,
        total=max(0, int(total)),
        buttons=buttons,
        previous_enabled=current != 1,
        next_enabled=current != last,
        page_info=f"Page {current} of {last}",
        info_text=info_text(current, total, page_size),
    )


__all__ = ["ELLIPSIS", "PAGE", "PageButton", "PaginationView", "info_text", "plan_pagination"]
