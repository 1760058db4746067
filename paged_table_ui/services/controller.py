"""Table controller wiring query, fetch, selection, navigation, pagination and export."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..collection_client import PageResult
from ..config import TableSettings
from ..errors import (
    ExportCancelled,
    ExportInProgress,
    FallbackExhausted,
    FetchError,
    error_payload,
)
from .columns import Column, ColumnSet
from .events import EventEmitter, TableEvent
from .export import (
    ExportOptions,
    ExportPipeline,
    ExportProgress,
    ExportResult,
    FallbackStep,
)
from .fetch import CollectionEndpoint, FetchCoordinator, FetchRequest, FetchTrigger
from .navigation import KeyboardNavigator, KeyEvent, NavCommand
from .pagination import PaginationView, plan_pagination
from .query_state import QueryState
from .selection import SelectionChange, SelectionModel
from .sinks import ExportSink, sink_for
from .state_store import (
    StateStore,
    clear_query_state,
    load_query_state,
    save_query_state,
)

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

EMPTY_MESSAGE = "No records found."
ERROR_MESSAGE = "Error loading data"

_NAV_EXPORT_FORMATS = {
    NavCommand.PRINT: "print",
    NavCommand.EXPORT_WORKBOOK: "workbook",
    NavCommand.EXPORT_DOCUMENT: "document",
}


class RenderSurface(Protocol):
    def render(self, view: "TableView") -> None: ...

    def text_entry_focused(self) -> bool: ...


@dataclass(frozen=True)
class TableView:
    columns: Tuple[Dict[str, Any], ...]
    rows: Tuple[Row, ...]
    cells: Tuple[Tuple[Any, ...], ...]
    selected_ids: Tuple[Any, ...]
    query: Mapping[str, Any]
    loading: bool = False
    pagination: Optional[PaginationView] = None
    empty_message: Optional[str] = None
    error: Optional[Mapping[str, Any]] = None
    cursor: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns": list(self.columns),
            "rows": [dict(row) for row in self.rows],
            "cells": [list(cells) for cells in self.cells],
            "selectedIds": list(self.selected_ids),
            "query": dict(self.query),
            "loading": self.loading,
            "pagination": self.pagination.to_dict() if self.pagination else None,
            "emptyMessage": self.empty_message,
            "error": dict(self.error) if self.error else None,
            "cursor": self.cursor,
        }


@dataclass
class _ExportRun:
    export_format: str
    pipeline: ExportPipeline
    progress: Optional[ExportProgress] = None


class TableController:
    """Owns the query and selection state of one table and drives its fetches.

    Every public operation must be called from the event loop that runs the
    controller. Fetch failures are reported through ``fetch-error``
    notifications and never raised from these operations.
    """

    def __init__(
        self,
        table_id: str,
        endpoint: CollectionEndpoint,
        columns: Sequence[Column],
        settings: Optional[TableSettings] = None,
        *,
        surface: Optional[RenderSurface] = None,
        store: Optional[StateStore] = None,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self.table_id = table_id
        self.settings = settings or TableSettings()
        self.endpoint = endpoint
        self.surface = surface
        self.store = store
        self.events = events or EventEmitter()
        self.columns = ColumnSet(columns)

        self._query = QueryState.initial(
            page_size=self.settings.page_size,
            default_sort=self.settings.default_sort,
            default_order=self.settings.default_order,
        )
        self._rows: Tuple[Row, ...] = ()
        self._page: Optional[PageResult] = None
        self._pagination: Optional[PaginationView] = None
        self._loading = False
        self._error: Optional[Dict[str, Any]] = None
        self._started = False
        self._export: Optional[_ExportRun] = None
        self._pending_saves: "set[asyncio.Future[Any]]" = set()
        self.export_handler: Optional[Callable[[str], Any]] = None

        self.selection = SelectionModel(self.settings.select_mode)
        self.selection.add_listener(self._on_selection_change)
        self.navigator = KeyboardNavigator(
            self.selection,
            text_entry_focused=self._text_entry_focused,
            on_activate=self._on_activate,
            on_command=self._on_nav_command,
            enabled=self.settings.keyboard_nav and self.settings.selectable,
        )
        self._coordinator = FetchCoordinator(
            endpoint,
            on_loading=self._on_loading,
            on_success=self._on_success,
            on_failure=self._on_failure,
            search_delay=self.settings.search_delay,
            timeout=self.settings.timeout,
        )

    # read-only snapshots

    @property
    def query(self) -> QueryState:
        return self._query

    @property
    def rows(self) -> Tuple[Row, ...]:
        return self._rows

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def pagination(self) -> Optional[PaginationView]:
        return self._pagination

    @property
    def generation(self) -> int:
        return self._coordinator.generation

    def view(self) -> TableView:
        visible = self.columns.visible_columns()
        empty_message = None
        if not self._rows and self._started and not self._loading:
            empty_message = ERROR_MESSAGE if self._error else EMPTY_MESSAGE
        return TableView(
            columns=tuple(column.describe() for column in visible),
            rows=self._rows,
            cells=tuple(
                tuple(column.value_for(row) for column in visible) for row in self._rows
            ),
            selected_ids=tuple(self.selection.selected_ids()),
            query=self._query.to_snapshot(),
            loading=self._loading,
            pagination=self._pagination,
            empty_message=empty_message,
            error=self._error,
            cursor=self.navigator.cursor,
        )

    # lifecycle

    async def start(self) -> FetchRequest:
        """Restore saved state when enabled and issue the first fetch."""
        if self.settings.save_state and self.store is not None:
            record = await asyncio.to_thread(
                load_query_state, self.store, self.table_id, self.settings.state_ttl
            )
            if record:
                self._query = self._query.from_snapshot(record)
                visibility = record.get("columnVisibility")
                if self.settings.persist_column_visibility and isinstance(
                    visibility, Mapping
                ):
                    self.columns.apply_visibility(visibility)
                logger.info("Restored saved state for table %s", self.table_id)
                self.events.emit(TableEvent.STATE_RESTORED, state=record)
        self._started = True
        self.events.emit(
            TableEvent.INIT,
            table_id=self.table_id,
            query=self._query.to_snapshot(),
        )
        return self._schedule(FetchTrigger.INIT)

    async def wait_idle(self) -> None:
        await self._coordinator.wait_idle()
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    def close(self) -> None:
        self._coordinator.close()
        self.cancel_export()

    # query operations

    def _schedule(self, trigger: FetchTrigger) -> FetchRequest:
        return self._coordinator.schedule(self._query, trigger)

    def _transition(
        self,
        state: QueryState,
        trigger: FetchTrigger,
        event: TableEvent,
        **payload: Any,
    ) -> Optional[FetchRequest]:
        if state is self._query:
            return None
        self._query = state
        self.events.emit(event, **payload)
        return self._schedule(trigger)

    def search(self, term: Any) -> Optional[FetchRequest]:
        state = self._query.set_search(term)
        return self._transition(
            state, FetchTrigger.SEARCH, TableEvent.SEARCH_CHANGED, search=state.search
        )

    def filter_column(self, column: str, value: Any) -> Optional[FetchRequest]:
        if self.columns.get(column) is None:
            logger.warning("Ignoring filter for unknown column %r", column)
            return None
        state = self._query.set_column_filter(column, value)
        return self._transition(
            state,
            FetchTrigger.COLUMN_FILTER,
            TableEvent.FILTER_CHANGED,
            column=column,
            value=state.column_filters.get(column, ""),
            filters=dict(state.column_filters),
        )

    def clear_filters(self) -> Optional[FetchRequest]:
        if not self._query.column_filters:
            return None
        state = self._query.clear_column_filters()
        return self._transition(
            state, FetchTrigger.COLUMN_FILTER, TableEvent.FILTER_CHANGED, filters={}
        )

    def sort(self, column: str, direction: Optional[str] = None) -> Optional[FetchRequest]:
        if not self.columns.is_sortable(column):
            logger.warning("Column %r is not sortable", column)
            return None
        if direction is None:
            state = self._query.toggle_sort(column)
        else:
            state = self._query.set_sort(column, direction)
        return self._transition(
            state,
            FetchTrigger.SORT,
            TableEvent.SORT_CHANGED,
            sort=state.sort,
            order=state.order,
        )

    def clear_sort(self) -> Optional[FetchRequest]:
        state = self._query.clear_sort()
        return self._transition(
            state, FetchTrigger.SORT, TableEvent.SORT_CHANGED, sort="", order=state.order
        )

    def go_to_page(self, page: Any) -> Optional[FetchRequest]:
        state = self._query.set_page(page)
        return self._transition(
            state, FetchTrigger.PAGINATION, TableEvent.PAGE_CHANGED, page=state.page
        )

    @property
    def last_page_number(self) -> int:
        return self._pagination.last_page if self._pagination else 1

    def next_page(self) -> Optional[FetchRequest]:
        if self._query.page >= self.last_page_number:
            return None
        return self.go_to_page(self._query.page + 1)

    def previous_page(self) -> Optional[FetchRequest]:
        if self._query.page <= 1:
            return None
        return self.go_to_page(self._query.page - 1)

    def first_page(self) -> Optional[FetchRequest]:
        return self.go_to_page(1)

    def last_page(self) -> Optional[FetchRequest]:
        return self.go_to_page(self.last_page_number)

    def set_page_size(self, size: Any) -> Optional[FetchRequest]:
        state = self._query.set_page_size(size)
        return self._transition(
            state,
            FetchTrigger.PAGE_SIZE,
            TableEvent.PER_PAGE_CHANGED,
            per_page=state.page_size,
        )

    def reset(self) -> FetchRequest:
        self._query = self._query.reset()
        if self.store is not None:
            clear_query_state(self.store, self.table_id)
        self.events.emit(TableEvent.RESET)
        return self._schedule(FetchTrigger.RESET)

    def reload(self) -> FetchRequest:
        self.events.emit(TableEvent.RELOAD)
        return self._schedule(FetchTrigger.RELOAD)

    # fetch callbacks

    def _on_loading(self, loading: bool, request: FetchRequest) -> None:
        self._loading = loading
        self.events.emit(
            TableEvent.LOADING,
            loading=loading,
            generation=request.generation,
            params=request.query.to_params(),
        )
        self.render()

    def _on_success(self, request: FetchRequest, page: PageResult) -> None:
        self._page = page
        self._rows = page.rows
        self._error = None
        self._query = self._query.confirm_page(page.current_page)
        self.navigator.sync_rows(page.rows)
        self._pagination = plan_pagination(
            page.current_page,
            page.last_page,
            mode=self.settings.pagination_mode,
            total=page.total,
            page_size=self._query.page_size,
        )
        self.events.emit(
            TableEvent.LOADED,
            page=page.current_page,
            last_page=page.last_page,
            total=page.total,
            count=len(page.rows),
            generation=request.generation,
        )
        self._save_state()

    def _on_failure(self, request: FetchRequest, error: FetchError) -> None:
        self._error = error_payload(error)
        self.events.emit(
            TableEvent.FETCH_ERROR,
            generation=request.generation,
            params=request.query.to_params(),
            **self._error,
        )

    # rendering and persistence

    def _text_entry_focused(self) -> bool:
        if self.surface is None:
            return False
        return bool(self.surface.text_entry_focused())

    def render(self) -> None:
        if self.surface is None:
            return
        try:
            self.surface.render(self.view())
        except Exception:
            logger.exception("Render surface failed for table %s", self.table_id)

    def _save_state(self) -> None:
        if not self.settings.save_state or self.store is None:
            return
        visibility = (
            self.columns.visibility() if self.settings.persist_column_visibility else None
        )
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            None,
            save_query_state,
            self.store,
            self.table_id,
            self._query.to_snapshot(),
            visibility,
        )
        self._pending_saves.add(future)
        future.add_done_callback(self._pending_saves.discard)

    # selection

    def _on_selection_change(self, change: SelectionChange) -> None:
        if change.reason == "select_all":
            self.events.emit(TableEvent.ALL_SELECTED, ids=list(change.added))
        elif change.reason == "clear":
            self.events.emit(TableEvent.ALL_DESELECTED, ids=list(change.removed))
        elif change.reason in {"select", "deselect"}:
            for row_id in change.added:
                self.events.emit(TableEvent.ROW_SELECTED, id=row_id, row=self.row_for(row_id))
            for row_id in change.removed:
                self.events.emit(
                    TableEvent.ROW_DESELECTED, id=row_id, row=self.row_for(row_id)
                )
        self.events.emit(
            TableEvent.SELECTION_CHANGED,
            reason=change.reason,
            selected_ids=list(change.selected_ids),
            added=list(change.added),
            removed=list(change.removed),
        )
        self.render()

    def _selectable(self) -> bool:
        if not self.settings.selectable:
            logger.debug("Selection is disabled for table %s", self.table_id)
        return self.settings.selectable

    def row_for(self, row_id: Any) -> Optional[Row]:
        return next((row for row in self._rows if row.get("id") == row_id), None)

    def visible_ids(self) -> List[Any]:
        return [row.get("id") for row in self._rows]

    def select(self, row_id: Any) -> None:
        if self._selectable():
            self.selection.select(row_id)

    def deselect(self, row_id: Any) -> None:
        if self._selectable():
            self.selection.deselect(row_id)

    def toggle(self, row_id: Any, force: Optional[bool] = None) -> bool:
        if not self._selectable():
            return False
        return self.selection.toggle(row_id, force)

    def select_all(self) -> None:
        if self._selectable():
            self.selection.select_all(self.visible_ids())

    def clear_selection(self) -> None:
        self.selection.clear()

    def set_selection(self, ids: Sequence[Any]) -> None:
        if self._selectable():
            self.selection.set_selection(ids)

    def invert_selection(self) -> None:
        if self._selectable():
            self.selection.invert(self.visible_ids())

    def select_range(self, from_id: Any, to_id: Any) -> None:
        if self._selectable():
            self.selection.select_range(self.visible_ids(), from_id, to_id)

    def set_select_mode(self, mode: str) -> None:
        self.selection.set_mode(mode)

    def selected_ids(self) -> List[Any]:
        return self.selection.selected_ids()

    @property
    def selected_count(self) -> int:
        return self.selection.count

    def selected_rows(self) -> List[Row]:
        """Held rows whose id is selected; ids on other pages have no data here."""
        return [row for row in self._rows if self.selection.is_selected(row.get("id"))]

    def selected_json(self) -> str:
        return json.dumps([dict(row) for row in self.selected_rows()], indent=2, default=str)

    def page_json(self) -> str:
        return json.dumps([dict(row) for row in self._rows], indent=2, default=str)

    # keyboard

    def handle_key(self, event: KeyEvent) -> Optional[NavCommand]:
        command = self.navigator.handle_key(event)
        if command is not None:
            self.render()
        return command

    def _on_activate(self, row: Row) -> None:
        self.events.emit(TableEvent.ROW_ACTIVATED, id=row.get("id"), row=dict(row))

    def _on_nav_command(self, command: NavCommand) -> None:
        if command is NavCommand.PREVIOUS_PAGE:
            self.previous_page()
        elif command is NavCommand.NEXT_PAGE:
            self.next_page()
        elif command is NavCommand.FIRST_PAGE:
            self.first_page()
        elif command is NavCommand.LAST_PAGE:
            self.last_page()
        elif command is NavCommand.RELOAD:
            self.reload()
        elif command is NavCommand.RESET:
            self.reset()
        elif command in _NAV_EXPORT_FORMATS:
            self.request_export(_NAV_EXPORT_FORMATS[command])

    # column visibility

    def _visibility_changed(self) -> None:
        self.events.emit(
            TableEvent.COLUMN_VISIBILITY_CHANGED, visibility=self.columns.visibility()
        )
        if self.settings.persist_column_visibility:
            self._save_state()
        self.render()

    def set_column_visible(self, name: str, visible: Optional[bool] = None) -> bool:
        before = self.columns.visibility()
        result = self.columns.set_visible(name, visible)
        if self.columns.visibility() != before:
            self._visibility_changed()
        return result

    def show_all_columns(self) -> None:
        self.columns.show_all()
        self._visibility_changed()

    def hide_all_columns(self) -> None:
        self.columns.hide_all()
        self._visibility_changed()

    def reset_columns(self) -> None:
        self.columns.reset_visibility()
        self._visibility_changed()

    # export

    def export_options(
        self, export_format: str, fallback: Sequence[FallbackStep] = (), **overrides: Any
    ) -> ExportOptions:
        values: Dict[str, Any] = {
            "chunk_size": self.settings.chunk_size_for(export_format),
            "record_ceiling": self.settings.record_ceiling,
            "fallback_bulk_size": self.settings.fallback_bulk_size,
            "fallback": tuple(fallback),
            "probe_total": True,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return ExportOptions(**values)

    @property
    def exporting(self) -> bool:
        return self._export is not None

    @property
    def export_progress(self) -> Optional[ExportProgress]:
        return self._export.progress if self._export else None

    def _on_export_progress(self, progress: ExportProgress) -> None:
        if self._export is not None:
            self._export.progress = progress
        self.events.emit(
            TableEvent.EXPORT_PROGRESS,
            format=progress.export_format,
            processed=progress.processed,
            total=progress.total,
            percent=progress.percent,
        )

    async def export(
        self,
        export_format: str,
        *,
        sink: Optional[ExportSink] = None,
        fallback: Sequence[FallbackStep] = (),
        options: Optional[ExportOptions] = None,
    ) -> ExportResult:
        """Export every row matching the live query in ``export_format``.

        Raises :class:`FallbackExhausted` when the walk and all declared
        fallbacks fail, and :class:`ExportCancelled` on :meth:`cancel_export`.
        """
        if self._export is not None:
            raise ExportInProgress("An export is already running for this table")
        sink = sink or sink_for(export_format, title=f"{self.table_id} export")
        options = options or self.export_options(export_format, fallback)
        pipeline = ExportPipeline(
            self.endpoint,
            self.columns.exportable_columns(),
            timeout=self.settings.timeout,
            on_progress=self._on_export_progress,
        )
        self._export = _ExportRun(export_format=export_format, pipeline=pipeline)
        self.events.emit(TableEvent.EXPORT_STARTED, format=export_format)
        try:
            result = await pipeline.run(self._query, sink, options, self._rows)
        except ExportCancelled:
            logger.info("%s export cancelled for table %s", export_format, self.table_id)
            self.events.emit(TableEvent.EXPORT_CANCELLED, format=export_format)
            raise
        except FallbackExhausted as error:
            logger.error("%s export failed for table %s: %s", export_format, self.table_id, error)
            self.events.emit(
                TableEvent.EXPORT_FAILED, format=export_format, **error_payload(error)
            )
            raise
        finally:
            self._export = None

        self.events.emit(
            TableEvent.EXPORT_COMPLETED,
            format=export_format,
            rows=result.rows_written,
            truncated=result.truncated,
            fallback=result.fallback.value if result.fallback else None,
            file_name=result.artifact.file_name,
            notice=str(result.notice) if result.notice else None,
        )
        return result

    def request_export(self, export_format: str) -> Any:
        """Hand a keyboard export request to ``export_handler``."""
        if self.export_handler is None:
            logger.info(
                "No export handler for table %s; ignoring %s request",
                self.table_id,
                export_format,
            )
            return None
        return self.export_handler(export_format)

    def cancel_export(self) -> bool:
        if self._export is None:
            return False
        self._export.pipeline.cancel()
        return True


__all__ = ["EMPTY_MESSAGE", "ERROR_MESSAGE", "RenderSurface", "TableController", "TableView"]
