"""Export sinks: each consumes row batches and produces one downloadable artifact."""

from __future__ import annotations

import csv
import io
import logging
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Any, Dict, List, Mapping, Optional, Sequence, Type

from jinja2 import Environment, FileSystemLoader, select_autoescape
from openpyxl import Workbook  # type: ignore[import-untyped]

from ..config import (
    EXPORT_DOCUMENT_ROWS_PER_PAGE,
    EXPORT_FILE_NAMES,
    EXPORT_SPOOL_MAX_BYTES,
    TEMPLATE_ROOT,
)
from .columns import Column, row_values

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

_TEMPLATES = Environment(
    loader=FileSystemLoader(str(TEMPLATE_ROOT / "export")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class SinkStateError(RuntimeError):
    """A sink was used outside its open -> write -> finalize lifecycle."""


@dataclass
class ExportArtifact:
    file_name: str
    media_type: str
    row_count: int
    stream: IO[bytes]
    size: int

    def read(self) -> bytes:
        self.stream.seek(0)
        data = self.stream.read()
        self.stream.seek(0)
        return data

    def discard(self) -> None:
        self.stream.close()


def _spool() -> IO[bytes]:
    return tempfile.SpooledTemporaryFile(max_size=EXPORT_SPOOL_MAX_BYTES, mode="w+b")


class ExportSink(ABC):
    """Base sink with the open/write/finalize lifecycle.

    ``close`` and ``abort`` both finalize the sink; whichever comes first wins
    and a second finalize raises :class:`SinkStateError`.
    """

    export_format = ""
    media_type = "application/octet-stream"
    extension = ""

    def __init__(self, file_name: Optional[str] = None, title: str = "") -> None:
        self.file_name = file_name or EXPORT_FILE_NAMES.get(
            self.export_format, "table-export"
        )
        self.title = title or "Table export"
        self.columns: List[Column] = []
        self.row_count = 0
        self.state = "new"

    @property
    def finalized(self) -> bool:
        return self.state in {"closed", "aborted"}

    def fresh(self) -> "ExportSink":
        """New, unopened sink of the same kind, used for fallback exports."""
        return type(self)(file_name=self.file_name, title=self.title)

    def open(self, columns: Sequence[Column]) -> None:
        if self.state != "new":
            raise SinkStateError(f"Cannot open a sink in state {self.state!r}")
        self.columns = list(columns)
        self._open()
        self.state = "open"

    def write_rows(self, rows: Sequence[Row]) -> int:
        if self.state != "open":
            raise SinkStateError(f"Cannot write to a sink in state {self.state!r}")
        if not rows:
            return 0
        self._write([row_values(row, self.columns, self.export_format) for row in rows])
        self.row_count += len(rows)
        return len(rows)

    def close(self) -> ExportArtifact:
        if self.state != "open":
            raise SinkStateError(f"Cannot close a sink in state {self.state!r}")
        artifact = self._close()
        self.state = "closed"
        logger.debug(
            "Closed %s sink with %d rows (%d bytes)",
            self.export_format,
            self.row_count,
            artifact.size,
        )
        return artifact

    def abort(self) -> None:
        if self.finalized:
            raise SinkStateError(f"Cannot abort a sink in state {self.state!r}")
        self.state = "aborted"
        self._discard()
        logger.debug("Aborted %s sink after %d rows", self.export_format, self.row_count)

    def _artifact(self, stream: IO[bytes]) -> ExportArtifact:
        size = stream.tell()
        stream.seek(0)
        return ExportArtifact(
            file_name=f"{self.file_name}.{self.extension}",
            media_type=self.media_type,
            row_count=self.row_count,
            stream=stream,
            size=size,
        )

    @abstractmethod
    def _open(self) -> None: ...

    @abstractmethod
    def _write(self, values: List[List[Any]]) -> None: ...

    @abstractmethod
    def _close(self) -> ExportArtifact: ...

    @abstractmethod
    def _discard(self) -> None: ...


class CsvSink(ExportSink):
    """Line-oriented stream; every field quoted, CRLF line endings."""

    export_format = "csv"
    media_type = "text/csv; charset=utf-8"
    extension = "csv"

    def _open(self) -> None:
        self._stream = _spool()
        self._emit([[column.title for column in self.columns]])

    def _emit(self, values: List[List[Any]]) -> None:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
        writer.writerows(values)
        self._stream.write(buffer.getvalue().encode("utf-8"))

    def _write(self, values: List[List[Any]]) -> None:
        self._emit(values)

    def _close(self) -> ExportArtifact:
        return self._artifact(self._stream)

    def _discard(self) -> None:
        stream = getattr(self, "_stream", None)
        if stream is not None:
            stream.close()


def _cell(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, datetime)):
        return value
    return str(value)


class WorkbookSink(ExportSink):
    """Single-sheet workbook written row by row in openpyxl write-only mode."""

    export_format = "workbook"
    media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    extension = "xlsx"
    sheet_title = "Export"

    def _open(self) -> None:
        self._workbook = Workbook(write_only=True)
        self._sheet = self._workbook.create_sheet(title=self.sheet_title)
        self._sheet.append([column.title for column in self.columns])

    def _write(self, values: List[List[Any]]) -> None:
        for row in values:
            self._sheet.append([_cell(value) for value in row])

    def _close(self) -> ExportArtifact:
        stream = _spool()
        self._workbook.save(stream)
        stream.seek(0, io.SEEK_END)
        return self._artifact(stream)

    def _discard(self) -> None:
        # write-only sheets spool rows to an openpyxl temp file until saved
        sheet = getattr(self, "_sheet", None)
        if sheet is not None:
            if not sheet.closed:
                sheet.close()
            sheet._writer.cleanup()
        self._workbook = None
        self._sheet = None


class _HtmlSink(ExportSink):
    media_type = "text/html; charset=utf-8"
    extension = "html"
    template_name = ""

    def _open(self) -> None:
        self._stream = _spool()
        self._macros = _TEMPLATES.get_template(self.template_name).module
        self._emit(
            self._macros.document_start(
                self.title, [column.title for column in self.columns]
            )
        )

    def _emit(self, markup: Any) -> None:
        self._stream.write(str(markup).encode("utf-8"))

    def _discard(self) -> None:
        stream = getattr(self, "_stream", None)
        if stream is not None:
            stream.close()


class PrintSink(_HtmlSink):
    """Single printable HTML table."""

    export_format = "print"
    template_name = "print.html"

    def _write(self, values: List[List[Any]]) -> None:
        self._emit(self._macros.table_rows(values))

    def _close(self) -> ExportArtifact:
        self._emit(self._macros.document_end(self.row_count))
        return self._artifact(self._stream)


class DocumentSink(_HtmlSink):
    """Paginated HTML document, one page section per ``rows_per_page`` rows.

    At most one page of rows is held before it is written out.
    """

    export_format = "document"
    template_name = "document.html"

    def __init__(
        self,
        file_name: Optional[str] = None,
        title: str = "",
        rows_per_page: int = EXPORT_DOCUMENT_ROWS_PER_PAGE,
    ) -> None:
        super().__init__(file_name=file_name, title=title)
        self.rows_per_page = max(1, rows_per_page)
        self._pending: List[List[Any]] = []
        self._page_number = 0
        self._rows_flushed = 0

    def fresh(self) -> "DocumentSink":
        return DocumentSink(
            file_name=self.file_name, title=self.title, rows_per_page=self.rows_per_page
        )

    def _flush_page(self) -> None:
        page_rows = self._pending[: self.rows_per_page]
        self._pending = self._pending[self.rows_per_page :]
        self._page_number += 1
        self._rows_flushed += len(page_rows)
        self._emit(
            self._macros.page(
                self._page_number,
                [column.title for column in self.columns],
                page_rows,
                self._rows_flushed,
            )
        )

    def _write(self, values: List[List[Any]]) -> None:
        self._pending.extend(values)
        while len(self._pending) >= self.rows_per_page:
            self._flush_page()

    def _close(self) -> ExportArtifact:
        if self._pending or self._page_number == 0:
            self._flush_page()
        self._emit(self._macros.document_end(self.row_count))
        return self._artifact(self._stream)

    def _discard(self) -> None:
        self._pending = []
        super()._discard()


SINK_TYPES: Dict[str, Type[ExportSink]] = {
    CsvSink.export_format: CsvSink,
    WorkbookSink.export_format: WorkbookSink,
    PrintSink.export_format: PrintSink,
    DocumentSink.export_format: DocumentSink,
}


def sink_for(export_format: str, **kwargs: Any) -> ExportSink:
    try:
        sink_type = SINK_TYPES[export_format]
    except KeyError:
        raise ValueError(f"Unsupported export format: {export_format!r}") from None
    return sink_type(**kwargs)


__all__ = [
    "CsvSink",
    "DocumentSink",
    "ExportArtifact",
    "ExportSink",
    "PrintSink",
    "SINK_TYPES",
    "SinkStateError",
    "WorkbookSink",
    "sink_for",
]
