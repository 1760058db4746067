import io
import os
import sys
import tempfile
import unittest
from glob import glob

from openpyxl import load_workbook

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fakes import make_rows  # noqa: E402

from paged_table_ui.services.columns import Column, ColumnSet  # noqa: E402
from paged_table_ui.services.sinks import (  # noqa: E402
    CsvSink,
    DocumentSink,
    PrintSink,
    SinkStateError,
    WorkbookSink,
    sink_for,
)

COLUMNS = [Column("id", label="ID"), Column("name")]


def export_rows(sink, rows, batch=2):
    sink.open(COLUMNS)
    for start in range(0, len(rows), batch):
        sink.write_rows(rows[start : start + batch])
    return sink.close()


def _workbook_temp_files():
    return set(glob(os.path.join(tempfile.gettempdir(), "openpyxl.*")))


class CsvSinkTest(unittest.TestCase):
    def test_every_field_quoted_with_crlf(self):
        artifact = export_rows(CsvSink(), make_rows(2))
        self.assertEqual(
            artifact.read(),
            b'"ID","name"\r\n"1","Row 1"\r\n"2","Row 2"\r\n',
        )
        self.assertEqual(artifact.file_name, "table-export.csv")
        self.assertEqual(artifact.row_count, 2)
        self.assertEqual(artifact.size, len(artifact.read()))

    def test_embedded_quotes_are_doubled(self):
        artifact = export_rows(CsvSink(), [{"id": 1, "name": 'say "hi"'}])
        self.assertIn(b'"say ""hi"""', artifact.read())


class WorkbookSinkTest(unittest.TestCase):
    def test_rows_round_trip_through_openpyxl(self):
        artifact = export_rows(WorkbookSink(), make_rows(3))
        workbook = load_workbook(io.BytesIO(artifact.read()))
        sheet = workbook["Export"]
        values = [list(row) for row in sheet.iter_rows(values_only=True)]
        self.assertEqual(values[0], ["ID", "name"])
        self.assertEqual(values[1:], [[1, "Row 1"], [2, "Row 2"], [3, "Row 3"]])
        self.assertTrue(artifact.file_name.endswith(".xlsx"))

    def test_abort_removes_spooled_sheet(self):
        before = _workbook_temp_files()
        sink = WorkbookSink()
        sink.open(COLUMNS)
        sink.write_rows(make_rows(5))
        sink.abort()
        self.assertEqual(sink.state, "aborted")
        self.assertEqual(_workbook_temp_files() - before, set())

    def test_abort_right_after_open_removes_spooled_sheet(self):
        before = _workbook_temp_files()
        sink = WorkbookSink()
        sink.open(COLUMNS)
        sink.abort()
        self.assertEqual(_workbook_temp_files() - before, set())

    def test_close_leaves_no_spooled_sheet(self):
        before = _workbook_temp_files()
        export_rows(WorkbookSink(), make_rows(5))
        self.assertEqual(_workbook_temp_files() - before, set())


class HtmlSinkTest(unittest.TestCase):
    def test_print_output_escapes_values(self):
        artifact = export_rows(PrintSink(title="People"), [{"id": 1, "name": "<b>x</b>"}])
        html = artifact.read().decode("utf-8")
        self.assertIn("<title>People</title>", html)
        self.assertIn("&lt;b&gt;x&lt;/b&gt;", html)
        self.assertIn("1 records", html)

    def test_document_is_split_into_pages(self):
        artifact = export_rows(DocumentSink(rows_per_page=2), make_rows(5))
        html = artifact.read().decode("utf-8")
        self.assertEqual(html.count('<section class="page">'), 3)
        self.assertIn("Page 1 (2 records)", html)
        self.assertIn("Page 3 (5 records)", html)
        self.assertIn("5 records in total", html)

    def test_empty_document_still_has_one_page(self):
        artifact = export_rows(DocumentSink(), [])
        html = artifact.read().decode("utf-8")
        self.assertIn("Page 1 (0 records)", html)

    def test_fresh_document_sink_keeps_page_size(self):
        sink = DocumentSink(rows_per_page=7)
        self.assertEqual(sink.fresh().rows_per_page, 7)


class SinkLifecycleTest(unittest.TestCase):
    def test_write_before_open(self):
        with self.assertRaises(SinkStateError):
            CsvSink().write_rows(make_rows(1))

    def test_finalize_happens_once(self):
        sink = CsvSink()
        export_rows(sink, make_rows(1))
        with self.assertRaises(SinkStateError):
            sink.close()
        with self.assertRaises(SinkStateError):
            sink.abort()

    def test_abort_then_close(self):
        sink = CsvSink()
        sink.open(COLUMNS)
        sink.abort()
        self.assertTrue(sink.finalized)
        with self.assertRaises(SinkStateError):
            sink.close()

    def test_sink_for(self):
        self.assertIsInstance(sink_for("workbook"), WorkbookSink)
        self.assertEqual(sink_for("document", rows_per_page=5).rows_per_page, 5)
        with self.assertRaises(ValueError):
            sink_for("pdf")


class ColumnValueTest(unittest.TestCase):
    def setUp(self):
        self.row = {"id": 1, "score": 10}
        self.column = Column(
            "score",
            formatter=lambda value, row: f"{value} pts",
            render=lambda value, row: f"<b>{value}</b>",
            export_render=lambda value, row: value * 2,
        )

    def test_format_override_wins(self):
        self.assertEqual(self.column.value_for(self.row, "csv"), 20)
        self.assertEqual(self.column.value_for(self.row, "workbook"), 20)

    def test_formatter_used_without_override(self):
        self.assertEqual(self.column.value_for(self.row, "print"), "10 pts")

    def test_display_value_is_render_as_text(self):
        self.assertEqual(self.column.value_for(self.row), "10")

    def test_render_reused_for_export_when_asked(self):
        column = Column(
            "score",
            render=lambda value, row: f"<i>{value}</i>",
            use_render_for_export=True,
        )
        self.assertEqual(column.value_for(self.row, "document"), "10")

    def test_missing_value_is_empty(self):
        self.assertEqual(Column("missing").value_for(self.row, "csv"), "")

    def test_from_payload(self):
        self.assertEqual(Column.from_payload("id"), Column("id"))
        column = Column.from_payload({"name": "name", "label": "Name", "sortable": False})
        self.assertEqual(column.title, "Name")
        self.assertFalse(column.sortable)
        with self.assertRaises(ValueError):
            Column.from_payload({"label": "no name"})


class ColumnSetTest(unittest.TestCase):
    def setUp(self):
        self.columns = ColumnSet(
            [
                Column("id", required=True),
                Column("name"),
                Column("notes", visible=False),
                Column("secret", exportable=False),
            ]
        )

    def test_required_column_cannot_be_hidden(self):
        with self.assertLogs("paged_table_ui.services.columns", level="WARNING"):
            self.assertTrue(self.columns.set_visible("id", False))
        self.columns.hide_all()
        self.assertEqual([column.name for column in self.columns.visible_columns()], ["id"])

    def test_toggle_and_reset(self):
        self.assertTrue(self.columns.set_visible("notes"))
        self.assertFalse(self.columns.set_visible("name"))
        self.columns.reset_visibility()
        self.assertEqual(
            self.columns.visibility(),
            {"id": True, "name": True, "notes": False, "secret": True},
        )

    def test_exportable_columns_follow_visibility(self):
        names = [column.name for column in self.columns.exportable_columns()]
        self.assertEqual(names, ["id", "name"])

    def test_apply_visibility_ignores_unknown_names(self):
        self.columns.apply_visibility({"notes": True, "ghost": True})
        self.assertTrue(self.columns.is_visible("notes"))
        self.assertFalse(self.columns.is_visible("ghost"))

    def test_duplicate_names_rejected(self):
        with self.assertRaises(ValueError):
            ColumnSet([Column("id"), Column("id")])


if __name__ == "__main__":
    unittest.main()
