import asyncio
import io
import os
import sys
import unittest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fakes import (  # noqa: E402
    ChunkedCollection,
    ControlledCollection,
    FakeCollection,
    make_rows,
    settle,
)

from paged_table_ui.errors import (  # noqa: E402
    ExportCancelled,
    FallbackExhausted,
    ServerError,
)
from paged_table_ui.services.columns import plain_columns  # noqa: E402
from paged_table_ui.services.export import (  # noqa: E402
    ExportOptions,
    ExportPipeline,
    FallbackStep,
)
from paged_table_ui.services.query_state import QueryState  # noqa: E402
from paged_table_ui.services.sinks import ExportSink  # noqa: E402

COLUMNS = plain_columns(["id", "name"])


class RecordingSink(ExportSink):
    """Keeps written values in memory and counts each finalize."""

    export_format = "csv"
    extension = "txt"

    def __init__(self, file_name=None, title=""):
        super().__init__(file_name=file_name, title=title)
        self.values = []
        self.closes = 0
        self.aborts = 0
        self.children = []

    def fresh(self):
        child = super().fresh()
        self.children.append(child)
        return child

    def _open(self):
        self.stream = io.BytesIO()

    def _write(self, values):
        self.values.extend(values)
        self.stream.write(b"." * len(values))

    def _close(self):
        self.closes += 1
        return self._artifact(self.stream)

    def _discard(self):
        self.aborts += 1


class ExportWalkTest(unittest.IsolatedAsyncioTestCase):
    async def test_short_batch_ends_the_walk(self):
        endpoint = ChunkedCollection(chunk=10, full_pages=3, tail=9)
        sink = RecordingSink()
        result = await ExportPipeline(endpoint, COLUMNS).run(
            QueryState.initial(), sink, ExportOptions(chunk_size=10)
        )

        self.assertEqual(result.rows_written, 39)
        self.assertEqual(result.pages_fetched, 4)
        self.assertTrue(result.complete)
        self.assertEqual((sink.closes, sink.aborts), (1, 0))
        self.assertEqual(sink.values[0], [1, "Row 1"])
        self.assertEqual(sink.values[-1], [39, "Row 39"])
        self.assertEqual(result.artifact.row_count, 39)

    async def test_exact_multiple_needs_one_empty_page(self):
        endpoint = ChunkedCollection(chunk=10, full_pages=2, tail=0)
        sink = RecordingSink()
        result = await ExportPipeline(endpoint, COLUMNS).run(
            QueryState.initial(), sink, ExportOptions(chunk_size=10)
        )

        self.assertEqual(result.rows_written, 20)
        self.assertEqual(result.pages_fetched, 3)
        self.assertEqual(sink.closes, 1)

    async def test_record_ceiling_truncates(self):
        endpoint = ChunkedCollection(chunk=20, full_pages=10, tail=0)
        sink = RecordingSink()
        with self.assertLogs("paged_table_ui.services.export", level="WARNING"):
            result = await ExportPipeline(endpoint, COLUMNS).run(
                QueryState.initial(),
                sink,
                ExportOptions(chunk_size=20, record_ceiling=50),
            )

        self.assertEqual(result.pages_fetched, 3)
        self.assertEqual(result.rows_fetched, 60)
        self.assertEqual(result.rows_written, 50)
        self.assertTrue(result.truncated)
        self.assertFalse(result.complete)
        self.assertEqual(result.notice.ceiling, 50)
        self.assertEqual(len(sink.values), 50)
        self.assertEqual(sink.closes, 1)

    async def test_requests_carry_query_and_export_marker(self):
        endpoint = FakeCollection(make_rows(25))
        query = QueryState.initial().set_search("row").set_sort("name", "desc")
        await ExportPipeline(endpoint, COLUMNS).run(
            query, RecordingSink(), ExportOptions(chunk_size=10)
        )

        self.assertEqual(endpoint.pages_requested, [1, 2, 3])
        for params, requested_for in endpoint.calls:
            self.assertEqual(params["export"], "true")
            self.assertEqual(params["perPage"], "10")
            self.assertEqual(params["search"], "row")
            self.assertEqual(params["order"], "desc")
            self.assertEqual(requested_for, "export-csv")

    async def test_progress_uses_probed_total(self):
        progress = []
        endpoint = FakeCollection(make_rows(25))
        pipeline = ExportPipeline(endpoint, COLUMNS, on_progress=progress.append)
        await pipeline.run(
            QueryState.initial(),
            RecordingSink(),
            ExportOptions(chunk_size=10, probe_total=True),
        )

        self.assertEqual([item.processed for item in progress], [10, 20, 25])
        self.assertEqual({item.total for item in progress}, {25})
        self.assertEqual(progress[-1].percent, 100)
        self.assertEqual(endpoint.calls[0][0]["perPage"], "1")

    def test_options_reject_non_positive_sizes(self):
        with self.assertRaises(ValueError):
            ExportOptions(chunk_size=0)
        with self.assertRaises(ValueError):
            ExportOptions(record_ceiling=0)


class ExportFallbackTest(unittest.IsolatedAsyncioTestCase):
    async def test_bulk_fallback_after_mid_walk_failure(self):
        endpoint = FakeCollection(
            make_rows(25), fail_pages=[2], error=ServerError("boom", 503)
        )
        sink = RecordingSink()
        with self.assertLogs("paged_table_ui.services.export", level="WARNING"):
            result = await ExportPipeline(endpoint, COLUMNS).run(
                QueryState.initial(),
                sink,
                ExportOptions(chunk_size=10, fallback=(FallbackStep.BULK,)),
            )

        self.assertEqual((sink.closes, sink.aborts), (0, 1))
        self.assertIs(result.fallback, FallbackStep.BULK)
        self.assertIsInstance(result.error, ServerError)
        self.assertEqual(result.rows_written, 25)
        self.assertEqual(endpoint.calls[-1][0]["perPage"], "1000")
        (retry,) = sink.children
        self.assertEqual((retry.closes, retry.aborts), (1, 0))
        self.assertFalse(result.complete)

    async def test_current_page_fallback_after_bulk_fails(self):
        endpoint = FakeCollection(
            make_rows(25), fail_pages=[1], error=ServerError("down", 500)
        )
        current = make_rows(3)
        with self.assertLogs("paged_table_ui.services.export", level="WARNING"):
            result = await ExportPipeline(endpoint, COLUMNS).run(
                QueryState.initial(),
                RecordingSink(),
                ExportOptions(
                    chunk_size=10,
                    fallback=(FallbackStep.BULK, FallbackStep.CURRENT_PAGE),
                ),
                current_rows=current,
            )

        self.assertIs(result.fallback, FallbackStep.CURRENT_PAGE)
        self.assertEqual(result.rows_written, 3)
        self.assertEqual(result.pages_fetched, 0)

    async def test_fallback_exhausted(self):
        endpoint = FakeCollection(
            make_rows(5), fail_pages=[1], error=ServerError("down", 500)
        )
        sink = RecordingSink()
        with self.assertLogs("paged_table_ui.services.export", level="WARNING"):
            with self.assertRaises(FallbackExhausted) as caught:
                await ExportPipeline(endpoint, COLUMNS).run(
                    QueryState.initial(),
                    sink,
                    ExportOptions(fallback=(FallbackStep.CURRENT_PAGE,)),
                )

        self.assertIsInstance(caught.exception.primary, ServerError)
        self.assertEqual(len(caught.exception.fallback_errors), 1)
        self.assertEqual(sink.aborts, 1)

    async def test_no_fallback_declared(self):
        endpoint = FakeCollection(
            make_rows(5), fail_pages=[1], error=ServerError("down", 500)
        )
        with self.assertLogs("paged_table_ui.services.export", level="WARNING"):
            with self.assertRaises(FallbackExhausted):
                await ExportPipeline(endpoint, COLUMNS).run(
                    QueryState.initial(), RecordingSink()
                )


class ExportCancelTest(unittest.IsolatedAsyncioTestCase):
    async def test_cancel_between_pages_aborts_the_sink(self):
        endpoint = FakeCollection(make_rows(50))
        sink = RecordingSink()
        pipeline = ExportPipeline(
            endpoint, COLUMNS, on_progress=lambda progress: pipeline.cancel()
        )

        with self.assertRaises(ExportCancelled):
            await pipeline.run(
                QueryState.initial(),
                sink,
                ExportOptions(chunk_size=10, fallback=(FallbackStep.BULK,)),
            )

        self.assertEqual(len(endpoint.calls), 1)
        self.assertEqual((sink.closes, sink.aborts), (0, 1))
        self.assertEqual(sink.children, [])
        self.assertTrue(pipeline.cancelled)

    async def test_cancel_while_counting_rows_aborts_the_unopened_sink(self):
        endpoint = ControlledCollection()
        sink = RecordingSink()
        pipeline = ExportPipeline(endpoint, COLUMNS)
        task = asyncio.ensure_future(
            pipeline.run(
                QueryState.initial(),
                sink,
                ExportOptions(chunk_size=10, probe_total=True),
            )
        )
        await settle()
        self.assertEqual(len(endpoint.pending), 1)

        pipeline.cancel()
        endpoint.resolve(0, [])
        with self.assertRaises(ExportCancelled):
            await task

        self.assertEqual(len(endpoint.pending), 1)
        self.assertEqual(sink.state, "aborted")
        self.assertEqual((sink.closes, sink.aborts), (0, 1))
        self.assertEqual(sink.values, [])


if __name__ == "__main__":
    unittest.main()
