import csv
import io
import json
import math
import os
import sys
import unittest
from unittest.mock import patch

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fakes import make_rows  # noqa: E402

from paged_table_ui import create_app  # noqa: E402

app = create_app()

COLLECTION_URL = "http://collection.example.com/people"
ROWS = make_rows(25)


class DummyResponse:
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json_data = json_data

    def raise_for_status(self):
        return None

    def json(self):
        return self._json_data if self._json_data is not None else {}


def fake_collection_get(url, headers=None, params=None, timeout=None):
    params = params or {}
    page = int(params.get("page", 1))
    per_page = int(params.get("perPage", 10))
    term = str(params.get("search") or "").lower()
    matches = [row for row in ROWS if term in row["name"].lower()]
    last_page = max(1, math.ceil(len(matches) / per_page))
    page = min(page, last_page)
    start = (page - 1) * per_page
    return DummyResponse(
        json_data={
            "data": matches[start : start + per_page],
            "current_page": page,
            "last_page": last_page,
            "total": len(matches),
        }
    )


class RouteTestCase(unittest.TestCase):
    table_id = "people"

    def setUp(self):
        patcher = patch(
            "paged_table_ui.collection_client.requests.get",
            side_effect=fake_collection_get,
        )
        self.mock_get = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = app.test_client()
        response = self.client.post(
            "/api/tables",
            json={
                "url": COLLECTION_URL,
                "tableId": self.table_id,
                "columns": ["id", "name", {"name": "score", "label": "Score"}],
                "perPage": 10,
                "wait": True,
            },
        )
        self.assertEqual(response.status_code, 201)
        self.opened = response.get_json()
        self.addCleanup(self.client.delete, f"/api/tables/{self.table_id}")

    def post(self, path, payload):
        return self.client.post(f"/api/tables/{self.table_id}{path}", json=payload)


class OpenTableTest(RouteTestCase):
    table_id = "open-test"

    def test_open_returns_first_page(self):
        self.assertEqual(self.opened["tableId"], "open-test")
        self.assertEqual([row["id"] for row in self.opened["rows"]], list(range(1, 11)))
        self.assertEqual(self.opened["pagination"]["lastPage"], 3)
        self.assertEqual(
            [column["label"] for column in self.opened["columns"]], ["id", "name", "Score"]
        )
        _, kwargs = self.mock_get.call_args
        self.assertEqual(kwargs["headers"]["X-Requested-With"], "XMLHttpRequest")

    def test_missing_url(self):
        with patch.dict(os.environ, {"TABLE_COLLECTION_URL": ""}):
            response = self.client.post("/api/tables", json={"columns": ["id"]})
        self.assertEqual(response.status_code, 400)

    def test_invalid_columns(self):
        response = self.client.post(
            "/api/tables", json={"url": COLLECTION_URL, "columns": [{"label": "x"}]}
        )
        self.assertEqual(response.status_code, 400)

    def test_unknown_table(self):
        self.assertEqual(self.client.get("/api/tables/nope").status_code, 404)
        self.assertEqual(self.client.delete("/api/tables/nope").status_code, 404)

    def test_events_history(self):
        response = self.client.get(f"/api/tables/{self.table_id}/events?since=0")
        events = [item["event"] for item in response.get_json()["events"]]
        self.assertEqual(events[0], "init")
        self.assertIn("loaded", events)


class QueryRouteTest(RouteTestCase):
    table_id = "query-test"

    def test_next_page(self):
        response = self.post("/query", {"action": "nextPage", "wait": True})
        payload = response.get_json()
        self.assertEqual(payload["query"]["page"], 2)
        self.assertEqual(payload["rows"][0]["id"], 11)

    def test_search(self):
        response = self.post("/query", {"action": "search", "value": "Row 2", "wait": True})
        payload = response.get_json()
        self.assertEqual(payload["pagination"]["total"], 7)
        self.assertEqual(payload["query"]["search"], "Row 2")

    def test_unknown_action(self):
        response = self.post("/query", {"action": "explode"})
        self.assertEqual(response.status_code, 400)


class SelectionRouteTest(RouteTestCase):
    table_id = "selection-test"

    def test_select_and_download(self):
        response = self.post("/selection", {"action": "select", "id": 3})
        self.assertEqual(response.get_json()["selectedIds"], [3])

        download = self.client.get(f"/api/tables/{self.table_id}/selected.json")
        self.assertIn("selected-data.json", download.headers["Content-Disposition"])
        self.assertEqual(json.loads(download.data), [ROWS[2]])

    def test_page_download(self):
        download = self.client.get(f"/api/tables/{self.table_id}/page.json")
        self.assertIn("table-data.json", download.headers["Content-Disposition"])
        self.assertEqual(len(json.loads(download.data)), 10)


class KeyRouteTest(RouteTestCase):
    table_id = "key-test"

    def test_arrow_key_moves_selection(self):
        response = self.post("/keys", {"key": "ArrowDown"})
        payload = response.get_json()
        self.assertEqual(payload["command"], "move_down")
        self.assertEqual(payload["selectedIds"], [1])
        self.assertEqual(payload["cursor"], 0)

    def test_keys_ignored_while_typing(self):
        response = self.post("/keys", {"key": "ArrowDown", "textEntryFocused": True})
        payload = response.get_json()
        self.assertIsNone(payload["command"])
        self.assertEqual(payload["selectedIds"], [])

    def test_ctrl_end_goes_to_last_page(self):
        response = self.post("/keys", {"key": "End", "ctrlKey": True, "wait": True})
        self.assertEqual(response.get_json()["query"]["page"], 3)

    def test_missing_key(self):
        self.assertEqual(self.post("/keys", {}).status_code, 400)


class ColumnRouteTest(RouteTestCase):
    table_id = "column-test"

    def test_hide_column(self):
        response = self.post("/columns", {"action": "hide", "column": "score"})
        payload = response.get_json()
        self.assertEqual([column["name"] for column in payload["columns"]], ["id", "name"])
        self.assertEqual(len(payload["cells"][0]), 2)


class ExportRouteTest(RouteTestCase):
    table_id = "export-test"

    def test_csv_export_and_download(self):
        response = self.post("/exports", {"format": "csv", "wait": True})
        self.assertEqual(response.status_code, 200)
        job = response.get_json()
        self.assertEqual(job["status"], "completed")
        self.assertEqual(job["rows"], 25)

        status = self.client.get(job["pollUrl"]).get_json()
        download = self.client.get(status["downloadUrl"])
        self.assertEqual(download.status_code, 200)
        self.assertIn("table-export.csv", download.headers["Content-Disposition"])
        rows = list(csv.reader(io.StringIO(download.data.decode("utf-8"))))
        self.assertEqual(rows[0], ["id", "name", "Score"])
        self.assertEqual(len(rows), 26)

        export_calls = [
            call for call in self.mock_get.call_args_list
            if call.kwargs["headers"].get("X-Requested-For") == "export-csv"
        ]
        self.assertTrue(export_calls)
        self.assertTrue(all(call.kwargs["params"]["export"] == "true" for call in export_calls))

        cancel = self.client.post(f"/api/exports/{job['jobId']}/cancel").get_json()
        self.assertFalse(cancel["cancelled"])

    def test_document_export(self):
        response = self.post("/exports", {"format": "document", "wait": True})
        job = response.get_json()
        download = self.client.get(f"/api/exports/{job['jobId']}/download?inline=1")
        self.assertIn(b"Page 1 (25 records)", download.data)

    def test_rejects_unknown_format_and_fallback(self):
        self.assertEqual(self.post("/exports", {"format": "pdf"}).status_code, 400)
        response = self.post("/exports", {"format": "csv", "fallback": ["magic"]})
        self.assertEqual(response.status_code, 400)

    def test_unknown_job(self):
        self.assertEqual(self.client.get("/api/exports/missing").status_code, 404)
        self.assertEqual(self.client.get("/api/exports/missing/download").status_code, 404)


if __name__ == "__main__":
    unittest.main()
