import asyncio
import os
import sys
import unittest
from unittest.mock import patch

import requests  # type: ignore[import-untyped]

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from paged_table_ui.collection_client import (  # noqa: E402
    RemoteCollection,
    collection_get,
    collection_headers,
    parse_page_payload,
)
from paged_table_ui.errors import (  # noqa: E402
    FetchTimeout,
    MalformedResponse,
    NetworkFailure,
    ServerError,
)


class DummyResponse:
    def __init__(self, status_code=200, json_data=None, reason="", invalid_json=False):
        self.status_code = status_code
        self._json_data = json_data
        self.reason = reason
        self._invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            error = requests.HTTPError(f"{self.status_code} error")
            error.response = self
            raise error

    def json(self):
        if self._invalid_json:
            raise ValueError("not json")
        return self._json_data if self._json_data is not None else {}


PAGE_PAYLOAD = {
    "data": [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}],
    "current_page": 2,
    "last_page": 4,
    "total": 35,
}


class CollectionHeadersTest(unittest.TestCase):
    def test_marks_request_as_async(self):
        headers = collection_headers()
        self.assertEqual(headers["X-Requested-With"], "XMLHttpRequest")
        self.assertEqual(headers["Accept"], "application/json")
        self.assertNotIn("Authorization", headers)
        self.assertNotIn("X-Requested-For", headers)

    def test_token_and_export_marker(self):
        headers = collection_headers("secret", requested_for="export-csv")
        self.assertEqual(headers["Authorization"], "Bearer secret")
        self.assertEqual(headers["X-Requested-For"], "export-csv")


class CollectionGetTest(unittest.TestCase):
    def test_passes_params_headers_and_timeout(self):
        with patch(
            "paged_table_ui.collection_client.requests.get",
            return_value=DummyResponse(json_data=PAGE_PAYLOAD),
        ) as mock_get:
            payload = collection_get(
                "http://example.com/people", {"page": "2"}, api_token="t", timeout=5
            )

        self.assertEqual(payload, PAGE_PAYLOAD)
        args, kwargs = mock_get.call_args
        self.assertEqual(args[0], "http://example.com/people")
        self.assertEqual(kwargs["params"], {"page": "2"})
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer t")

    def test_http_error_carries_status_and_details(self):
        response = DummyResponse(
            status_code=422,
            json_data={"message": "Invalid filter", "errors": {"sortBy": ["unknown"]}},
        )
        with patch("paged_table_ui.collection_client.requests.get", return_value=response):
            with self.assertRaises(ServerError) as caught:
                collection_get("http://example.com/people")

        self.assertEqual(caught.exception.status_code, 422)
        self.assertIn("Invalid filter", str(caught.exception))
        self.assertIn("sortBy: unknown", str(caught.exception))

    def test_timeout_maps_to_fetch_timeout(self):
        with patch(
            "paged_table_ui.collection_client.requests.get",
            side_effect=requests.Timeout("slow"),
        ):
            with self.assertRaises(FetchTimeout):
                collection_get("http://example.com/people", timeout=1)

    def test_connection_error_maps_to_network_failure(self):
        with patch(
            "paged_table_ui.collection_client.requests.get",
            side_effect=requests.ConnectionError("refused"),
        ):
            with self.assertRaises(NetworkFailure):
                collection_get("http://example.com/people")

    def test_invalid_json_is_malformed(self):
        with patch(
            "paged_table_ui.collection_client.requests.get",
            return_value=DummyResponse(invalid_json=True),
        ):
            with self.assertRaises(MalformedResponse):
                collection_get("http://example.com/people")


class ParsePagePayloadTest(unittest.TestCase):
    def test_reads_rows_and_meta(self):
        page = parse_page_payload(PAGE_PAYLOAD)
        self.assertEqual(page.ids, [1, 2])
        self.assertEqual((page.current_page, page.last_page, page.total), (2, 4, 35))

    def test_nested_meta_and_custom_key(self):
        page = parse_page_payload(
            {
                "items": [{"id": "a"}],
                "meta": {"current_page": 1, "last_page": 1, "total": 1},
            },
            "items",
        )
        self.assertEqual(page.ids, ["a"])

    def test_missing_rows(self):
        with self.assertRaises(MalformedResponse):
            parse_page_payload({"rows": []})

    def test_missing_meta(self):
        with self.assertRaises(MalformedResponse) as caught:
            parse_page_payload({"data": []})
        self.assertIn("current_page", str(caught.exception))

    def test_rows_need_ids(self):
        with self.assertRaises(MalformedResponse):
            parse_page_payload({**PAGE_PAYLOAD, "data": [{"name": "nobody"}]})

    def test_relaxed_parsing_for_exports(self):
        page = parse_page_payload(
            {"data": [{"name": "nobody"}]},
            requested_page=3,
            require_meta=False,
            require_ids=False,
        )
        self.assertEqual((page.current_page, page.total), (3, 1))


class RemoteCollectionTest(unittest.TestCase):
    def test_fetch_page_runs_request_in_worker_thread(self):
        collection = RemoteCollection("http://example.com/people", api_token="t")
        with patch(
            "paged_table_ui.collection_client.requests.get",
            return_value=DummyResponse(json_data=PAGE_PAYLOAD),
        ) as mock_get:
            page = asyncio.run(collection.fetch_page({"page": "2"}))

        self.assertEqual(page.ids, [1, 2])
        self.assertEqual(page.current_page, 2)
        headers = mock_get.call_args.kwargs["headers"]
        self.assertNotIn("X-Requested-For", headers)

    def test_export_requests_accept_bare_payloads(self):
        collection = RemoteCollection("http://example.com/people")
        with patch(
            "paged_table_ui.collection_client.requests.get",
            return_value=DummyResponse(json_data={"data": [{"name": "x"}]}),
        ) as mock_get:
            page = collection.fetch_page_sync(
                {"page": "4", "export": "true"}, requested_for="export-csv"
            )

        self.assertEqual(page.current_page, 4)
        self.assertEqual(
            mock_get.call_args.kwargs["headers"]["X-Requested-For"], "export-csv"
        )


if __name__ == "__main__":
    unittest.main()
