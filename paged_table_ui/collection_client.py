"""HTTP client helpers for the remote paginated collection endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests  # type: ignore[import-untyped]

from .config import COLLECTION_TIMEOUT, DEFAULT_DATA_KEY
from .errors import FetchTimeout, MalformedResponse, NetworkFailure, ServerError

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


@dataclass(frozen=True)
class PageResult:
    rows: Tuple[Row, ...] = ()
    current_page: int = 1
    last_page: int = 1
    total: int = 0
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def ids(self) -> List[Any]:
        return [row.get("id") for row in self.rows]


def collection_headers(
    api_token: str = "", requested_for: Optional[str] = None
) -> Dict[str, str]:
    headers = {
        "Accept": "application/json",
        "X-Requested-With": "XMLHttpRequest",
    }
    if api_token:
        headers["Authorization"] = f"Bearer {api_token}"
    if requested_for:
        headers["X-Requested-For"] = requested_for
    return headers


def _extract_error_details(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""

    if not isinstance(payload, Mapping):
        return ""

    details: List[str] = []
    seen = set()

    def add_detail(value: Any, prefix: str = "") -> None:
        if value is None:
            return
        text = str(value).strip()
        if not text:
            return
        detail = f"{prefix}{text}" if prefix else text
        if detail in seen:
            return
        seen.add(detail)
        details.append(detail)

    add_detail(payload.get("message") or payload.get("Message"))
    add_detail(payload.get("error"))
    errors = payload.get("errors")
    if isinstance(errors, Mapping):
        for key, value in errors.items():
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(entry) for entry in value)
            add_detail(value, f"{key}: ")
    elif isinstance(errors, (list, tuple)):
        for value in errors:
            add_detail(value)

    return "; ".join(details)


def format_http_error(error: requests.HTTPError) -> str:
    response = getattr(error, "response", None)
    base_message = str(error).strip()

    if response is None:
        return base_message or "HTTP request failed"

    details = _extract_error_details(response)
    if details:
        if base_message:
            return f"{base_message} - {details}"
        status_code = getattr(response, "status_code", "")
        reason = getattr(response, "reason", "") or ""
        status_message = f"HTTP {status_code}" if status_code else "HTTP request failed"
        if reason:
            status_message = f"{status_message} {reason}"
        return f"{status_message} - {details}"

    return base_message or "HTTP request failed"


def _coerce_meta(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_page_payload(
    payload: Any,
    data_key: str = DEFAULT_DATA_KEY,
    *,
    requested_page: int = 1,
    require_meta: bool = True,
    require_ids: bool = True,
) -> PageResult:
    """Validate an endpoint payload and convert it into a :class:`PageResult`."""
    if not isinstance(payload, Mapping):
        raise MalformedResponse(
            f"Expected a JSON object, got {type(payload).__name__}"
        )
    rows = payload.get(data_key)
    if not isinstance(rows, list):
        raise MalformedResponse(f"Response is missing the '{data_key}' row list")
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise MalformedResponse(f"Row {index} is not an object")
        if require_ids and row.get("id") is None:
            raise MalformedResponse(f"Row {index} has no 'id' field")

    meta = payload.get("meta")
    meta = meta if isinstance(meta, Mapping) else {}
    current_page = _coerce_meta(payload.get("current_page", meta.get("current_page")))
    last_page = _coerce_meta(payload.get("last_page", meta.get("last_page")))
    total = _coerce_meta(payload.get("total", meta.get("total")))

    if require_meta:
        missing = [
            name
            for name, value in (
                ("current_page", current_page),
                ("last_page", last_page),
                ("total", total),
            )
            if value is None
        ]
        if missing:
            raise MalformedResponse(
                f"Response is missing pagination keys: {', '.join(missing)}"
            )

    return PageResult(
        rows=tuple(rows),
        current_page=current_page if current_page is not None else requested_page,
        last_page=last_page if last_page is not None else requested_page,
        total=total if total is not None else len(rows),
        raw=payload,
    )


def collection_get(
    url: str,
    params: Optional[Mapping[str, Any]] = None,
    api_token: str = "",
    timeout: Optional[float] = None,
    requested_for: Optional[str] = None,
) -> Any:
    logger.debug("GET %s params=%s requested_for=%s", url, params, requested_for)
    effective_timeout = timeout if timeout is not None else COLLECTION_TIMEOUT
    try:
        response = requests.get(
            url,
            headers=collection_headers(api_token, requested_for),
            params=params or {},
            timeout=effective_timeout,
        )
        response.raise_for_status()
    except requests.Timeout as error:
        raise FetchTimeout(f"Request to {url} timed out after {effective_timeout}s") from error
    except requests.HTTPError as error:
        status_code = getattr(getattr(error, "response", None), "status_code", None)
        raise ServerError(format_http_error(error), status_code=status_code) from error
    except requests.RequestException as error:
        raise NetworkFailure(str(error) or f"Request to {url} failed") from error

    try:
        return response.json()
    except ValueError as error:
        raise MalformedResponse(f"Response from {url} is not valid JSON") from error


class RemoteCollection:
    """Remote collection endpoint reached over HTTP with ``requests``.

    Blocking calls run in a worker thread so the event loop that owns the
    table controllers keeps serving input while a page is in flight.
    """

    def __init__(
        self,
        url: str,
        data_key: str = DEFAULT_DATA_KEY,
        api_token: str = "",
        timeout: float = COLLECTION_TIMEOUT,
    ) -> None:
        self.url = url
        self.data_key = data_key
        self.api_token = api_token
        self.timeout = timeout

    def fetch_page_sync(
        self,
        params: Mapping[str, Any],
        requested_for: Optional[str] = None,
    ) -> PageResult:
        payload = collection_get(
            self.url,
            params,
            api_token=self.api_token,
            timeout=self.timeout,
            requested_for=requested_for,
        )
        exporting = requested_for is not None
        return parse_page_payload(
            payload,
            self.data_key,
            requested_page=_coerce_meta(params.get("page")) or 1,
            require_meta=not exporting,
            require_ids=not exporting,
        )

    async def fetch_page(
        self,
        params: Mapping[str, Any],
        requested_for: Optional[str] = None,
    ) -> PageResult:
        return await asyncio.to_thread(self.fetch_page_sync, params, requested_for)


__all__ = [
    "PageResult",
    "RemoteCollection",
    "collection_get",
    "collection_headers",
    "format_http_error",
    "parse_page_payload",
]
