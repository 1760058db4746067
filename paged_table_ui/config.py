"""Configuration constants and environment bootstrap utilities."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv  # type: ignore[import-not-found]

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent
ENV_PATH = PROJECT_ROOT / ".env"
TEMPLATE_ROOT = PACKAGE_ROOT / "templates"

COLLECTION_TIMEOUT = 30  # seconds
SEARCH_DELAY = 0.3  # seconds
DEFAULT_DATA_KEY = "data"
DEFAULT_PAGE_SIZE = 10
PAGE_SIZE_OPTIONS: Tuple[int, ...] = (10, 25, 50)
DEFAULT_SORT = "id"
DEFAULT_ORDER = "asc"
SORT_ORDERS: Tuple[str, ...] = ("asc", "desc")
SELECT_MODES: Tuple[str, ...] = ("single", "multiple")
PAGINATION_MODES: Tuple[str, ...] = ("detailed", "simple")
PAGINATION_WINDOW = 2

EXPORT_FORMATS: Tuple[str, ...] = ("csv", "workbook", "print", "document")
EXPORT_CHUNK_SIZES: Dict[str, int] = {
    "csv": 50,
    "workbook": 50,
    "print": 100,
    "document": 50,
}
EXPORT_DEFAULT_CHUNK_SIZE = 100
EXPORT_RECORD_CEILING = 100000
EXPORT_FALLBACK_BULK_SIZE = 1000
EXPORT_SPOOL_MAX_BYTES = 5 * 1024 * 1024
EXPORT_DOCUMENT_ROWS_PER_PAGE = 40
EXPORT_JOB_TTL = 1800
EXPORT_FILE_NAMES: Dict[str, str] = {
    "csv": "table-export",
    "workbook": "table-export",
    "print": "table-print",
    "document": "table-document",
}

STATE_KEY_PREFIX = "paged_table_"
STATE_TTL = 60 * 60  # seconds
STATE_STORE_MAX_ENTRIES = 256
RUNTIME_CALL_TIMEOUT = 120  # seconds


def load_environment() -> None:
    """Load variables from the optional project-level ``.env`` file."""
    if ENV_PATH.exists():
        load_dotenv(dotenv_path=ENV_PATH)
    else:
        logging.getLogger(__name__).warning("Missing .env file at %s", ENV_PATH)


@dataclass(frozen=True)
class TableSettings:
    url: str = ""
    api_token: str = ""
    data_key: str = DEFAULT_DATA_KEY
    timeout: float = COLLECTION_TIMEOUT
    search_delay: float = SEARCH_DELAY
    page_size: int = DEFAULT_PAGE_SIZE
    page_size_options: Tuple[int, ...] = PAGE_SIZE_OPTIONS
    default_sort: str = DEFAULT_SORT
    default_order: str = DEFAULT_ORDER
    selectable: bool = True
    select_mode: str = "single"
    keyboard_nav: bool = True
    pagination_mode: str = "detailed"
    save_state: bool = False
    state_ttl: float = STATE_TTL
    state_dir: Optional[str] = None
    persist_column_visibility: bool = False
    chunk_sizes: Mapping[str, int] = field(
        default_factory=lambda: dict(EXPORT_CHUNK_SIZES)
    )
    record_ceiling: int = EXPORT_RECORD_CEILING
    fallback_bulk_size: int = EXPORT_FALLBACK_BULK_SIZE

    def chunk_size_for(self, export_format: str) -> int:
        size = self.chunk_sizes.get(export_format)
        if not size or size <= 0:
            return EXPORT_DEFAULT_CHUNK_SIZE
        return int(size)


def _coerce_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _coerce_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _search_delay(value: Any) -> float:
    # payload durations are milliseconds
    if value is None:
        return SEARCH_DELAY
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return SEARCH_DELAY
    return max(parsed, 0.0) / 1000


def _choice(value: Any, choices: Tuple[str, ...], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in choices else default


def load_settings(overrides: Optional[Mapping[str, Any]] = None) -> TableSettings:
    """Resolve table settings from request overrides, then the environment."""
    data = overrides or {}
    defaults = TableSettings()

    url = str(data.get("url") or os.getenv("TABLE_COLLECTION_URL") or "").strip()
    api_token = str(
        data.get("apiToken") or os.getenv("TABLE_API_TOKEN") or ""
    ).strip()
    data_key = str(
        data.get("dataKey") or os.getenv("TABLE_DATA_KEY") or DEFAULT_DATA_KEY
    ).strip()
    timeout = _coerce_float(
        data.get("timeout") or os.getenv("TABLE_REQUEST_TIMEOUT"), COLLECTION_TIMEOUT
    )
    state_dir = str(data.get("stateDir") or os.getenv("TABLE_STATE_DIR") or "")

    raw_options = data.get("pageSizeOptions")
    page_size_options = defaults.page_size_options
    if isinstance(raw_options, (list, tuple)):
        parsed_options = tuple(
            _coerce_int(option, 0) for option in raw_options if _coerce_int(option, 0)
        )
        if parsed_options:
            page_size_options = parsed_options

    chunk_sizes = dict(EXPORT_CHUNK_SIZES)
    raw_chunks = data.get("chunkSize")
    if isinstance(raw_chunks, Mapping):
        for export_format, size in raw_chunks.items():
            if export_format in EXPORT_FORMATS:
                chunk_sizes[export_format] = _coerce_int(
                    size, chunk_sizes[export_format]
                )

    return replace(
        defaults,
        url=url,
        api_token=api_token,
        data_key=data_key or DEFAULT_DATA_KEY,
        timeout=timeout,
        search_delay=_search_delay(data.get("searchDelay")),
        page_size=_coerce_int(data.get("perPage"), DEFAULT_PAGE_SIZE),
        page_size_options=page_size_options,
        default_sort=str(data.get("defaultSort") or DEFAULT_SORT),
        default_order=_choice(data.get("defaultOrder"), SORT_ORDERS, DEFAULT_ORDER),
        selectable=bool(data.get("selectable", True)),
        select_mode=_choice(data.get("selectMode"), SELECT_MODES, "single"),
        keyboard_nav=bool(data.get("keyboardNav", True)),
        pagination_mode=_choice(
            data.get("paginationType"), PAGINATION_MODES, "detailed"
        ),
        save_state=bool(data.get("saveState", False)),
        state_ttl=_coerce_float(data.get("saveStateDuration"), STATE_TTL * 1000)
        / 1000,
        state_dir=state_dir or None,
        persist_column_visibility=bool(data.get("persistColumnVisibility", False)),
        chunk_sizes=chunk_sizes,
        record_ceiling=_coerce_int(data.get("recordCeiling"), EXPORT_RECORD_CEILING),
        fallback_bulk_size=_coerce_int(
            data.get("fallbackBulkSize"), EXPORT_FALLBACK_BULK_SIZE
        ),
    )
