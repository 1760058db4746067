"""Error kinds raised and reported by the table engine."""

from __future__ import annotations

from typing import Optional, Sequence


class TableError(RuntimeError):
    """Base class for table engine errors."""


class FetchError(TableError):
    """A retrieval from the remote collection endpoint failed."""

    kind = "fetch"


class NetworkFailure(FetchError):
    """Transport-level failure talking to the endpoint."""

    kind = "network"


class FetchTimeout(FetchError):
    """The endpoint did not answer before the deadline."""

    kind = "timeout"


class ServerError(FetchError):
    """The endpoint answered with a non-success status."""

    kind = "server"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(FetchError):
    """The endpoint payload is missing expected keys."""

    kind = "malformed"


class ExportCeilingReached(TableError):
    """Truncation notice attached to an export result; never raised."""

    kind = "ceiling"

    def __init__(self, ceiling: int, rows_written: int) -> None:
        super().__init__(
            f"Export stopped at the {ceiling} record ceiling "
            f"({rows_written} rows written)"
        )
        self.ceiling = ceiling
        self.rows_written = rows_written


class ExportCancelled(TableError):
    """The export was cancelled by the user."""

    kind = "cancelled"


class ExportInProgress(TableError):
    """Another export is already running for the table."""

    kind = "busy"


class FallbackExhausted(TableError):
    """The primary export and every declared fallback failed."""

    kind = "fallback_exhausted"

    def __init__(
        self, primary: BaseException, fallback_errors: Sequence[BaseException] = ()
    ) -> None:
        attempts = "; ".join(str(error) for error in fallback_errors) or "none"
        super().__init__(
            f"Export failed ({primary}); fallback attempts failed: {attempts}"
        )
        self.primary = primary
        self.fallback_errors = tuple(fallback_errors)


def error_payload(error: BaseException) -> dict:
    payload = {"kind": getattr(error, "kind", "unknown"), "message": str(error)}
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        payload["status"] = status_code
    return payload
