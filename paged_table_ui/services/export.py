"""Chunked export across the remote collection into a single sink."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from ..config import (
    COLLECTION_TIMEOUT,
    EXPORT_DEFAULT_CHUNK_SIZE,
    EXPORT_FALLBACK_BULK_SIZE,
    EXPORT_RECORD_CEILING,
)
from ..errors import (
    ExportCancelled,
    ExportCeilingReached,
    FallbackExhausted,
    FetchError,
    TableError,
)
from .columns import Column
from .fetch import CollectionEndpoint, fetch_with_deadline
from .query_state import QueryState
from .sinks import ExportArtifact, ExportSink

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


class FallbackStep(str, Enum):
    BULK = "bulk"
    CURRENT_PAGE = "current_page"


@dataclass(frozen=True)
class ExportOptions:
    chunk_size: int = EXPORT_DEFAULT_CHUNK_SIZE
    record_ceiling: int = EXPORT_RECORD_CEILING
    fallback: Tuple[FallbackStep, ...] = ()
    fallback_bulk_size: int = EXPORT_FALLBACK_BULK_SIZE
    probe_total: bool = False

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if self.record_ceiling < 1:
            raise ValueError("record_ceiling must be positive")


@dataclass(frozen=True)
class ExportJob:
    query: QueryState
    export_format: str
    options: ExportOptions

    @property
    def requested_for(self) -> str:
        return f"export-{self.export_format}"

    def page_params(self, page: int, per_page: int) -> Mapping[str, str]:
        # search, sort and filters come from the query; paging is the job's own
        return self.query.export_params(page, per_page)


@dataclass(frozen=True)
class ExportProgress:
    export_format: str
    processed: int
    total: int
    page: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, round(self.processed * 100 / self.total))


@dataclass
class ExportResult:
    artifact: ExportArtifact
    rows_written: int
    rows_fetched: int
    pages_fetched: int
    truncated: bool = False
    notice: Optional[ExportCeilingReached] = None
    fallback: Optional[FallbackStep] = None
    error: Optional[BaseException] = None

    @property
    def complete(self) -> bool:
        return not self.truncated and self.fallback is None


ProgressCallback = Callable[[ExportProgress], None]


def _total_from_payload(payload: Mapping[str, Any]) -> int:
    total = payload.get("total")
    if not total:
        meta = payload.get("meta")
        total = meta.get("total") if isinstance(meta, Mapping) else 0
    try:
        return max(int(total or 0), 0)
    except (TypeError, ValueError):
        return 0


class ExportPipeline:
    """Walks the collection page by page, writing each batch straight to a sink.

    Pages are requested one at a time. The walk ends at the first short
    batch, at the record ceiling, or at a fetch error, which hands over to
    the caller-declared fallback steps. The sink passed to :meth:`run` is
    finalized exactly once whatever happens.
    """

    def __init__(
        self,
        endpoint: CollectionEndpoint,
        columns: Sequence[Column],
        *,
        timeout: float = COLLECTION_TIMEOUT,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._endpoint = endpoint
        self.columns = list(columns)
        self.timeout = timeout
        self._on_progress = on_progress
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise ExportCancelled("Export cancelled by user")

    def _report(self, progress: ExportProgress) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception:
            logger.exception("Export progress callback failed")

    async def probe_total(self, job: ExportJob) -> int:
        """Ask the endpoint for the match count; 0 when it cannot say."""
        try:
            page = await fetch_with_deadline(
                self._endpoint,
                job.page_params(1, 1),
                self.timeout,
                requested_for=job.requested_for,
            )
        except FetchError as error:
            logger.warning(
                "Could not fetch total count, progress will be estimated: %s", error
            )
            return 0
        return _total_from_payload(page.raw)

    async def run(
        self,
        base_query: QueryState,
        sink: ExportSink,
        options: Optional[ExportOptions] = None,
        current_rows: Sequence[Row] = (),
    ) -> ExportResult:
        options = options or ExportOptions()
        job = ExportJob(query=base_query, export_format=sink.export_format, options=options)
        self._cancelled = False
        logger.info(
            "Starting %s export chunk_size=%d ceiling=%d fallback=%s",
            job.export_format,
            options.chunk_size,
            options.record_ceiling,
            [step.value for step in options.fallback],
        )

        try:
            total = await self.probe_total(job) if options.probe_total else 0
            self._check_cancelled()
            sink.open(self.columns)
            result = await self._walk(job, sink, total)
        except FetchError as error:
            if not sink.finalized:
                sink.abort()
            if self._cancelled:
                raise ExportCancelled("Export cancelled by user") from error
            logger.warning("%s export failed: %s", job.export_format, error)
            return await self._fallback(job, sink, error, current_rows)
        except BaseException:
            if not sink.finalized:
                sink.abort()
            raise

        logger.info(
            "Finished %s export rows=%d pages=%d truncated=%s",
            job.export_format,
            result.rows_written,
            result.pages_fetched,
            result.truncated,
        )
        return result

    async def _walk(self, job: ExportJob, sink: ExportSink, total: int) -> ExportResult:
        chunk_size = job.options.chunk_size
        ceiling = job.options.record_ceiling
        page_number = 1
        written = fetched = pages = 0
        truncated = False

        while True:
            self._check_cancelled()
            page = await fetch_with_deadline(
                self._endpoint,
                job.page_params(page_number, chunk_size),
                self.timeout,
                requested_for=job.requested_for,
            )
            self._check_cancelled()
            pages += 1
            batch = page.rows
            fetched += len(batch)
            accepted = batch[: max(ceiling - written, 0)]
            written += sink.write_rows(accepted)
            logger.debug(
                "Export chunk page=%d fetched=%d written=%d",
                page_number,
                len(batch),
                written,
            )
            self._report(
                ExportProgress(job.export_format, written, total or ceiling, page_number)
            )

            if len(batch) < chunk_size and len(accepted) == len(batch):
                break
            if written >= ceiling:
                truncated = True
                break
            page_number += 1

        artifact = sink.close()
        notice = ExportCeilingReached(ceiling, written) if truncated else None
        if notice is not None:
            logger.warning("%s", notice)
        return ExportResult(
            artifact=artifact,
            rows_written=written,
            rows_fetched=fetched,
            pages_fetched=pages,
            truncated=truncated,
            notice=notice,
        )

    async def _fallback_rows(
        self, job: ExportJob, step: FallbackStep, current_rows: Sequence[Row]
    ) -> Tuple[Sequence[Row], int]:
        if step is FallbackStep.BULK:
            page = await fetch_with_deadline(
                self._endpoint,
                job.page_params(1, job.options.fallback_bulk_size),
                self.timeout,
                requested_for=job.requested_for,
            )
            return page.rows, 1
        if not current_rows:
            raise TableError("No rows are currently displayed")
        return current_rows, 0

    async def _fallback(
        self,
        job: ExportJob,
        failed_sink: ExportSink,
        primary: FetchError,
        current_rows: Sequence[Row],
    ) -> ExportResult:
        errors: List[BaseException] = []
        ceiling = job.options.record_ceiling
        for step in job.options.fallback:
            self._check_cancelled()
            try:
                rows, pages = await self._fallback_rows(job, step, current_rows)
            except TableError as error:
                logger.warning("Fallback %s unavailable: %s", step.value, error)
                errors.append(error)
                continue

            sink = failed_sink.fresh()
            try:
                sink.open(self.columns)
                written = sink.write_rows(rows[:ceiling])
                artifact = sink.close()
            except Exception as error:
                logger.exception("Fallback %s failed writing the export", step.value)
                if not sink.finalized:
                    sink.abort()
                errors.append(error)
                continue

            truncated = len(rows) > ceiling
            logger.info(
                "%s export completed with fallback %s (%d rows)",
                job.export_format,
                step.value,
                written,
            )
            return ExportResult(
                artifact=artifact,
                rows_written=written,
                rows_fetched=len(rows),
                pages_fetched=pages,
                truncated=truncated,
                notice=ExportCeilingReached(ceiling, written) if truncated else None,
                fallback=step,
                error=primary,
            )
        raise FallbackExhausted(primary, errors)


__all__ = [
    "ExportJob",
    "ExportOptions",
    "ExportPipeline",
    "ExportProgress",
    "ExportResult",
    "FallbackStep",
]
