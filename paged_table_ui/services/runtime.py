"""Background event loop hosting table controllers for the HTTP surface."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from ..collection_client import RemoteCollection
from ..config import EXPORT_JOB_TTL, RUNTIME_CALL_TIMEOUT, TableSettings
from ..errors import ExportCancelled, TableError, error_payload
from .columns import Column
from .controller import TableController, TableView
from .export import ExportResult, FallbackStep
from .state_store import InMemoryStateStore, JsonFileStateStore, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionSurface:
    """Render surface that keeps the latest view for polling clients."""

    def __init__(self) -> None:
        self.latest: Optional[TableView] = None
        self.renders = 0
        self.text_entry = False

    def render(self, view: TableView) -> None:
        self.latest = view
        self.renders += 1

    def text_entry_focused(self) -> bool:
        return self.text_entry


@dataclass
class TableSession:
    session_id: str
    controller: TableController
    surface: SessionSurface
    created_at: float = field(default_factory=time.time)


@dataclass
class ExportJobRecord:
    job_id: str
    session_id: str
    export_format: str
    status: str = "pending"
    result: Optional[ExportResult] = None
    error: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    future: Optional["concurrent.futures.Future[Any]"] = field(default=None, repr=False)

    def describe(self, controller: Optional[TableController] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "jobId": self.job_id,
            "tableId": self.session_id,
            "format": self.export_format,
            "status": self.status,
        }
        if self.status == "running" and controller is not None:
            progress = controller.export_progress
            if progress is not None:
                payload["processed"] = progress.processed
                payload["total"] = progress.total
                payload["percent"] = progress.percent
        if self.result is not None:
            payload["rows"] = self.result.rows_written
            payload["truncated"] = self.result.truncated
            payload["fallback"] = (
                self.result.fallback.value if self.result.fallback else None
            )
            payload["fileName"] = self.result.artifact.file_name
            if self.result.notice is not None:
                payload["notice"] = str(self.result.notice)
        if self.error is not None:
            payload["error"] = self.error
        return payload


class TableRuntime:
    """Owns one event loop thread, the open table sessions and export jobs."""

    def __init__(self, store: Optional[StateStore] = None) -> None:
        self.store = store or InMemoryStateStore()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, name="paged-table-loop", daemon=True
        )
        self._thread.start()
        self._lock = threading.RLock()
        self._sessions: Dict[str, TableSession] = {}
        self._jobs: Dict[str, ExportJobRecord] = {}

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def call(self, coro: Awaitable[T], timeout: float = RUNTIME_CALL_TIMEOUT) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)  # type: ignore[arg-type]
        return future.result(timeout)

    def call_sync(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async def runner() -> T:
            return func(*args, **kwargs)

        return self.call(runner())

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self.call_sync(session.controller.close)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)

    # sessions

    def _store_for(self, settings: TableSettings) -> StateStore:
        if settings.state_dir:
            return JsonFileStateStore(settings.state_dir)
        return self.store

    def open_session(
        self,
        settings: TableSettings,
        columns: Sequence[Column],
        table_id: Optional[str] = None,
        wait: bool = False,
    ) -> TableSession:
        session_id = table_id or uuid.uuid4().hex
        surface = SessionSurface()
        endpoint = RemoteCollection(
            settings.url,
            data_key=settings.data_key,
            api_token=settings.api_token,
            timeout=settings.timeout,
        )
        controller = TableController(
            session_id,
            endpoint,
            columns,
            settings,
            surface=surface,
            store=self._store_for(settings),
        )
        controller.export_handler = lambda export_format: self.start_export(
            session_id, export_format
        )
        session = TableSession(session_id=session_id, controller=controller, surface=surface)
        with self._lock:
            previous = self._sessions.pop(session_id, None)
            self._sessions[session_id] = session
        if previous is not None:
            logger.info("Replacing existing table session %s", session_id)
            self.call_sync(previous.controller.close)

        async def start() -> None:
            await controller.start()
            if wait:
                await controller.wait_idle()

        self.call(start())
        logger.info("Opened table session %s for %s", session_id, settings.url)
        return session

    def get_session(self, session_id: str) -> Optional[TableSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def close_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self.call_sync(session.controller.close)
        logger.info("Closed table session %s", session_id)
        return True

    def act(
        self,
        session: TableSession,
        action: Callable[[TableController], T],
        wait: bool = False,
    ) -> T:
        """Run ``action`` on the loop thread, optionally until fetches settle."""

        async def runner() -> T:
            result = action(session.controller)
            if wait:
                await session.controller.wait_idle()
            return result

        return self.call(runner())

    def view(self, session: TableSession) -> TableView:
        return self.call_sync(session.controller.view)

    # export jobs

    def _cleanup_jobs_locked(self) -> None:
        now = time.time()
        expired: List[str] = []
        for job_id, job in self._jobs.items():
            if job.completed_at is not None and (now - job.completed_at) >= EXPORT_JOB_TTL:
                expired.append(job_id)
        for job_id in expired:
            job = self._jobs.pop(job_id)
            if job.result is not None:
                job.result.artifact.discard()

    def get_export_job(self, job_id: str) -> Optional[ExportJobRecord]:
        with self._lock:
            self._cleanup_jobs_locked()
            return self._jobs.get(job_id)

    def start_export(
        self,
        session_id: str,
        export_format: str,
        fallback: Sequence[FallbackStep] = (),
    ) -> ExportJobRecord:
        session = self.get_session(session_id)
        if session is None:
            raise KeyError(session_id)
        job = ExportJobRecord(
            job_id=uuid.uuid4().hex, session_id=session_id, export_format=export_format
        )
        with self._lock:
            self._cleanup_jobs_locked()
            self._jobs[job.job_id] = job
        job.future = asyncio.run_coroutine_threadsafe(
            self._run_export(job, session.controller, fallback), self._loop
        )
        return job

    async def _run_export(
        self,
        job: ExportJobRecord,
        controller: TableController,
        fallback: Sequence[FallbackStep],
    ) -> None:
        job.status = "running"
        try:
            job.result = await controller.export(job.export_format, fallback=fallback)
            job.status = "completed"
        except ExportCancelled:
            job.status = "cancelled"
        except TableError as exc:
            job.status = "failed"
            job.error = error_payload(exc)
        except Exception as exc:
            logger.exception("Export job %s failed", job.job_id)
            job.status = "failed"
            job.error = error_payload(exc)
        finally:
            job.completed_at = time.time()

    def cancel_export(self, job_id: str) -> bool:
        job = self.get_export_job(job_id)
        if job is None or job.status not in {"pending", "running"}:
            return False
        session = self.get_session(job.session_id)
        if session is None:
            return False
        return self.call_sync(session.controller.cancel_export)

    def wait_for_export(
        self, job_id: str, timeout: float = RUNTIME_CALL_TIMEOUT
    ) -> Optional[ExportJobRecord]:
        job = self.get_export_job(job_id)
        if job is None or job.future is None:
            return job
        try:
            job.future.result(timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Timed out waiting for export job %s", job_id)
        return job


__all__ = [
    "ExportJobRecord",
    "SessionSurface",
    "TableRuntime",
    "TableSession",
]
