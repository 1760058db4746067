"""Fetch coordination: debounce, generation tagging, timeout and stale discard."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, Set

from ..collection_client import PageResult
from ..config import COLLECTION_TIMEOUT, SEARCH_DELAY
from ..errors import FetchError, FetchTimeout, NetworkFailure
from .query_state import QueryState

logger = logging.getLogger(__name__)


class CollectionEndpoint(Protocol):
    async def fetch_page(
        self, params: Mapping[str, Any], requested_for: Optional[str] = None
    ) -> PageResult: ...


class FetchTrigger(str, Enum):
    INIT = "init"
    PAGINATION = "pagination"
    SORT = "sort"
    PAGE_SIZE = "page_size"
    SEARCH = "search"
    COLUMN_FILTER = "column_filter"
    RELOAD = "reload"
    RESET = "reset"


DEBOUNCED_TRIGGERS = frozenset({FetchTrigger.SEARCH, FetchTrigger.COLUMN_FILTER})


@dataclass(frozen=True)
class FetchRequest:
    query: QueryState
    generation: int
    trigger: FetchTrigger = FetchTrigger.PAGINATION


@dataclass(frozen=True)
class FetchOutcome:
    request: FetchRequest
    page: Optional[PageResult] = None
    error: Optional[FetchError] = None
    applied: bool = False

    @property
    def stale(self) -> bool:
        return not self.applied


async def fetch_with_deadline(
    endpoint: CollectionEndpoint,
    params: Mapping[str, Any],
    timeout: float,
    requested_for: Optional[str] = None,
) -> PageResult:
    """Call the endpoint, converting every failure into a :class:`FetchError`."""
    try:
        return await asyncio.wait_for(
            endpoint.fetch_page(params, requested_for=requested_for), timeout
        )
    except asyncio.TimeoutError as error:
        raise FetchTimeout(f"Request exceeded the {timeout}s deadline") from error
    except FetchError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as error:
        logger.exception("Unexpected failure calling the collection endpoint")
        raise NetworkFailure(str(error) or type(error).__name__) from error


class FetchCoordinator:
    """Issues retrievals for query snapshots; only the latest generation wins.

    Superseded requests are not interrupted once they reach the network. Their
    results are compared against the current generation on arrival and
    dropped when stale. A pending debounce wait is cancelled when a newer
    schedule arrives, since that request has not been sent yet.
    """

    def __init__(
        self,
        endpoint: CollectionEndpoint,
        *,
        on_loading: Callable[[bool, FetchRequest], None],
        on_success: Callable[[FetchRequest, PageResult], None],
        on_failure: Callable[[FetchRequest, FetchError], None],
        search_delay: float = SEARCH_DELAY,
        timeout: float = COLLECTION_TIMEOUT,
    ) -> None:
        self._endpoint = endpoint
        self._on_loading = on_loading
        self._on_success = on_success
        self._on_failure = on_failure
        self.search_delay = search_delay
        self.timeout = timeout
        self._generation = 0
        self._debounce_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def delay_for(self, trigger: FetchTrigger) -> float:
        return self.search_delay if trigger in DEBOUNCED_TRIGGERS else 0.0

    def schedule(
        self, state: QueryState, trigger: FetchTrigger = FetchTrigger.PAGINATION
    ) -> FetchRequest:
        self._generation += 1
        request = FetchRequest(query=state, generation=self._generation, trigger=trigger)
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
            self._debounce_task = None

        delay = self.delay_for(trigger)
        task = asyncio.get_running_loop().create_task(self._run(request, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if delay > 0:
            self._debounce_task = task
        logger.debug(
            "Scheduled fetch generation=%d trigger=%s delay=%.3fs",
            request.generation,
            trigger.value,
            delay,
        )
        return request

    async def _run(self, request: FetchRequest, delay: float) -> FetchOutcome:
        if delay > 0:
            await asyncio.sleep(delay)
            if self._debounce_task is asyncio.current_task():
                self._debounce_task = None
        return await self.execute(request)

    async def execute(self, request: FetchRequest) -> FetchOutcome:
        if not self.is_current(request.generation):
            logger.debug("Skipping superseded fetch generation=%d", request.generation)
            return FetchOutcome(request=request)

        self._on_loading(True, request)
        try:
            page = await fetch_with_deadline(
                self._endpoint, request.query.to_params(), self.timeout
            )
        except FetchError as error:
            if not self.is_current(request.generation):
                logger.debug(
                    "Discarding stale failure generation=%d (latest=%d): %s",
                    request.generation,
                    self._generation,
                    error,
                )
                return FetchOutcome(request=request, error=error)
            logger.warning(
                "Fetch generation=%d failed (%s): %s",
                request.generation,
                error.kind,
                error,
            )
            self._on_failure(request, error)
            self._on_loading(False, request)
            return FetchOutcome(request=request, error=error, applied=True)

        if not self.is_current(request.generation):
            logger.debug(
                "Discarding stale result generation=%d (latest=%d)",
                request.generation,
                self._generation,
            )
            return FetchOutcome(request=request, page=page)

        self._on_success(request, page)
        self._on_loading(False, request)
        return FetchOutcome(request=request, page=page, applied=True)

    async def wait_idle(self) -> None:
        """Wait until every scheduled fetch, stale or not, has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        self._generation += 1
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._debounce_task = None


__all__ = [
    "CollectionEndpoint",
    "DEBOUNCED_TRIGGERS",
    "FetchCoordinator",
    "FetchOutcome",
    "FetchRequest",
    "FetchTrigger",
    "fetch_with_deadline",
]
