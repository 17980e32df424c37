"""Debounced free-text school search."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from common.config import get_settings

from .backend import DiscoveryBackend
from .keys import search_schools_keys
from .query import QueryClient, QueryObserver, QueryResult
from .schemas import SearchSchoolsParams, SearchSchoolsResult
from .schools import SCHOOL_QUERY_OPTIONS, search_schools

logger = logging.getLogger(__name__)


class SchoolSearch:
    """Keeps the typed value and the debounced value apart.

    ``search`` restarts a single debounce timer; only when it fires does the
    debounced value change and a query get issued. ``search_immediate`` flushes
    right away. A query runs when the debounced value is at least
    ``min_query_length`` long, or when the base parameters carry a location
    (browsing nearby schools with an empty query).
    """

    def __init__(
        self,
        client: QueryClient,
        backend: DiscoveryBackend,
        base_params: Optional[SearchSchoolsParams] = None,
        *,
        enabled: bool = True,
        debounce_ms: Optional[int] = None,
        min_query_length: Optional[int] = None,
        **overrides: Any,
    ) -> None:
        settings = get_settings()
        self.client = client
        self.backend = backend
        self.base_params = base_params or SearchSchoolsParams()
        self.enabled = enabled
        self.debounce_ms = settings.search_debounce_ms if debounce_ms is None else debounce_ms
        self.min_query_length = settings.search_min_query_length if min_query_length is None else min_query_length
        self.options = SCHOOL_QUERY_OPTIONS.replace(**overrides)
        self.search_query = ""
        self.debounced_query = ""
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: Optional["asyncio.Task[Any]"] = None
        self.observer = self._build_observer()

    @property
    def params(self) -> SearchSchoolsParams:
        return self.base_params.model_copy(update={"query": self.debounced_query})

    @property
    def should_fetch(self) -> bool:
        has_location = self.base_params.latitude is not None and self.base_params.longitude is not None
        return self.enabled and (len(self.debounced_query) >= self.min_query_length or has_location)

    @property
    def is_searching(self) -> bool:
        return self.search_query != self.debounced_query

    @property
    def result(self) -> QueryResult[SearchSchoolsResult]:
        return self.observer.result

    @property
    def data(self) -> Optional[SearchSchoolsResult]:
        return self.result.data

    @property
    def error(self) -> Optional[BaseException]:
        return self.result.error

    @property
    def is_loading(self) -> bool:
        return self.result.is_loading

    def _build_observer(self) -> QueryObserver[SearchSchoolsResult]:
        params = self.params
        return QueryObserver(
            self.client,
            search_schools_keys.search(params),
            lambda: search_schools(self.backend, params),
            self.options.replace(enabled=self.should_fetch),
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _apply(self, query: str) -> None:
        self._timer = None
        if query == self.debounced_query:
            return
        self.debounced_query = query
        self.observer = self._build_observer()
        if self.observer.enabled:
            logger.debug("Searching schools for %r", query)
            self._pending = asyncio.get_running_loop().create_task(self.observer.fetch())

    def search(self, query: str) -> None:
        self.search_query = query
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.debounce_ms / 1000, self._apply, query)

    def search_immediate(self, query: str) -> None:
        self._cancel_timer()
        self.search_query = query
        self._apply(query)

    def clear_search(self) -> None:
        self._cancel_timer()
        self.search_query = ""
        self._apply("")

    async def wait(self) -> QueryResult[SearchSchoolsResult]:
        """Wait for the query issued by the last debounced change, if any."""

        if self._pending is not None:
            await self._pending
        return self.result

    async def aclose(self) -> None:
        self._cancel_timer()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    async def __aenter__(self) -> "SchoolSearch":
        if self.observer.enabled:
            await self.observer.fetch()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def use_search_schools(
    client: QueryClient,
    backend: DiscoveryBackend,
    base_params: Optional[SearchSchoolsParams] = None,
    **options: Any,
) -> SchoolSearch:
    return SchoolSearch(client, backend, base_params, **options)
