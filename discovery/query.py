"""Stale-while-revalidate query cache.

``QueryClient`` is the process-wide cache. It is passed explicitly to whoever
needs it, so tests can build an isolated client per test. ``QueryObserver`` binds
one query key to a fetch function and a set of ``QueryOptions``; the factories in
``discovery.schools`` and ``discovery.rooms`` build observers for each query kind.

Every fetch writes only to the entry of the key it was started for, so a late
response for old parameters can never overwrite the entry for new ones.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Iterable, List, Optional, Set, TypeVar

from common.cache import RetentionCache

from .keys import QueryKey, key_matches

logger = logging.getLogger(__name__)

T = TypeVar("T")
Fetcher = Callable[[], Awaitable[T]]

IDLE = "idle"
LOADING = "loading"
SUCCESS = "success"
ERROR = "error"


def default_retry_delay(attempt: int) -> float:
    """Exponential backoff: 1s, 2s, 4s ... capped at 10s."""

    return min(1.0 * 2**attempt, 10.0)


@dataclass(frozen=True)
class QueryOptions:
    enabled: bool = True
    stale_time: float = 0.0
    gc_time: float = 300.0
    retry: int = 2
    retry_delay: Callable[[int], float] = default_retry_delay
    refetch_on_window_focus: bool = True
    refetch_interval: Optional[float] = None

    def replace(self, **changes: Any) -> "QueryOptions":
        return dataclasses.replace(self, **{key: value for key, value in changes.items() if value is not None})


@dataclass(frozen=True)
class QueryResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[BaseException] = None
    status: str = IDLE
    is_fetching: bool = False
    is_stale: bool = False
    data_updated_at: Optional[float] = None
    failure_count: int = 0

    @property
    def is_loading(self) -> bool:
        return self.status == LOADING

    @property
    def is_error(self) -> bool:
        return self.status == ERROR

    @property
    def is_success(self) -> bool:
        return self.status == SUCCESS

    @property
    def is_idle(self) -> bool:
        return self.status == IDLE


@dataclass(eq=False)
class QueryEntry:
    key: QueryKey
    gc_time: float
    data: Any = None
    error: Optional[BaseException] = None
    status: str = IDLE
    data_updated_at: Optional[float] = None
    invalidated: bool = False
    generation: int = 0
    failure_count: int = 0
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def has_data(self) -> bool:
        return self.data_updated_at is not None

    @property
    def is_fetching(self) -> bool:
        return self.task is not None and not self.task.done()


class QueryClient:
    def __init__(self, clock: Callable[[], float] = time.monotonic, maxsize: int = 1024) -> None:
        self._clock = clock
        self._entries: RetentionCache[QueryKey, QueryEntry] = RetentionCache(
            retention=lambda entry: entry.gc_time, maxsize=maxsize, timer=clock
        )
        self._observers: Set["QueryObserver[Any]"] = set()

    # Reads

    def _is_stale(self, entry: QueryEntry, stale_time: float) -> bool:
        if entry.invalidated or entry.data_updated_at is None:
            return True
        return self._clock() - entry.data_updated_at >= stale_time

    def _snapshot(self, entry: Optional[QueryEntry], stale_time: float = 0.0) -> QueryResult[Any]:
        if entry is None:
            return QueryResult()
        return QueryResult(
            data=entry.data,
            error=entry.error,
            status=entry.status,
            is_fetching=entry.is_fetching,
            is_stale=self._is_stale(entry, stale_time),
            data_updated_at=entry.data_updated_at,
            failure_count=entry.failure_count,
        )

    def get_query_state(self, key: QueryKey, stale_time: float = 0.0) -> QueryResult[Any]:
        return self._snapshot(self._entries.get(key), stale_time)

    def get_query_data(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.data if entry is not None else None

    def set_query_data(self, key: QueryKey, data: Any, gc_time: float = 300.0) -> None:
        entry = self._entries.get(key) or QueryEntry(key=key, gc_time=gc_time)
        entry.data = data
        entry.error = None
        entry.status = SUCCESS
        entry.data_updated_at = self._clock()
        entry.invalidated = False
        self._entries.set(key, entry)

    def keys(self, prefix: Iterable[Hashable] = ()) -> List[QueryKey]:
        prefix = tuple(prefix)
        return [key for key in self._entries.keys() if key_matches(key, prefix)]

    # Fetching

    def _entry_for(self, key: QueryKey, options: QueryOptions) -> QueryEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = QueryEntry(key=key, gc_time=options.gc_time)
        else:
            entry.gc_time = max(entry.gc_time, options.gc_time)
        self._entries.set(key, entry)
        return entry

    def _start_fetch(self, entry: QueryEntry, fetcher: Fetcher[Any], options: QueryOptions) -> "asyncio.Task[None]":
        if entry.task is not None and not entry.task.done():
            return entry.task
        if not entry.has_data:
            entry.status = LOADING
        entry.task = asyncio.get_running_loop().create_task(self._run(entry, fetcher, options))
        return entry.task

    async def _run(self, entry: QueryEntry, fetcher: Fetcher[Any], options: QueryOptions) -> None:
        attempt = 0
        generation = entry.generation
        try:
            while True:
                try:
                    data = await fetcher()
                except Exception as exc:
                    entry.failure_count += 1
                    if getattr(exc, "retryable", False) and attempt < options.retry:
                        delay = options.retry_delay(attempt)
                        attempt += 1
                        logger.info("Retrying query %r in %.1fs (attempt %d): %s", entry.key, delay, attempt, exc)
                        await asyncio.sleep(delay)
                        continue
                    logger.warning("Query %r failed: %s", entry.key, exc)
                    entry.error = exc
                    entry.status = ERROR
                    return
                if entry.generation != generation:
                    # Invalidated mid-flight; this response may predate the change.
                    logger.debug("Query %r invalidated while fetching, fetching again", entry.key)
                    generation = entry.generation
                    attempt = 0
                    continue
                entry.data = data
                entry.error = None
                entry.status = SUCCESS
                entry.data_updated_at = self._clock()
                entry.invalidated = False
                entry.failure_count = 0
                return
        finally:
            entry.task = None
            # Entries removed while fetching stay removed.
            if self._entries.get(entry.key) is entry:
                self._entries.set(entry.key, entry)

    async def fetch_query(self, key: QueryKey, fetcher: Fetcher[T], options: QueryOptions) -> QueryResult[T]:
        """Serve fresh data from cache, revalidate stale data in the background,
        and wait for the network only when there is nothing to serve."""

        entry = self._entry_for(key, options)
        if entry.has_data:
            if self._is_stale(entry, options.stale_time):
                self._start_fetch(entry, fetcher, options)
            return self._snapshot(entry, options.stale_time)
        await asyncio.shield(self._start_fetch(entry, fetcher, options))
        return self._snapshot(entry, options.stale_time)

    async def refetch_query(self, key: QueryKey, fetcher: Fetcher[T], options: QueryOptions) -> QueryResult[T]:
        entry = self._entry_for(key, options)
        await asyncio.shield(self._start_fetch(entry, fetcher, options))
        return self._snapshot(entry, options.stale_time)

    # Invalidation

    async def invalidate_queries(self, prefix: Iterable[Hashable] = ()) -> None:
        """Mark matching entries stale and refetch the ones somebody is watching."""

        prefix = tuple(prefix)
        for key in self.keys(prefix):
            entry = self._entries.get(key)
            if entry is not None:
                entry.invalidated = True
                entry.generation += 1
        watched: Dict[QueryKey, QueryObserver[Any]] = {}
        for observer in self._observers:
            if observer.enabled and key_matches(observer.key, prefix):
                watched.setdefault(observer.key, observer)
        if watched:
            logger.debug("Refetching %d watched queries under %r", len(watched), prefix)
            await asyncio.gather(*(observer.refetch() for observer in watched.values()))

    def remove_queries(self, prefix: Iterable[Hashable] = ()) -> None:
        for key in self.keys(prefix):
            self._entries.pop(key)

    async def on_window_focus(self) -> None:
        """Refetch stale watched queries whose options ask for it."""

        due: Dict[QueryKey, QueryObserver[Any]] = {}
        for observer in self._observers:
            if not observer.enabled or not observer.options.refetch_on_window_focus:
                continue
            if self.get_query_state(observer.key, observer.options.stale_time).is_stale:
                due.setdefault(observer.key, observer)
        await asyncio.gather(*(observer.refetch() for observer in due.values()))

    def clear(self) -> None:
        self._entries.clear()

    def _subscribe(self, observer: "QueryObserver[Any]") -> None:
        self._observers.add(observer)

    def _unsubscribe(self, observer: "QueryObserver[Any]") -> None:
        self._observers.discard(observer)


class QueryObserver(Generic[T]):
    """A query key bound to its fetch function, the Python face of a query hook.

    ``fetcher`` is ``None`` when the caller passed no parameters; the observer is
    then disabled and reports an idle, not-loading state.
    """

    def __init__(
        self,
        client: QueryClient,
        key: QueryKey,
        fetcher: Optional[Fetcher[T]],
        options: QueryOptions,
    ) -> None:
        self.client = client
        self.key = key
        self.options = options
        self._fetcher = fetcher
        self._poll_task: Optional["asyncio.Task[None]"] = None

    @property
    def enabled(self) -> bool:
        return self.options.enabled and self._fetcher is not None

    @property
    def result(self) -> QueryResult[T]:
        if self._fetcher is None:
            return QueryResult()
        return self.client.get_query_state(self.key, self.options.stale_time)

    @property
    def data(self) -> Optional[T]:
        return self.result.data

    @property
    def error(self) -> Optional[BaseException]:
        return self.result.error

    @property
    def is_loading(self) -> bool:
        return self.result.is_loading

    @property
    def is_fetching(self) -> bool:
        return self.result.is_fetching

    async def fetch(self) -> QueryResult[T]:
        if not self.enabled or self._fetcher is None:
            return self.result
        return await self.client.fetch_query(self.key, self._fetcher, self.options)

    async def refetch(self) -> QueryResult[T]:
        if self._fetcher is None:
            return self.result
        return await self.client.refetch_query(self.key, self._fetcher, self.options)

    def subscribe(self) -> None:
        self.client._subscribe(self)
        if self.enabled and self.options.refetch_interval and self._poll_task is None:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll(self.options.refetch_interval))

    def unsubscribe(self) -> None:
        self.client._unsubscribe(self)
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.refetch()

    async def __aenter__(self) -> "QueryObserver[T]":
        self.subscribe()
        await self.fetch()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unsubscribe()
