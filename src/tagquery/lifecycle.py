"""Lifecycle futures and the endpoint callbacks that consume them.

Two families of callbacks may be defined on an endpoint:

- ``on_query_started(arg, QueryLifecycleApi)`` runs once per attempt. It is
  scheduled before the request task, so it always observes the attempt
  before the transport is called. ``query_fulfilled`` settles with the
  attempt's own outcome.
- ``on_cache_entry_added(arg, CacheLifecycleApi)`` runs once per cache
  entry. ``cache_data_loaded`` settles with the first cached value and
  ``cache_entry_removed`` when the entry goes away.

Futures are created here and only settled from store transitions via the
api; user callbacks only ever await them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tagquery.endpoints import EndpointDefinition
from tagquery.errors import EntryRemovedError, QueryRejected
from tagquery.patches import PatchCollection
from tagquery.store import EntryKind, StoreEvent
from tagquery.types import QueryState

if TYPE_CHECKING:
    from tagquery.api import Api

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueryFulfilled:
    """Success value of ``query_fulfilled``."""

    data: Any
    meta: Any = None


@dataclass(frozen=True, slots=True, kw_only=True)
class QueryLifecycleApi:
    api: Api
    request_id: str
    query_fulfilled: asyncio.Future[QueryFulfilled]
    get_cache_entry: Callable[[], QueryState[Any]]
    # None for mutations
    update_cached_data: Callable[[Callable[[Any], Any]], PatchCollection] | None = None
    extra: Any = None


@dataclass(frozen=True, slots=True, kw_only=True)
class CacheLifecycleApi:
    api: Api
    request_id: str | None
    cache_data_loaded: asyncio.Future[QueryFulfilled]
    cache_entry_removed: asyncio.Future[None]
    get_cache_entry: Callable[[], QueryState[Any]]
    update_cached_data: Callable[[Callable[[Any], Any]], PatchCollection] | None = None
    extra: Any = None


@dataclass(slots=True)
class _EntryFutures:
    data_loaded: asyncio.Future[QueryFulfilled]
    removed: asyncio.Future[None]


def _mark_retrieved(future: asyncio.Future[Any]) -> None:
    # a lifecycle future nobody awaited must not warn when it fails
    if not future.cancelled():
        future.exception()


def _new_future() -> asyncio.Future[Any]:
    future = asyncio.get_running_loop().create_future()
    future.add_done_callback(_mark_retrieved)
    return future


@dataclass
class LifecycleDispatcher:
    """Creates, settles and hands out lifecycle futures."""

    api: Api
    _started: dict[str, asyncio.Future[QueryFulfilled]] = field(default_factory=dict)
    _entries: dict[tuple[EntryKind, str], _EntryFutures] = field(default_factory=dict)
    _tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    # -------------------------------------------------------------------------
    # Per-attempt
    # -------------------------------------------------------------------------

    def query_started(
        self,
        definition: EndpointDefinition,
        arg: Any,
        request_id: str,
        *,
        get_cache_entry: Callable[[], QueryState[Any]],
        update_cached_data: Callable[[Callable[[Any], Any]], PatchCollection] | None,
    ) -> None:
        if definition.on_query_started is None:
            return
        future: asyncio.Future[QueryFulfilled] = _new_future()
        self._started[request_id] = future
        lifecycle = QueryLifecycleApi(
            api=self.api,
            request_id=request_id,
            query_fulfilled=future,
            get_cache_entry=get_cache_entry,
            update_cached_data=update_cached_data,
            extra=self.api.extra,
        )
        self._run(definition.on_query_started, arg, lifecycle)

    def query_settled(
        self,
        request_id: str,
        *,
        data: Any = None,
        meta: Any = None,
        error: Any = None,
        failed: bool = False,
        is_unhandled_error: bool = False,
    ) -> None:
        future = self._started.pop(request_id, None)
        if future is None or future.done():
            return
        if failed:
            future.set_exception(
                QueryRejected(error, meta, is_unhandled_error=is_unhandled_error)
            )
        else:
            future.set_result(QueryFulfilled(data, meta))

    # -------------------------------------------------------------------------
    # Per-entry, driven by store events
    # -------------------------------------------------------------------------

    def handle_event(
        self, event: StoreEvent, definition: EndpointDefinition | None
    ) -> None:
        entry_id = (event.kind, event.key)
        if event.type == "added":
            if definition is None or definition.on_cache_entry_added is None:
                return
            futures = _EntryFutures(_new_future(), _new_future())
            self._entries[entry_id] = futures
            lifecycle = CacheLifecycleApi(
                api=self.api,
                request_id=event.request_id,
                cache_data_loaded=futures.data_loaded,
                cache_entry_removed=futures.removed,
                get_cache_entry=self._entry_getter(event),
                update_cached_data=self._updater(event),
                extra=self.api.extra,
            )
            self._run(definition.on_cache_entry_added, event.arg, lifecycle)
        elif event.type == "data_loaded":
            futures = self._entries.get(entry_id)
            if futures is not None and not futures.data_loaded.done():
                futures.data_loaded.set_result(QueryFulfilled(event.data))
        elif event.type == "removed":
            futures = self._entries.pop(entry_id, None)
            if futures is None:
                return
            if not futures.data_loaded.done():
                futures.data_loaded.set_exception(EntryRemovedError())
            if not futures.removed.done():
                futures.removed.set_result(None)

    def _entry_getter(self, event: StoreEvent) -> Callable[[], QueryState[Any]]:
        if event.kind == "mutation":
            return lambda: self.api.select_mutation(event.key)
        return lambda: self.api.select_by_key(event.key)

    def _updater(
        self, event: StoreEvent
    ) -> Callable[[Callable[[Any], Any]], PatchCollection] | None:
        if event.kind == "mutation":
            return None

        def update(recipe: Callable[[Any], Any]) -> PatchCollection:
            return self.api.update_by_key(event.key, recipe)

        return update

    # -------------------------------------------------------------------------
    # Callback execution
    # -------------------------------------------------------------------------

    def _run(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.warning("Lifecycle callback %r raised", callback, exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, (QueryRejected, EntryRemovedError)):
            # the callback awaited a future that failed and did not catch it
            logger.debug("Lifecycle callback ended with %r", exc)
            return
        logger.warning("Lifecycle callback raised", exc_info=exc)

    async def drain(self) -> None:
        """Wait for running callbacks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for future in self._started.values():
            if not future.done():
                future.cancel()
        self._started.clear()


__all__ = [
    "CacheLifecycleApi",
    "LifecycleDispatcher",
    "QueryFulfilled",
    "QueryLifecycleApi",
]
