"""The cache store: entry records and their state transitions.

All writes to :class:`~tagquery.types.CacheEntry` and
:class:`~tagquery.types.MutationEntry` go through the methods below. They are
plain synchronous methods, so on the event loop each transition is atomic
with respect to every other transition and to reads of the tag index.

Query entry transitions::

    UNINITIALIZED -> PENDING -> FULFILLED | REJECTED
    FULFILLED | REJECTED -> PENDING          (refetch)
    PENDING -> PENDING                       (a newer attempt supersedes)
    PENDING -> previous settled status       (abort / fatal schema failure)
    any -> removed

``succeed``/``fail``/``abort`` only apply when the given request id is
still the entry's current one; results of superseded attempts are dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Literal

from tagquery.tags import Tag, TagIndex
from tagquery.types import CacheEntry, MutationEntry, PageDirection, QueryStatus
from tagquery.utils import new_request_id, now_ms

logger = logging.getLogger(__name__)

EntryKind = Literal["query", "mutation"]
EventType = Literal["added", "data_loaded", "removed"]


@dataclass(frozen=True, slots=True)
class StoreEvent:
    """Entry-level lifecycle signal emitted by the store."""

    type: EventType
    kind: EntryKind
    key: str
    endpoint_name: str
    arg: Any = None
    request_id: str | None = None
    data: Any = None


class CacheStore:
    """Single-writer container for query and mutation entries."""

    def __init__(
        self, on_event: Callable[[StoreEvent], None] | None = None
    ) -> None:
        self.queries: dict[str, CacheEntry] = {}
        self.mutations: dict[str, MutationEntry] = {}
        self.tags = TagIndex()
        self._on_event = on_event

    def _emit(self, event: StoreEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    # -------------------------------------------------------------------------
    # Query transitions
    # -------------------------------------------------------------------------

    def start(
        self,
        key: str,
        request_id: str,
        *,
        endpoint_name: str,
        arg: Any,
        direction: PageDirection | None = None,
    ) -> CacheEntry:
        """Make ``request_id`` the current attempt and mark the entry pending."""
        entry = self.queries.get(key)
        created = entry is None
        if entry is None:
            entry = CacheEntry(
                query_cache_key=key, endpoint_name=endpoint_name, original_args=arg
            )
            entry.settled_args = arg
            self.queries[key] = entry
        elif entry.status is QueryStatus.PENDING:
            logger.debug(
                "%s: attempt %s supersedes %s", key, request_id, entry.request_id
            )
        else:
            entry.settled_status = entry.status
            entry.settled_args = entry.original_args
            entry.settled_request_id = entry.request_id
            entry.settled_started_timestamp = entry.started_timestamp

        entry.status = QueryStatus.PENDING
        entry.request_id = request_id
        entry.original_args = arg
        entry.started_timestamp = now_ms()
        entry.direction = direction
        logger.debug("%s: pending (request %s)", key, request_id)

        if created:
            self._emit(
                StoreEvent("added", "query", key, endpoint_name, arg, request_id)
            )
        return entry

    def is_current(self, key: str, request_id: str) -> bool:
        entry = self.queries.get(key)
        return entry is not None and entry.request_id == request_id

    def succeed(
        self,
        key: str,
        request_id: str,
        data: Any,
        *,
        merge: Callable[[Any], Any] | None = None,
        provides: Callable[[Any], Iterable[Tag]] | None = None,
    ) -> CacheEntry | None:
        """Store a successful result if ``request_id`` is still current.

        ``merge`` receives the currently cached data (``None`` if there is
        none) and returns the value to store; ``provides`` maps the stored
        value to the tags this entry now provides.
        """
        entry = self.queries.get(key)
        if entry is None or entry.request_id != request_id:
            logger.debug(
                "%s: dropping result of superseded request %s", key, request_id
            )
            return None

        first_value = not entry.has_data
        if merge is not None:
            data = merge(entry.data if entry.has_data else None)
        tags = list(provides(data)) if provides is not None else []
        entry.data = data
        entry.error = None
        entry.status = QueryStatus.FULFILLED
        entry.settled_status = QueryStatus.FULFILLED
        entry.fulfilled_timestamp = now_ms()
        entry.is_invalidated = False
        entry.direction = None
        self.tags.provide(key, tags)
        logger.debug("%s: fulfilled (request %s)", key, request_id)

        if first_value:
            self._emit(
                StoreEvent(
                    "data_loaded",
                    "query",
                    key,
                    entry.endpoint_name,
                    entry.original_args,
                    request_id,
                    data,
                )
            )
        return entry

    def fail(self, key: str, request_id: str, error: Any) -> CacheEntry | None:
        """Record a failed attempt; previously cached data is kept."""
        entry = self.queries.get(key)
        if entry is None or entry.request_id != request_id:
            logger.debug(
                "%s: dropping error of superseded request %s", key, request_id
            )
            return None
        entry.error = error
        entry.status = QueryStatus.REJECTED
        entry.settled_status = QueryStatus.REJECTED
        entry.direction = None
        logger.debug("%s: rejected (request %s): %r", key, request_id, error)
        return entry

    def abort(self, key: str, request_id: str) -> CacheEntry | None:
        """Undo ``start`` for an attempt whose outcome must stay invisible.

        The entry returns to what it held before the first unsettled
        ``start``: status, arguments, request id and start time.
        """
        entry = self.queries.get(key)
        if entry is None or entry.request_id != request_id:
            return None
        entry.status = entry.settled_status
        entry.original_args = entry.settled_args
        entry.request_id = entry.settled_request_id
        entry.started_timestamp = entry.settled_started_timestamp
        entry.direction = None
        logger.debug(
            "%s: restored to %s (request %s)", key, entry.status.value, request_id
        )
        return entry

    def invalidate(self, key: str) -> bool:
        """Mark stale without dropping data."""
        entry = self.queries.get(key)
        if entry is None:
            return False
        entry.is_invalidated = True
        logger.debug("%s: invalidated", key)
        return True

    def upsert(
        self,
        key: str,
        data: Any,
        *,
        endpoint_name: str,
        arg: Any,
        provides: Callable[[Any], Iterable[Tag]] | None = None,
    ) -> CacheEntry:
        """Store ``data`` as if a request had just fulfilled.

        Any running attempt is superseded and its result will be dropped.
        """
        request_id = new_request_id()
        self.start(key, request_id, endpoint_name=endpoint_name, arg=arg)
        try:
            self.succeed(key, request_id, data, provides=provides)
        except Exception:
            self.abort(key, request_id)
            raise
        return self.queries[key]

    def update_data(self, key: str, data: Any) -> bool:
        """Replace cached data in place (optimistic and manual updates)."""
        entry = self.queries.get(key)
        if entry is None or not entry.has_data:
            return False
        entry.data = data
        return True

    def remove(self, key: str) -> CacheEntry | None:
        """Terminal: drop the entry and vacate its tags."""
        entry = self.queries.pop(key, None)
        self.tags.remove_key(key)
        if entry is not None:
            logger.debug("%s: removed", key)
            self._emit(
                StoreEvent(
                    "removed", "query", key, entry.endpoint_name, entry.original_args
                )
            )
        return entry

    # -------------------------------------------------------------------------
    # Mutation transitions
    # -------------------------------------------------------------------------

    def mutation_start(
        self, key: str, request_id: str, *, endpoint_name: str, arg: Any
    ) -> MutationEntry:
        """Track a new mutation attempt. A fixed key is taken over by the newest."""
        previous = self.mutations.get(key)
        if previous is not None:
            self.remove_mutation(key)
        entry = MutationEntry(
            key=key,
            endpoint_name=endpoint_name,
            original_args=arg,
            request_id=request_id,
            status=QueryStatus.PENDING,
            started_timestamp=now_ms(),
        )
        self.mutations[key] = entry
        self._emit(StoreEvent("added", "mutation", key, endpoint_name, arg, request_id))
        return entry

    def mutation_settle(
        self,
        key: str,
        request_id: str,
        status: QueryStatus,
        *,
        data: Any = None,
        error: Any = None,
    ) -> MutationEntry | None:
        entry = self.mutations.get(key)
        if entry is None or entry.request_id != request_id:
            return None
        entry.status = status
        if status is QueryStatus.FULFILLED:
            entry.data = data
            entry.error = None
            entry.fulfilled_timestamp = now_ms()
            self._emit(
                StoreEvent(
                    "data_loaded",
                    "mutation",
                    key,
                    entry.endpoint_name,
                    entry.original_args,
                    request_id,
                    data,
                )
            )
        elif status is QueryStatus.REJECTED:
            entry.error = error
        return entry

    def remove_mutation(self, key: str) -> MutationEntry | None:
        entry = self.mutations.pop(key, None)
        if entry is not None:
            self._emit(
                StoreEvent(
                    "removed", "mutation", key, entry.endpoint_name, entry.original_args
                )
            )
        return entry

    # -------------------------------------------------------------------------
    # Whole-store operations
    # -------------------------------------------------------------------------

    def has_pending(self) -> bool:
        entries = [*self.queries.values(), *self.mutations.values()]
        return any(e.status is QueryStatus.PENDING for e in entries)

    def reset(self) -> None:
        """Remove every entry, emitting ``removed`` for each."""
        for key in list(self.queries):
            self.remove(key)
        for key in list(self.mutations):
            self.remove_mutation(key)
        self.tags.clear()

    def restore_entry(self, entry: CacheEntry, tags: Iterable[Tag]) -> bool:
        """Adopt a settled entry from a rehydrated snapshot.

        Local entries that already hold a result or are in flight win.
        """
        if entry.status not in (QueryStatus.FULFILLED, QueryStatus.REJECTED):
            return False
        local = self.queries.get(entry.query_cache_key)
        if local is not None and local.status is not QueryStatus.UNINITIALIZED:
            return False
        entry.settled_status = entry.status
        entry.settled_args = entry.original_args
        entry.settled_request_id = entry.request_id
        entry.settled_started_timestamp = entry.started_timestamp
        self.queries[entry.query_cache_key] = entry
        self.tags.provide(entry.query_cache_key, tags)
        if local is None:
            self._emit(
                StoreEvent(
                    "added",
                    "query",
                    entry.query_cache_key,
                    entry.endpoint_name,
                    entry.original_args,
                    entry.request_id,
                )
            )
        if entry.has_data:
            self._emit(
                StoreEvent(
                    "data_loaded",
                    "query",
                    entry.query_cache_key,
                    entry.endpoint_name,
                    entry.original_args,
                    entry.request_id,
                    entry.data,
                )
            )
        return True


__all__ = ["CacheStore", "StoreEvent"]
