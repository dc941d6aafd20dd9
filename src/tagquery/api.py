"""The api object: endpoint registry and orchestration of the cache.

Usage:
    api = create_api(base_query=fetch_base_query("https://example.com"),
                     tag_types=["Post"])

    @api.query(provides_tags=lambda post, *_: [Tag("Post", post["id"])])
    def get_post(post_id):
        return f"posts/{post_id}"

    @api.mutation(invalidates_tags=lambda _r, _e, arg, _m: [Tag("Post", arg["id"])])
    def update_post(body):
        return FetchArgs(f"posts/{body['id']}", method="PATCH", body=body)

    handle = get_post.initiate(5)
    post = await handle.unwrap()

Every method must be called from inside the running event loop. Store
transitions happen synchronously in the methods below; the only awaits are
inside request tasks and user lifecycle callbacks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, TypeVar

from tagquery import paginate
from tagquery.config import ApiConfig, InvalidationBehavior
from tagquery.duration import parse_duration, parse_refetch_threshold
from tagquery.endpoints import (
    Endpoint,
    EndpointDefinition,
    EndpointKind,
    InfiniteQueryDefinition,
    InfiniteQueryEndpoint,
    MergeInfo,
    MutationDefinition,
    MutationEndpoint,
    QueryDefinition,
    QueryEndpoint,
)
from tagquery.errors import AbortedError, InternalConsistencyError
from tagquery.executor import (
    AbortController,
    BaseQuery,
    ExecutionContext,
    ExecutionResult,
    InfiniteRequest,
    Outcome,
    RequestExecutor,
)
from tagquery.handles import MutationHandle, QueryHandle
from tagquery.lifecycle import LifecycleDispatcher
from tagquery.paginate import InfiniteData
from tagquery.patches import Patch, PatchCollection, apply_patches, diff, produce
from tagquery.polling import PollingScheduler
from tagquery.schema import SkipSchemaValidation
from tagquery.serialize import KeySerializer, SerializeQueryArgs
from tagquery.store import CacheStore, StoreEvent
from tagquery.subscriptions import GarbageCollector, SubscriptionRegistry
from tagquery.tags import Tag, TagDescription, calculate_provided_by, expand_tag
from tagquery.types import (
    CacheEntry,
    Duration,
    PageDirection,
    QueryState,
    QueryStatus,
    RequestType,
    SubscriptionOptions,
)
from tagquery.utils import new_request_id, now_ms

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=EndpointDefinition)

ExtractRehydrationInfo = Callable[..., Mapping[str, Any] | None]

_ENDPOINT_CLASSES: dict[EndpointKind, type[Endpoint]] = {
    EndpointKind.QUERY: QueryEndpoint,
    EndpointKind.INFINITE_QUERY: InfiniteQueryEndpoint,
    EndpointKind.MUTATION: MutationEndpoint,
}


@dataclass(eq=False, slots=True)
class _Attempt:
    """One running request: its id, task handle and eventual result."""

    request_id: str
    type: RequestType
    key: str
    endpoint_name: str
    arg: Any
    controller: AbortController
    result: asyncio.Future[ExecutionResult]
    max_pages: int | None = None


class Api:
    """Endpoint registry plus the cache they share."""

    def __init__(
        self,
        base_query: BaseQuery,
        config: ApiConfig | None = None,
        *,
        serialize_query_args: SerializeQueryArgs | None = None,
        extract_rehydration_info: ExtractRehydrationInfo | None = None,
        catch_schema_failure: Callable[..., Any] | None = None,
        on_schema_failure: Callable[..., Any] | None = None,
        extra: Any = None,
    ) -> None:
        self.config = config or ApiConfig()
        self.extra = extra
        self.endpoints: dict[str, Endpoint] = {}
        self._serializer = KeySerializer(serialize_query_args)
        self._executor = RequestExecutor(
            base_query,
            skip_schema_validation=self.config.skip_schema_validation,
            catch_schema_failure=catch_schema_failure,
            on_schema_failure=on_schema_failure,
        )
        self._store = CacheStore(on_event=self._on_store_event)
        self._subscriptions = SubscriptionRegistry()
        self._gc = GarbageCollector(self._collect)
        self._lifecycle = LifecycleDispatcher(self)
        self._polling = PollingScheduler(
            self._subscriptions, self._poll, lambda: self._focused
        )
        self._attempts: dict[str, _Attempt] = {}
        self._pending_invalidations: list[Tag] = []
        self._extract_rehydration_info = extract_rehydration_info
        self._rehydrated = False
        self._focused = True
        self._online = True

    @property
    def reducer_path(self) -> str:
        return self.config.reducer_path

    @property
    def is_focused(self) -> bool:
        return self._focused

    @property
    def is_online(self) -> bool:
        return self._online

    # =========================================================================
    # Endpoint registration
    # =========================================================================

    def inject(
        self, definition: EndpointDefinition, *, override_existing: bool = False
    ) -> Endpoint:
        """Register ``definition`` and return the bound endpoint."""
        if definition.name in self.endpoints and not override_existing:
            raise InternalConsistencyError(
                f"Endpoint {definition.name!r} is already defined; pass "
                "override_existing=True to replace it"
            )
        endpoint = _ENDPOINT_CLASSES[definition.kind](self, definition)
        self.endpoints[definition.name] = endpoint
        logger.debug(
            "Registered %s endpoint %r", definition.kind.value, definition.name
        )
        return endpoint

    def _decorator(
        self,
        definition_cls: type[EndpointDefinition],
        function_field: str,
        name: str | None,
        override_existing: bool,
        options: dict[str, Any],
    ) -> Callable[[Callable[..., Any]], Any]:
        def decorator(fn: Callable[..., Any]) -> Any:
            definition = definition_cls(
                name=name or fn.__name__, **{function_field: fn}, **options
            )
            return self.inject(definition, override_existing=override_existing)

        return decorator

    def query(
        self,
        name: str | None = None,
        *,
        override_existing: bool = False,
        **options: Any,
    ) -> Callable[[Callable[[Any], Any]], QueryEndpoint]:
        """Register a query whose function builds the base query request."""
        return self._decorator(
            QueryDefinition, "query", name, override_existing, options
        )

    def query_fn(
        self,
        name: str | None = None,
        *,
        override_existing: bool = False,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], QueryEndpoint]:
        """Register a query with a custom executor.

        The function is called as ``fn(arg, context, extra_options, base_query)``
        and returns a ``QueryReturnValue`` or a ``{"data"|"error"}`` mapping.
        """
        return self._decorator(
            QueryDefinition, "query_fn", name, override_existing, options
        )

    def infinite_query(
        self,
        name: str | None = None,
        *,
        override_existing: bool = False,
        **options: Any,
    ) -> Callable[[Callable[[Any], Any]], InfiniteQueryEndpoint]:
        """Register an infinite query; requires ``infinite_query_options``.

        The request builder receives an ``InfiniteQueryArg``.
        """
        return self._decorator(
            InfiniteQueryDefinition, "query", name, override_existing, options
        )

    def infinite_query_fn(
        self,
        name: str | None = None,
        *,
        override_existing: bool = False,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], InfiniteQueryEndpoint]:
        return self._decorator(
            InfiniteQueryDefinition, "query_fn", name, override_existing, options
        )

    def mutation(
        self,
        name: str | None = None,
        *,
        override_existing: bool = False,
        **options: Any,
    ) -> Callable[[Callable[[Any], Any]], MutationEndpoint]:
        return self._decorator(
            MutationDefinition, "query", name, override_existing, options
        )

    def mutation_fn(
        self,
        name: str | None = None,
        *,
        override_existing: bool = False,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], MutationEndpoint]:
        return self._decorator(
            MutationDefinition, "query_fn", name, override_existing, options
        )

    def _definition(self, endpoint_name: str, expected: type[D]) -> D:
        endpoint = self.endpoints.get(endpoint_name)
        if endpoint is None:
            raise InternalConsistencyError(f"No endpoint named {endpoint_name!r}")
        definition = endpoint.definition
        if not isinstance(definition, expected):
            raise InternalConsistencyError(
                f"Endpoint {endpoint_name!r} is a {definition.kind.value}, "
                f"not a {expected.__name__}"
            )
        return definition

    def cache_key(self, endpoint_name: str, arg: Any = None) -> str:
        definition = self._definition(endpoint_name, QueryDefinition)
        return self._serializer.serialize(definition, arg)

    # =========================================================================
    # Queries
    # =========================================================================

    def initiate_query(
        self,
        endpoint_name: str,
        arg: Any = None,
        *,
        subscribe: bool = True,
        force_refetch: bool | Duration = False,
        refetch_on_mount_or_arg_change: bool | Duration | None = None,
        subscription_options: SubscriptionOptions | None = None,
        direction: PageDirection | None = None,
        initial_page_param: Any = None,
        max_pages: int | None = None,
    ) -> QueryHandle[Any]:
        """Serve ``arg`` from cache, join a running fetch or start one.

        ``force_refetch`` is a bool or a max age: a cached value older than
        it is fetched again.
        """
        definition = self._definition(endpoint_name, QueryDefinition)
        if direction is not None and not definition.is_infinite:
            raise InternalConsistencyError(
                f"Endpoint {endpoint_name!r} is not an infinite query"
            )
        key = self._serializer.serialize(definition, arg)

        subscription_id = None
        if subscribe:
            if force_refetch is False:
                force_refetch = self._refetch_on_mount(
                    definition, refetch_on_mount_or_arg_change
                )
            subscription_id = new_request_id()
            self._subscribe(key, subscription_id, subscription_options)

        threshold = parse_refetch_threshold(force_refetch)
        attempt = self._current_attempt(key)
        if attempt is None:
            if not self._needs_fetch(definition, key, arg, threshold, direction):
                logger.debug("%s: served from cache", key)
                return QueryHandle(
                    self,
                    endpoint_name,
                    key,
                    arg,
                    settled=self._cached_result(key),
                    subscription_id=subscription_id,
                )
            attempt = self._start_query(
                definition,
                key,
                arg,
                forced=bool(threshold),
                direction=direction,
                initial_page_param=initial_page_param,
                max_pages=max_pages,
            )
        else:
            logger.debug("%s: joining request %s", key, attempt.request_id)
        return QueryHandle(
            self,
            endpoint_name,
            key,
            arg,
            attempt=attempt,
            subscription_id=subscription_id,
        )

    def refetch(self, endpoint_name: str, arg: Any = None) -> QueryHandle[Any]:
        """Start a forced fetch that supersedes any running attempt.

        The superseded attempt keeps running and settles its own handle,
        but its result no longer reaches the cache.
        """
        definition = self._definition(endpoint_name, QueryDefinition)
        key = self._serializer.serialize(definition, arg)
        attempt = self._start_query(definition, key, arg, forced=True)
        return QueryHandle(self, endpoint_name, key, arg, attempt=attempt)

    def prefetch(
        self,
        endpoint_name: str,
        arg: Any = None,
        *,
        force: bool = False,
        if_older_than: Duration | None = None,
    ) -> QueryHandle[Any]:
        """Warm the cache without subscribing."""
        force_refetch: bool | Duration = True if force else (if_older_than or False)
        return self.initiate_query(
            endpoint_name, arg, subscribe=False, force_refetch=force_refetch
        )

    def _refetch_on_mount(
        self, definition: QueryDefinition, override: bool | Duration | None
    ) -> bool | Duration:
        if override is not None:
            return override
        if definition.refetch_on_mount_or_arg_change is not None:
            return definition.refetch_on_mount_or_arg_change
        return self.config.refetch_on_mount_or_arg_change

    def _needs_fetch(
        self,
        definition: QueryDefinition,
        key: str,
        arg: Any,
        threshold: bool | int | None,
        direction: PageDirection | None,
    ) -> bool:
        entry = self._store.queries.get(key)
        if direction is not None:
            return True
        if entry is None or not entry.has_data or entry.is_invalidated:
            return True
        if threshold is True:
            return True
        if isinstance(threshold, int) and not isinstance(threshold, bool):
            assert entry.fulfilled_timestamp is not None
            if now_ms() - entry.fulfilled_timestamp >= threshold:
                return True
        if definition.force_refetch is not None:
            return bool(
                definition.force_refetch(
                    current_arg=arg,
                    previous_arg=entry.original_args,
                    endpoint_state=self.select_by_key(key),
                )
            )
        return False

    def _cached_result(self, key: str) -> ExecutionResult:
        entry = self._store.queries[key]
        if entry.status is QueryStatus.REJECTED:
            return ExecutionResult(Outcome.REJECTED, data=entry.data, error=entry.error)
        return ExecutionResult(Outcome.FULFILLED, data=entry.data)

    def _current_attempt(self, key: str) -> _Attempt | None:
        entry = self._store.queries.get(key)
        if entry is None or entry.status is not QueryStatus.PENDING:
            return None
        return self._attempts.get(entry.request_id or "")

    def _start_query(
        self,
        definition: QueryDefinition,
        key: str,
        arg: Any,
        *,
        forced: bool = False,
        direction: PageDirection | None = None,
        initial_page_param: Any = None,
        max_pages: int | None = None,
    ) -> _Attempt:
        current = self._store.queries.get(key)
        existing = None
        if definition.is_infinite and current is not None and current.has_data:
            existing = current.data
        if existing is None:
            direction = None

        request_id = new_request_id()
        self._store.start(
            key, request_id, endpoint_name=definition.name, arg=arg, direction=direction
        )
        attempt = self._new_attempt(
            request_id, "query", key, definition.name, arg, max_pages=max_pages
        )
        self._lifecycle.query_started(
            definition,
            arg,
            request_id,
            get_cache_entry=partial(self.select_by_key, key),
            update_cached_data=partial(self.update_by_key, key),
        )

        infinite = None
        if isinstance(definition, InfiniteQueryDefinition):
            infinite = InfiniteRequest(
                existing, direction, initial_page_param, max_pages
            )
        context = self._context(definition, attempt, forced=forced)
        self._spawn(
            definition,
            attempt,
            partial(
                self._executor.execute, definition, arg, context, infinite=infinite
            ),
        )
        return attempt

    def _refetch_key(self, key: str, *, restart: bool = False) -> _Attempt | None:
        """Forced refetch of an existing entry with its original argument.

        A running attempt is joined, or aborted and replaced when
        ``restart`` is set.
        """
        entry = self._store.queries.get(key)
        if entry is None:
            return None
        running = self._current_attempt(key)
        if running is not None and not restart:
            return running
        definition = self._definition(entry.endpoint_name, QueryDefinition)
        attempt = self._start_query(definition, key, entry.original_args, forced=True)
        if running is not None:
            running.controller.abort("restarted")
        return attempt

    # =========================================================================
    # Mutations
    # =========================================================================

    def initiate_mutation(
        self,
        endpoint_name: str,
        arg: Any = None,
        *,
        track: bool = True,
        fixed_cache_key: str | None = None,
    ) -> MutationHandle[Any]:
        """Run a mutation.

        Tracked mutations are kept under ``fixed_cache_key`` (or their
        request id) until reset; a newer mutation with the same fixed key
        takes over the record.
        """
        definition = self._definition(endpoint_name, MutationDefinition)
        request_id = new_request_id()
        key = fixed_cache_key or request_id
        if track:
            self._store.mutation_start(
                key, request_id, endpoint_name=endpoint_name, arg=arg
            )
        attempt = self._new_attempt(request_id, "mutation", key, endpoint_name, arg)
        self._lifecycle.query_started(
            definition,
            arg,
            request_id,
            get_cache_entry=partial(self.select_mutation, key),
            update_cached_data=None,
        )
        context = self._context(definition, attempt)
        self._spawn(
            definition,
            attempt,
            partial(self._executor.execute, definition, arg, context),
        )
        return MutationHandle(self, attempt)

    def remove_mutation(self, key: str, request_id: str | None = None) -> bool:
        entry = self._store.mutations.get(key)
        if entry is None or (request_id is not None and entry.request_id != request_id):
            return False
        self._store.remove_mutation(key)
        return True

    # =========================================================================
    # Attempt execution and settling
    # =========================================================================

    def _new_attempt(
        self,
        request_id: str,
        type_: RequestType,
        key: str,
        endpoint_name: str,
        arg: Any,
        *,
        max_pages: int | None = None,
    ) -> _Attempt:
        loop = asyncio.get_running_loop()
        attempt = _Attempt(
            request_id=request_id,
            type=type_,
            key=key,
            endpoint_name=endpoint_name,
            arg=arg,
            controller=AbortController(),
            result=loop.create_future(),
            max_pages=max_pages,
        )
        self._attempts[request_id] = attempt
        return attempt

    def _context(
        self, definition: EndpointDefinition, attempt: _Attempt, *, forced: bool = False
    ) -> ExecutionContext:
        return ExecutionContext(
            signal=attempt.controller.signal,
            abort=attempt.controller.abort,
            get_state=self.snapshot,
            api=self,
            endpoint=definition.name,
            type=attempt.type,
            request_id=attempt.request_id,
            forced=forced,
            query_cache_key=attempt.key if attempt.type == "query" else None,
            extra=self.extra,
        )

    def _spawn(
        self,
        definition: EndpointDefinition,
        attempt: _Attempt,
        execute: Callable[[], Awaitable[ExecutionResult]],
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run(definition, attempt, execute)
        )
        attempt.controller.task = task
        task.add_done_callback(partial(self._attempt_done, definition, attempt))

    async def _run(
        self,
        definition: EndpointDefinition,
        attempt: _Attempt,
        execute: Callable[[], Awaitable[ExecutionResult]],
    ) -> None:
        result = await execute()
        self._settle(definition, attempt, result)

    def _attempt_done(
        self,
        definition: EndpointDefinition,
        attempt: _Attempt,
        task: asyncio.Task[None],
    ) -> None:
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "Request %s for %r failed while settling",
                    attempt.request_id,
                    attempt.endpoint_name,
                    exc_info=exc,
                )
        if not attempt.result.done():
            # canceled before the executor could classify it
            reason = attempt.controller.signal.reason
            self._settle(
                definition,
                attempt,
                ExecutionResult(Outcome.ABORTED, error=AbortedError(reason)),
            )

    def _settle(
        self,
        definition: EndpointDefinition,
        attempt: _Attempt,
        result: ExecutionResult,
    ) -> None:
        if attempt.result.done():
            return
        if isinstance(definition, QueryDefinition):
            result = self._settle_query(definition, attempt, result)
        else:
            assert isinstance(definition, MutationDefinition)
            result = self._settle_mutation(definition, attempt, result)

        self._lifecycle.query_settled(
            attempt.request_id,
            data=result.data,
            meta=result.meta,
            error=result.error,
            failed=not result.is_success,
            is_unhandled_error=result.is_unhandled_error,
        )
        self._attempts.pop(attempt.request_id, None)
        if not self._attempts:
            self._flush_invalidations()
        attempt.result.set_result(result)

    def _settle_query(
        self,
        definition: QueryDefinition,
        attempt: _Attempt,
        result: ExecutionResult,
    ) -> ExecutionResult:
        key, request_id = attempt.key, attempt.request_id
        current = self._store.is_current(key, request_id)
        if result.outcome is Outcome.FULFILLED:
            try:
                result = self._store_result(definition, attempt, result)
            except Exception as exc:
                logger.error(
                    "Storing the result of %r failed", definition.name, exc_info=True
                )
                result = ExecutionResult(
                    Outcome.REJECTED, error=exc, is_unhandled_error=True
                )
                self._store.fail(key, request_id, exc)
        elif result.outcome is Outcome.REJECTED:
            self._store.fail(key, request_id, result.error)
        else:
            self._store.abort(key, request_id)

        if current and key in self._store.queries:
            self._polling.settled(key)
            if self._subscriptions.count(key) == 0:
                self._gc.schedule(key, self._retention_for(definition, key))
        return result

    def _store_result(
        self,
        definition: QueryDefinition,
        attempt: _Attempt,
        result: ExecutionResult,
    ) -> ExecutionResult:
        key, request_id = attempt.key, attempt.request_id
        response = result.data
        data = response
        merge = None

        if isinstance(definition, InfiniteQueryDefinition):
            if result.direction is not None:
                entry = self._store.queries.get(key)
                existing = entry.data if entry is not None and entry.has_data else None
                max_pages = (
                    attempt.max_pages or definition.infinite_query_options.max_pages
                )
                data = paginate.add_page(
                    existing, response, result.page_param, result.direction, max_pages
                )
                result = replace(result, data=data)
        elif definition.merge is not None:
            info = MergeInfo(attempt.arg, result.meta, now_ms(), request_id)
            merge_fn = definition.merge

            def merge(current: Any) -> Any:
                if current is None:
                    return response
                return produce(current, lambda draft: merge_fn(draft, response, info))

        def provides(stored: Any) -> list[Tag]:
            value = stored if definition.is_infinite else response
            return calculate_provided_by(
                definition.provides_tags,
                value,
                None,
                attempt.arg,
                result.meta,
                tag_types=self.config.tag_types,
            )

        self._store.succeed(key, request_id, data, merge=merge, provides=provides)
        return result

    def _settle_mutation(
        self,
        definition: MutationDefinition,
        attempt: _Attempt,
        result: ExecutionResult,
    ) -> ExecutionResult:
        if result.is_success:
            self._store.mutation_settle(
                attempt.key, attempt.request_id, QueryStatus.FULFILLED, data=result.data
            )
        else:
            self._store.mutation_settle(
                attempt.key,
                attempt.request_id,
                QueryStatus.REJECTED,
                error=result.error,
            )

        # only results the server actually produced invalidate anything
        if result.outcome is Outcome.FULFILLED or (
            result.outcome is Outcome.REJECTED and not result.is_unhandled_error
        ):
            try:
                tags = calculate_provided_by(
                    definition.invalidates_tags,
                    result.data if result.is_success else None,
                    None if result.is_success else result.error,
                    attempt.arg,
                    result.meta,
                    tag_types=self.config.tag_types,
                )
            except Exception:
                logger.error(
                    "invalidates_tags of %r raised", definition.name, exc_info=True
                )
            else:
                self._invalidate(tags)
        return result

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_tags(self, tags: Iterable[TagDescription]) -> None:
        """Invalidate every entry providing any of ``tags``."""
        self._invalidate([expand_tag(tag) for tag in tags])

    def select_invalidated_by(
        self, tags: Iterable[TagDescription]
    ) -> list[QueryState[Any]]:
        keys = self._store.tags.invalidated_by(tags)
        return [self.select_by_key(key) for key in sorted(keys)]

    def _invalidate(self, tags: list[Tag]) -> None:
        if not tags:
            return
        behavior: InvalidationBehavior = self.config.invalidation_behavior
        if behavior == "immediately":
            self._apply_invalidation(tags, restart=True)
            return
        self._pending_invalidations.extend(tags)
        if not self._attempts:
            self._flush_invalidations()

    def _flush_invalidations(self) -> None:
        tags, self._pending_invalidations = self._pending_invalidations, []
        if tags:
            self._apply_invalidation(tags, restart=False)

    def _apply_invalidation(self, tags: list[Tag], *, restart: bool) -> None:
        keys = self._store.tags.invalidated_by(tags)
        logger.debug("%r invalidates %d entries", tags, len(keys))
        for key in sorted(keys):
            if key not in self._store.queries:
                continue
            if self._subscriptions.count(key) == 0:
                self._remove_entry(key)
            else:
                self._store.invalidate(key)
                self._refetch_key(key, restart=restart)

    # =========================================================================
    # Subscriptions, retention and refetch triggers
    # =========================================================================

    def _subscribe(
        self, key: str, subscription_id: str, options: SubscriptionOptions | None
    ) -> None:
        self._subscriptions.subscribe(key, subscription_id, options)
        self._gc.cancel(key)
        self._polling.update(key)

    def unsubscribe(self, key: str, subscription_id: str) -> None:
        if self._subscriptions.unsubscribe(key, subscription_id):
            entry = self._store.queries.get(key)
            if entry is not None:
                definition = self._definition(entry.endpoint_name, QueryDefinition)
                self._gc.schedule(key, self._retention_for(definition, key))
        self._polling.update(key)

    def update_subscription_options(
        self, key: str, subscription_id: str, options: SubscriptionOptions
    ) -> None:
        if self._subscriptions.update_options(key, subscription_id, options):
            self._polling.update(key)

    def _retention_for(self, definition: QueryDefinition, key: str) -> int:
        """Subscription override, else endpoint setting, else api default."""
        requested = self._subscriptions.retention_for(key)
        if requested is not None:
            return requested
        if definition.keep_unused_data_for is not None:
            return parse_duration(definition.keep_unused_data_for)
        return self.config.keep_unused_data_for

    def _collect(self, key: str) -> None:
        if self._subscriptions.count(key):
            return
        logger.debug("%s: retention expired", key)
        self._remove_entry(key)

    def _remove_entry(self, key: str) -> None:
        for attempt in list(self._attempts.values()):
            if attempt.type == "query" and attempt.key == key:
                attempt.controller.abort("removed")
        self._gc.cancel(key)
        self._polling.cancel(key)
        self._subscriptions.remove_key(key)
        self._store.remove(key)

    def _poll(self, key: str) -> None:
        if self._refetch_key(key) is None:
            self._polling.cancel(key)

    def on_focus(self) -> None:
        self._focused = True
        self._refetch_triggered("refetch_on_focus")

    def on_blur(self) -> None:
        self._focused = False

    def on_online(self) -> None:
        self._online = True
        self._refetch_triggered("refetch_on_reconnect")

    def on_offline(self) -> None:
        self._online = False

    def _refetch_triggered(self, option: str) -> None:
        for key, entry in list(self._store.queries.items()):
            definition = self._definition(entry.endpoint_name, QueryDefinition)
            default = getattr(definition, option)
            if default is None:
                default = getattr(self.config, option)
            if self._subscriptions.count(key) == 0:
                if default:
                    self._remove_entry(key)
            elif entry.status is not QueryStatus.UNINITIALIZED:
                if self._subscriptions.wants(key, option, default):
                    self._refetch_key(key)

    # =========================================================================
    # Manual cache updates
    # =========================================================================

    def update_query_data(
        self, endpoint_name: str, arg: Any, recipe: Callable[[Any], Any]
    ) -> PatchCollection:
        """Apply ``recipe`` to the cached data of ``arg``.

        Returns the patches, with an ``undo`` that reverts only the paths
        the recipe changed. Nothing happens while no data is cached.
        """
        return self.update_by_key(self.cache_key(endpoint_name, arg), recipe)

    def patch_query_data(
        self, endpoint_name: str, arg: Any, patches: list[Patch]
    ) -> None:
        self.patch_by_key(self.cache_key(endpoint_name, arg), patches)

    def upsert_query_data(
        self, endpoint_name: str, arg: Any, value: Any
    ) -> QueryState[Any]:
        """Write ``value`` as if a request for ``arg`` had just succeeded.

        A running request for the same entry is superseded.
        """
        definition = self._definition(endpoint_name, QueryDefinition)
        key = self._serializer.serialize(definition, arg)
        if definition.is_infinite and isinstance(value, Mapping):
            value = InfiniteData.from_dict(value)
        self._store.upsert(
            key,
            value,
            endpoint_name=endpoint_name,
            arg=arg,
            provides=lambda stored: calculate_provided_by(
                definition.provides_tags,
                stored,
                None,
                arg,
                None,
                tag_types=self.config.tag_types,
            ),
        )
        if self._subscriptions.count(key) == 0:
            self._gc.schedule(key, self._retention_for(definition, key))
        return self.select_by_key(key)

    def update_by_key(
        self, key: str, recipe: Callable[[Any], Any]
    ) -> PatchCollection:
        entry = self._store.queries.get(key)
        if entry is None or not entry.has_data:
            return PatchCollection()
        before = entry.data
        after = produce(before, recipe)
        patches, inverse = diff(before, after)
        self._store.update_data(key, after)
        undo = partial(self.patch_by_key, key, inverse)
        return PatchCollection(patches, inverse, undo)

    def patch_by_key(self, key: str, patches: list[Patch]) -> None:
        entry = self._store.queries.get(key)
        if entry is None or not entry.has_data or not patches:
            return
        self._store.update_data(key, apply_patches(entry.data, patches))

    # =========================================================================
    # Selectors
    # =========================================================================

    def select(self, endpoint_name: str, arg: Any = None) -> QueryState[Any]:
        return self.select_by_key(self.cache_key(endpoint_name, arg))

    def select_by_key(self, key: str) -> QueryState[Any]:
        entry = self._store.queries.get(key)
        if entry is None:
            return QueryState(key=key)
        has_next = has_previous = False
        endpoint = self.endpoints.get(entry.endpoint_name)
        if endpoint is not None and isinstance(entry.data, InfiniteData):
            definition = endpoint.definition
            if isinstance(definition, InfiniteQueryDefinition):
                options = definition.infinite_query_options
                has_next = paginate.has_next_page(
                    options, entry.data, entry.original_args
                )
                has_previous = paginate.has_previous_page(
                    options, entry.data, entry.original_args
                )
        return QueryState(
            status=entry.status,
            endpoint_name=entry.endpoint_name,
            key=key,
            original_args=entry.original_args,
            data=entry.data,
            error=entry.error,
            request_id=entry.request_id,
            started_timestamp=entry.started_timestamp,
            fulfilled_timestamp=entry.fulfilled_timestamp,
            is_invalidated=entry.is_invalidated,
            has_next_page=has_next,
            has_previous_page=has_previous,
            direction=entry.direction,
        )

    def select_mutation(self, key: str) -> QueryState[Any]:
        entry = self._store.mutations.get(key)
        if entry is None:
            return QueryState(key=key)
        return QueryState(
            status=entry.status,
            endpoint_name=entry.endpoint_name,
            key=key,
            original_args=entry.original_args,
            data=entry.data,
            error=entry.error,
            request_id=entry.request_id,
            started_timestamp=entry.started_timestamp,
            fulfilled_timestamp=entry.fulfilled_timestamp,
        )

    def mutation_state_from(
        self, attempt: _Attempt, result: ExecutionResult
    ) -> QueryState[Any]:
        """State of a mutation whose record is not (or no longer) tracked."""
        return QueryState(
            status=QueryStatus.FULFILLED if result.is_success else QueryStatus.REJECTED,
            endpoint_name=attempt.endpoint_name,
            key=attempt.key,
            original_args=attempt.arg,
            data=result.data if result.is_success else None,
            error=None if result.is_success else result.error,
            request_id=attempt.request_id,
        )

    def select_cached_args_for_query(self, endpoint_name: str) -> list[Any]:
        return [
            entry.original_args
            for entry in self._store.queries.values()
            if entry.endpoint_name == endpoint_name
            and entry.status is not QueryStatus.UNINITIALIZED
        ]

    def get_running_queries(self) -> list[QueryHandle[Any]]:
        return [
            QueryHandle(self, a.endpoint_name, a.key, a.arg, attempt=a)
            for a in self._attempts.values()
            if a.type == "query"
        ]

    def get_running_mutations(self) -> list[MutationHandle[Any]]:
        return [
            MutationHandle(self, a)
            for a in self._attempts.values()
            if a.type == "mutation"
        ]

    # =========================================================================
    # Whole-cache operations
    # =========================================================================

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly copy of the whole cache state."""
        return {
            "entries": {
                key: _entry_to_dict(entry) for key, entry in self._store.queries.items()
            },
            "mutations": {
                key: {
                    "endpoint_name": entry.endpoint_name,
                    "original_args": entry.original_args,
                    "request_id": entry.request_id,
                    "status": entry.status.value,
                    "data": entry.data,
                    "error": entry.error,
                    "started_timestamp": entry.started_timestamp,
                    "fulfilled_timestamp": entry.fulfilled_timestamp,
                }
                for key, entry in self._store.mutations.items()
            },
            "subscriptions": self._subscriptions.to_dict(),
            "provided_tags": self._store.tags.to_dict(),
            "config": self.config.to_dict(),
        }

    def rehydrate(self, action: Any) -> bool:
        """Merge a prior snapshot found in ``action``; only the first call counts.

        Only settled entries are adopted, and local entries that already
        hold a result win. Returns whether a snapshot was consumed.
        """
        if self._rehydrated or self._extract_rehydration_info is None:
            return False
        info = self._extract_rehydration_info(action, reducer_path=self.reducer_path)
        if info is None:
            return False
        self._rehydrated = True

        provided = info.get("provided_tags", {})
        restored = 0
        for key, raw in info.get("entries", {}).items():
            endpoint = self.endpoints.get(raw.get("endpoint_name", ""))
            if endpoint is None or not isinstance(endpoint.definition, QueryDefinition):
                logger.warning("Skipping rehydrated entry %s of unknown endpoint", key)
                continue
            definition = endpoint.definition
            entry = _entry_from_dict(key, raw, infinite=definition.is_infinite)
            tags = [expand_tag(tuple(tag)) for tag in provided.get(key, ())]
            if self._store.restore_entry(entry, tags):
                restored += 1
                if self._subscriptions.count(key) == 0:
                    self._gc.schedule(key, self._retention_for(definition, key))
        logger.debug("Rehydrated %d entries", restored)
        return True

    def reset_api_state(self) -> None:
        """Abort every request and drop every entry, subscription and timer."""
        for attempt in list(self._attempts.values()):
            attempt.controller.abort("reset")
        self._gc.cancel_all()
        self._polling.cancel_all()
        self._pending_invalidations.clear()
        self._subscriptions.clear()
        self._store.reset()

    async def close(self) -> None:
        """Reset, then wait for requests and lifecycle callbacks to wind down."""
        tasks = [
            attempt.controller.task
            for attempt in self._attempts.values()
            if attempt.controller.task is not None
        ]
        self.reset_api_state()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # let callbacks woken by cache_entry_removed run their cleanup
        await asyncio.sleep(0)
        self._lifecycle.cancel_all()
        await self._lifecycle.drain()

    def _on_store_event(self, event: StoreEvent) -> None:
        endpoint = self.endpoints.get(event.endpoint_name)
        definition = endpoint.definition if endpoint is not None else None
        self._lifecycle.handle_event(event, definition)

    def __repr__(self) -> str:
        return f"Api({self.reducer_path!r}, endpoints={sorted(self.endpoints)})"


def _entry_to_dict(entry: CacheEntry) -> dict[str, Any]:
    data = entry.data
    if isinstance(data, InfiniteData):
        data = data.to_dict()
    return {
        "endpoint_name": entry.endpoint_name,
        "original_args": entry.original_args,
        "status": entry.status.value,
        "data": data,
        "error": entry.error,
        "request_id": entry.request_id,
        "started_timestamp": entry.started_timestamp,
        "fulfilled_timestamp": entry.fulfilled_timestamp,
        "is_invalidated": entry.is_invalidated,
    }


def _entry_from_dict(key: str, raw: Mapping[str, Any], *, infinite: bool) -> CacheEntry:
    data = raw.get("data")
    if infinite and isinstance(data, Mapping):
        data = InfiniteData.from_dict(data)
    return CacheEntry(
        query_cache_key=key,
        endpoint_name=raw["endpoint_name"],
        original_args=raw.get("original_args"),
        status=QueryStatus(raw.get("status", QueryStatus.UNINITIALIZED.value)),
        data=data,
        error=raw.get("error"),
        request_id=raw.get("request_id"),
        started_timestamp=raw.get("started_timestamp"),
        fulfilled_timestamp=raw.get("fulfilled_timestamp"),
        is_invalidated=raw.get("is_invalidated", False),
    )


def create_api(
    *,
    base_query: BaseQuery,
    reducer_path: str = "api",
    tag_types: Iterable[str] = (),
    keep_unused_data_for: Duration = "60s",
    refetch_on_mount_or_arg_change: bool | Duration = False,
    refetch_on_focus: bool = False,
    refetch_on_reconnect: bool = False,
    invalidation_behavior: InvalidationBehavior = "delayed",
    serialize_query_args: SerializeQueryArgs | None = None,
    extract_rehydration_info: ExtractRehydrationInfo | None = None,
    skip_schema_validation: SkipSchemaValidation = False,
    catch_schema_failure: Callable[..., Any] | None = None,
    on_schema_failure: Callable[..., Any] | None = None,
    extra: Any = None,
) -> Api:
    """Create an :class:`Api`.

    Raises:
        ValueError: if an option is invalid (see :meth:`ApiConfig.create`).
    """
    config = ApiConfig.create(
        reducer_path=reducer_path,
        keep_unused_data_for=keep_unused_data_for,
        refetch_on_mount_or_arg_change=refetch_on_mount_or_arg_change,
        refetch_on_focus=refetch_on_focus,
        refetch_on_reconnect=refetch_on_reconnect,
        invalidation_behavior=invalidation_behavior,
        tag_types=tuple(tag_types),
        skip_schema_validation=skip_schema_validation,
    )
    return Api(
        base_query,
        config,
        serialize_query_args=serialize_query_args,
        extract_rehydration_info=extract_rehydration_info,
        catch_schema_failure=catch_schema_failure,
        on_schema_failure=on_schema_failure,
        extra=extra,
    )


__all__ = ["Api", "create_api"]
