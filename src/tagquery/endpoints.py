"""Endpoint definitions and the endpoint objects bound to an api.

Definitions are immutable and validated once, when registered. The kind of
an endpoint decides which capabilities it carries:

- :class:`QueryDefinition` provides tags and owns cache entries.
- :class:`InfiniteQueryDefinition` adds paging options.
- :class:`MutationDefinition` invalidates tags.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from tagquery.errors import InternalConsistencyError
from tagquery.paginate import InfiniteQueryOptions
from tagquery.schema import SchemaValidator, SkipSchemaValidation
from tagquery.tags import ResultDescription
from tagquery.types import Duration, PageDirection, QueryState, SubscriptionOptions

if TYPE_CHECKING:
    from tagquery.api import Api
    from tagquery.handles import MutationHandle, QueryHandle


class EndpointKind(str, Enum):
    QUERY = "query"
    MUTATION = "mutation"
    INFINITE_QUERY = "infinite_query"


@dataclass(frozen=True, slots=True)
class InfiniteQueryArg:
    """What an infinite query's request builder receives for one page."""

    query_arg: Any
    page_param: Any


@dataclass(frozen=True, slots=True)
class MergeInfo:
    arg: Any
    base_query_meta: Any
    fulfilled_timestamp: int
    request_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class EndpointDefinition:
    """Fields shared by every endpoint kind.

    Exactly one of ``query`` (request builder, handed to the api's base
    query) or ``query_fn`` (custom executor) must be given.
    """

    name: str
    kind: EndpointKind
    query: Callable[[Any], Any] | None = None
    query_fn: Callable[..., Any] | None = None
    transform_response: Callable[[Any, Any, Any], Any] | None = None
    transform_error_response: Callable[[Any, Any, Any], Any] | None = None
    extra_options: Any = None
    arg_schema: SchemaValidator | None = None
    raw_response_schema: SchemaValidator | None = None
    response_schema: SchemaValidator | None = None
    raw_error_response_schema: SchemaValidator | None = None
    error_response_schema: SchemaValidator | None = None
    meta_schema: SchemaValidator | None = None
    skip_schema_validation: SkipSchemaValidation | None = None
    catch_schema_failure: Callable[..., Any] | None = None
    on_schema_failure: Callable[..., Any] | None = None
    on_query_started: Callable[..., Any] | None = None
    on_cache_entry_added: Callable[..., Any] | None = None

    def __post_init__(self) -> None:
        if (self.query is None) == (self.query_fn is None):
            raise InternalConsistencyError(
                f"Endpoint {self.name!r} must define exactly one of "
                "`query` or `query_fn`"
            )

    @property
    def is_query(self) -> bool:
        return self.kind is not EndpointKind.MUTATION

    @property
    def is_infinite(self) -> bool:
        return self.kind is EndpointKind.INFINITE_QUERY


@dataclass(frozen=True, slots=True, kw_only=True)
class QueryDefinition(EndpointDefinition):
    kind: EndpointKind = field(default=EndpointKind.QUERY, init=False)
    provides_tags: ResultDescription | None = None
    keep_unused_data_for: Duration | None = None
    serialize_query_args: Callable[..., Any] | None = None
    merge: Callable[[Any, Any, MergeInfo], Any] | None = None
    force_refetch: Callable[..., bool] | None = None
    refetch_on_mount_or_arg_change: bool | Duration | None = None
    refetch_on_focus: bool | None = None
    refetch_on_reconnect: bool | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class InfiniteQueryDefinition(QueryDefinition):
    kind: EndpointKind = field(default=EndpointKind.INFINITE_QUERY, init=False)
    infinite_query_options: InfiniteQueryOptions

    def __post_init__(self) -> None:
        super(InfiniteQueryDefinition, self).__post_init__()
        if self.merge is not None:
            raise InternalConsistencyError(
                f"Infinite query {self.name!r} merges pages itself; "
                "`merge` is not supported"
            )


@dataclass(frozen=True, slots=True, kw_only=True)
class MutationDefinition(EndpointDefinition):
    kind: EndpointKind = field(default=EndpointKind.MUTATION, init=False)
    invalidates_tags: ResultDescription | None = None


# =============================================================================
# Endpoints bound to an api
# =============================================================================


class Endpoint:
    """An endpoint registered on an :class:`~tagquery.api.Api`."""

    __slots__ = ("_api", "definition")

    def __init__(self, api: Api, definition: EndpointDefinition) -> None:
        self._api = api
        self.definition = definition

    @property
    def name(self) -> str:
        return self.definition.name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class QueryEndpoint(Endpoint):
    """Usage:
    handle = get_post.initiate(5)
    post = await handle.unwrap()
    handle.unsubscribe()
    """

    __slots__ = ()

    def initiate(
        self,
        arg: Any = None,
        *,
        subscribe: bool = True,
        force_refetch: bool | Duration = False,
        refetch_on_mount_or_arg_change: bool | Duration | None = None,
        subscription_options: SubscriptionOptions | None = None,
    ) -> QueryHandle[Any]:
        return self._api.initiate_query(
            self.name,
            arg,
            subscribe=subscribe,
            force_refetch=force_refetch,
            refetch_on_mount_or_arg_change=refetch_on_mount_or_arg_change,
            subscription_options=subscription_options,
        )

    def __call__(self, arg: Any = None) -> QueryHandle[Any]:
        """One-off fetch without a subscription; served from cache if fresh."""
        return self.initiate(arg, subscribe=False)

    def subscribe(self, arg: Any = None, **options: Any) -> QueryHandle[Any]:
        """Register interest in ``arg``; keyword arguments are SubscriptionOptions."""
        return self.initiate(arg, subscription_options=SubscriptionOptions(**options))

    def select(self, arg: Any = None) -> QueryState[Any]:
        return self._api.select(self.name, arg)

    def cache_key(self, arg: Any = None) -> str:
        return self._api.cache_key(self.name, arg)


class InfiniteQueryEndpoint(QueryEndpoint):
    __slots__ = ()

    def initiate(
        self,
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
        return self._api.initiate_query(
            self.name,
            arg,
            subscribe=subscribe,
            force_refetch=force_refetch,
            refetch_on_mount_or_arg_change=refetch_on_mount_or_arg_change,
            subscription_options=subscription_options,
            direction=direction,
            initial_page_param=initial_page_param,
            max_pages=max_pages,
        )

    def fetch_next_page(
        self, arg: Any = None, *, max_pages: int | None = None
    ) -> QueryHandle[Any]:
        return self.initiate(
            arg, subscribe=False, direction="forward", max_pages=max_pages
        )

    def fetch_previous_page(
        self, arg: Any = None, *, max_pages: int | None = None
    ) -> QueryHandle[Any]:
        return self.initiate(
            arg, subscribe=False, direction="backward", max_pages=max_pages
        )


class MutationEndpoint(Endpoint):
    """Usage:
    result = await update_post.initiate({"id": 5, "title": "New"}).unwrap()
    """

    __slots__ = ()

    def initiate(
        self,
        arg: Any = None,
        *,
        track: bool = True,
        fixed_cache_key: str | None = None,
    ) -> MutationHandle[Any]:
        return self._api.initiate_mutation(
            self.name, arg, track=track, fixed_cache_key=fixed_cache_key
        )

    def __call__(self, arg: Any = None) -> MutationHandle[Any]:
        return self.initiate(arg)

    def select(self, key: str) -> QueryState[Any]:
        """Snapshot of a tracked mutation by request id or fixed cache key."""
        return self._api.select_mutation(key)


__all__ = [
    "Endpoint",
    "EndpointDefinition",
    "EndpointKind",
    "InfiniteQueryArg",
    "InfiniteQueryDefinition",
    "InfiniteQueryEndpoint",
    "MergeInfo",
    "MutationDefinition",
    "MutationEndpoint",
    "QueryDefinition",
    "QueryEndpoint",
]
