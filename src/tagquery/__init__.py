"""tagquery - Tag-invalidated data fetching and caching for asyncio."""

# Api
from tagquery.api import Api, create_api
from tagquery.config import ApiConfig

# Duration parsing
from tagquery.duration import parse_duration

# Endpoints
from tagquery.endpoints import (
    EndpointKind,
    InfiniteQueryArg,
    InfiniteQueryDefinition,
    InfiniteQueryEndpoint,
    MergeInfo,
    MutationDefinition,
    MutationEndpoint,
    QueryDefinition,
    QueryEndpoint,
)
from tagquery.errors import (
    AbortedError,
    EntryRemovedError,
    InternalConsistencyError,
    QueryRejected,
    SchemaValidationError,
    TagQueryError,
    TransportError,
)
from tagquery.executor import AbortSignal, ExecutionContext

# Transports
from tagquery.fetch import FetchArgs, FetchMeta, fetch_base_query
from tagquery.handles import MutationHandle, QueryHandle
from tagquery.lifecycle import CacheLifecycleApi, QueryFulfilled, QueryLifecycleApi
from tagquery.paginate import InfiniteData, InfiniteQueryOptions
from tagquery.patches import Patch, PatchCollection
from tagquery.retry import bail, retry
from tagquery.schema import PydanticSchema, ValidationResult
from tagquery.serialize import default_serialize_query_args
from tagquery.tags import Tag

# Core types
from tagquery.types import (
    Duration,
    QueryReturnValue,
    QueryState,
    QueryStatus,
    SubscriptionOptions,
)

__version__ = "0.1.0"

__all__ = [
    "AbortSignal",
    "AbortedError",
    "Api",
    "ApiConfig",
    "CacheLifecycleApi",
    "Duration",
    "EndpointKind",
    "EntryRemovedError",
    "ExecutionContext",
    "FetchArgs",
    "FetchMeta",
    "InfiniteData",
    "InfiniteQueryArg",
    "InfiniteQueryDefinition",
    "InfiniteQueryEndpoint",
    "InfiniteQueryOptions",
    "InternalConsistencyError",
    "MergeInfo",
    "MutationDefinition",
    "MutationEndpoint",
    "MutationHandle",
    "Patch",
    "PatchCollection",
    "PydanticSchema",
    "QueryDefinition",
    "QueryEndpoint",
    "QueryFulfilled",
    "QueryHandle",
    "QueryLifecycleApi",
    "QueryRejected",
    "QueryReturnValue",
    "QueryState",
    "QueryStatus",
    "SchemaValidationError",
    "SubscriptionOptions",
    "Tag",
    "TagQueryError",
    "TransportError",
    "ValidationResult",
    "bail",
    "create_api",
    "default_serialize_query_args",
    "fetch_base_query",
    "parse_duration",
    "retry",
]
