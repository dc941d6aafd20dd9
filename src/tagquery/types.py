"""Core types for the tagquery cache engine."""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Generic,
    Literal,
    TypeVar,
)

T = TypeVar("T")

# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds

PageDirection = Literal["forward", "backward"]
RequestType = Literal["query", "mutation"]


class QueryStatus(str, Enum):
    """Lifecycle status of a cache entry."""

    UNINITIALIZED = "uninitialized"
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class QueryReturnValue(Generic[T]):
    """What a transport hands back: either ``data`` or ``error``, plus meta."""

    data: T | None = None
    error: Any = None
    meta: Any = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def coerce(cls, value: Any) -> "QueryReturnValue[Any]":
        """Accept a QueryReturnValue or a ``{"data"|"error", "meta"}`` mapping."""
        if isinstance(value, QueryReturnValue):
            return value
        if isinstance(value, Mapping) and ("data" in value or "error" in value):
            return cls(
                data=value.get("data"),
                error=value.get("error"),
                meta=value.get("meta"),
            )
        raise TypeError(
            "Transport must return a QueryReturnValue or a mapping with "
            f"'data' or 'error', got {type(value).__name__}"
        )


@dataclass(slots=True)
class CacheEntry:
    """Mutable cache record for one query cache key.

    Owned by the store; only store transitions write to it. ``data`` is
    present iff the entry was ever fulfilled (``fulfilled_timestamp`` set)
    and survives later pending/rejected transitions.
    """

    query_cache_key: str
    endpoint_name: str
    original_args: Any
    status: QueryStatus = QueryStatus.UNINITIALIZED
    data: Any = None
    error: Any = None
    request_id: str | None = None
    started_timestamp: int | None = None
    fulfilled_timestamp: int | None = None
    is_invalidated: bool = False
    direction: PageDirection | None = None
    # what the entry falls back to when the current attempt aborts
    settled_status: QueryStatus = QueryStatus.UNINITIALIZED
    settled_args: Any = None
    settled_request_id: str | None = None
    settled_started_timestamp: int | None = None

    @property
    def has_data(self) -> bool:
        return self.fulfilled_timestamp is not None


@dataclass(slots=True)
class MutationEntry:
    """Mutable record for one tracked mutation."""

    key: str
    endpoint_name: str
    original_args: Any
    request_id: str
    status: QueryStatus = QueryStatus.UNINITIALIZED
    data: Any = None
    error: Any = None
    started_timestamp: int | None = None
    fulfilled_timestamp: int | None = None


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
    """Read-only snapshot of a query or mutation entry."""

    status: QueryStatus = QueryStatus.UNINITIALIZED
    endpoint_name: str | None = None
    key: str | None = None
    original_args: Any = None
    data: T | None = None
    error: Any = None
    request_id: str | None = None
    started_timestamp: int | None = None
    fulfilled_timestamp: int | None = None
    is_invalidated: bool = False
    has_next_page: bool = False
    has_previous_page: bool = False
    direction: PageDirection | None = None

    @property
    def is_uninitialized(self) -> bool:
        return self.status is QueryStatus.UNINITIALIZED

    @property
    def is_fetching(self) -> bool:
        return self.status is QueryStatus.PENDING

    @property
    def is_loading(self) -> bool:
        """Pending with nothing cached yet."""
        return self.is_fetching and self.fulfilled_timestamp is None

    @property
    def is_success(self) -> bool:
        return self.status is QueryStatus.FULFILLED

    @property
    def is_error(self) -> bool:
        return self.status is QueryStatus.REJECTED

    @property
    def is_fetching_next_page(self) -> bool:
        return self.is_fetching and self.direction == "forward"

    @property
    def is_fetching_previous_page(self) -> bool:
        return self.is_fetching and self.direction == "backward"


@dataclass(frozen=True, slots=True)
class SubscriptionOptions:
    """Per-subscription behaviour. ``None`` defers to endpoint/api config."""

    polling_interval: Duration = 0
    skip_polling_if_unfocused: bool = False
    refetch_on_focus: bool | None = None
    refetch_on_reconnect: bool | None = None
    keep_unused_data_for: Duration | None = None
