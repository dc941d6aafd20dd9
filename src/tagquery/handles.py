"""Awaitable handles returned when a query or mutation is initiated."""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from tagquery.errors import raise_for_error
from tagquery.executor import ExecutionResult, Outcome
from tagquery.types import QueryState, SubscriptionOptions

if TYPE_CHECKING:
    from tagquery.api import Api, _Attempt

T = TypeVar("T")


def _unwrap(result: ExecutionResult) -> Any:
    if result.outcome is Outcome.FULFILLED:
        return result.data
    raise_for_error(result.error, result.meta)


class QueryHandle(Generic[T]):
    """Handle for one query initiation.

    Usage:
        handle = get_post.initiate(5)
        state = await handle            # QueryState, never raises
        post = await handle.unwrap()    # data, or raises the error
        handle.unsubscribe()

    A handle is bound to the attempt it started or joined. When the data
    was served from cache there is no attempt and the cached value is the
    result.
    """

    __slots__ = (
        "_api",
        "_attempt",
        "_settled",
        "_subscription_id",
        "endpoint_name",
        "key",
        "arg",
    )

    def __init__(
        self,
        api: Api,
        endpoint_name: str,
        key: str,
        arg: Any,
        *,
        attempt: _Attempt | None = None,
        settled: ExecutionResult | None = None,
        subscription_id: str | None = None,
    ) -> None:
        self._api = api
        self._attempt = attempt
        self._settled = settled
        self._subscription_id = subscription_id
        self.endpoint_name = endpoint_name
        self.key = key
        self.arg = arg

    @property
    def query_cache_key(self) -> str:
        return self.key

    @property
    def request_id(self) -> str | None:
        return self._attempt.request_id if self._attempt is not None else None

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    async def result(self) -> ExecutionResult:
        """This attempt's own outcome."""
        if self._attempt is None:
            assert self._settled is not None
            return self._settled
        return await asyncio.shield(self._attempt.result)

    async def _state(self) -> QueryState[T]:
        await self.result()
        return self._api.select_by_key(self.key)

    def __await__(self) -> Generator[Any, None, QueryState[T]]:
        return self._state().__await__()

    async def unwrap(self) -> T:
        """Data of this attempt; raises its error instead of returning it."""
        return _unwrap(await self.result())  # type: ignore[no-any-return]

    def refetch(self) -> QueryHandle[T]:
        """Start a fresh forced fetch that supersedes any running one."""
        return self._api.refetch(self.endpoint_name, self.arg)

    def abort(self, reason: Any = None) -> None:
        if self._attempt is not None:
            self._attempt.controller.abort(reason)

    def unsubscribe(self) -> None:
        if self._subscription_id is None:
            return
        self._api.unsubscribe(self.key, self._subscription_id)
        self._subscription_id = None

    def update_subscription_options(self, options: SubscriptionOptions) -> None:
        if self._subscription_id is not None:
            self._api.update_subscription_options(
                self.key, self._subscription_id, options
            )

    def __repr__(self) -> str:
        return f"QueryHandle({self.key!r}, request_id={self.request_id!r})"


class MutationHandle(Generic[T]):
    """Handle for one mutation attempt.

    Usage:
        handle = update_post.initiate({"id": 5, "title": "New"})
        post = await handle.unwrap()
    """

    __slots__ = ("_api", "_attempt")

    def __init__(self, api: Api, attempt: _Attempt) -> None:
        self._api = api
        self._attempt = attempt

    @property
    def request_id(self) -> str:
        return self._attempt.request_id

    @property
    def key(self) -> str:
        """Tracking key: the fixed cache key or the request id."""
        return self._attempt.key

    @property
    def arg(self) -> Any:
        return self._attempt.arg

    async def result(self) -> ExecutionResult:
        return await asyncio.shield(self._attempt.result)

    async def _state(self) -> QueryState[T]:
        result = await self.result()
        state = self._api.select_mutation(self.key)
        if state.request_id == self.request_id:
            return state
        # untracked or taken over by a newer mutation with the same key
        return self._api.mutation_state_from(self._attempt, result)

    def __await__(self) -> Generator[Any, None, QueryState[T]]:
        return self._state().__await__()

    async def unwrap(self) -> T:
        return _unwrap(await self.result())  # type: ignore[no-any-return]

    def abort(self, reason: Any = None) -> None:
        self._attempt.controller.abort(reason)

    def reset(self) -> None:
        """Forget the tracked result of this mutation."""
        self._api.remove_mutation(self.key, self.request_id)

    def __repr__(self) -> str:
        return f"MutationHandle({self.key!r}, request_id={self.request_id!r})"


__all__ = ["MutationHandle", "QueryHandle"]
