"""Request execution: builds requests, calls the transport, validates and
transforms results.

The executor never touches the cache. It turns one attempt into an
:class:`ExecutionResult`, which the api hands to the store.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tagquery import paginate
from tagquery.endpoints import EndpointDefinition, InfiniteQueryArg
from tagquery.errors import AbortedError, SchemaValidationError
from tagquery.paginate import InfiniteData
from tagquery.schema import (
    SchemaName,
    SkipSchemaValidation,
    parse_with_schema,
    should_skip,
)
from tagquery.types import PageDirection, QueryReturnValue, RequestType
from tagquery.utils import maybe_await

logger = logging.getLogger(__name__)

# (request, context, extra_options) -> QueryReturnValue | mapping, sync or async
BaseQuery = Callable[..., Any]


class AbortSignal:
    """Cooperative cancellation flag handed to the transport.

    Transports may poll :attr:`aborted`, ``await signal.wait()``, or simply
    let the attempt's task be canceled underneath them.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Any = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def _set(self, reason: Any) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()


class AbortController:
    """Owns one attempt's signal and task."""

    __slots__ = ("signal", "task")

    def __init__(self) -> None:
        self.signal = AbortSignal()
        self.task: asyncio.Task[Any] | None = None

    def abort(self, reason: Any = None) -> None:
        if self.signal.aborted:
            return
        self.signal._set(reason)
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass(frozen=True, slots=True, kw_only=True)
class ExecutionContext:
    """Everything the transport may know about the attempt."""

    signal: AbortSignal
    abort: Callable[..., None]
    get_state: Callable[[], Mapping[str, Any]]
    api: Any
    endpoint: str
    type: RequestType
    request_id: str
    forced: bool = False
    query_cache_key: str | None = None
    extra: Any = None


class Outcome(str, Enum):
    FULFILLED = "fulfilled"
    REJECTED = "rejected"
    ABORTED = "aborted"
    # fatal schema failure: the entry must not change
    INVALID = "invalid"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Result of one attempt.

    For a directional infinite-query fetch ``data`` is the single new page
    and ``page_param``/``direction`` say where it goes; otherwise ``data`` is
    the complete value.
    """

    outcome: Outcome
    data: Any = None
    error: Any = None
    meta: Any = None
    is_unhandled_error: bool = False
    page_param: Any = None
    direction: PageDirection | None = None

    @property
    def is_success(self) -> bool:
        return self.outcome is Outcome.FULFILLED


@dataclass(frozen=True, slots=True)
class InfiniteRequest:
    """Paging inputs of an infinite-query attempt."""

    existing: InfiniteData[Any, Any] | None = None
    direction: PageDirection | None = None
    initial_page_param: Any = None
    max_pages: int | None = None


@dataclass
class RequestExecutor:
    """Runs the fetch/transform pipeline for a single attempt."""

    base_query: BaseQuery
    skip_schema_validation: SkipSchemaValidation = False
    catch_schema_failure: Callable[..., Any] | None = None
    on_schema_failure: Callable[..., Any] | None = None

    async def execute(
        self,
        definition: EndpointDefinition,
        arg: Any,
        context: ExecutionContext,
        *,
        infinite: InfiniteRequest | None = None,
    ) -> ExecutionResult:
        """Execute and classify; never raises except for foreign cancellation."""
        try:
            arg = await self._check(definition, "arg", arg, arg)
            if infinite is not None:
                return await self._execute_infinite(definition, arg, context, infinite)
            result = await self._fetch(definition, arg, arg, context)
            return self._classify(result)
        except asyncio.CancelledError:
            if context.signal.aborted:
                logger.debug(
                    "Attempt %s for %r aborted", context.request_id, definition.name
                )
                return ExecutionResult(
                    Outcome.ABORTED, error=AbortedError(context.signal.reason)
                )
            raise
        except SchemaValidationError as exc:
            return self._schema_failure(definition, exc, context)
        except Exception as exc:
            logger.error(
                "Unhandled error in endpoint %r (request %s)",
                definition.name,
                context.request_id,
                exc_info=True,
            )
            return ExecutionResult(
                Outcome.REJECTED, error=exc, is_unhandled_error=True
            )

    def _validates(
        self, definition: EndpointDefinition, schema_name: SchemaName
    ) -> bool:
        skip = definition.skip_schema_validation
        if skip is None:
            skip = self.skip_schema_validation
        return not should_skip(skip, schema_name)

    async def _check(
        self,
        definition: EndpointDefinition,
        schema_name: SchemaName,
        value: Any,
        arg: Any,
    ) -> Any:
        schema = getattr(definition, f"{schema_name}_schema")
        if schema is None or not self._validates(definition, schema_name):
            return value
        return await parse_with_schema(
            schema, value, schema_name, endpoint_name=definition.name, arg=arg
        )

    def _classify(self, result: QueryReturnValue[Any]) -> ExecutionResult:
        if result.is_error:
            return ExecutionResult(
                Outcome.REJECTED, error=result.error, meta=result.meta
            )
        return ExecutionResult(Outcome.FULFILLED, data=result.data, meta=result.meta)

    def _schema_failure(
        self,
        definition: EndpointDefinition,
        error: SchemaValidationError,
        context: ExecutionContext,
    ) -> ExecutionResult:
        report = definition.on_schema_failure or self.on_schema_failure
        if report is not None:
            try:
                report(error, context)
            except Exception:
                logger.warning("on_schema_failure callback raised", exc_info=True)

        catch = definition.catch_schema_failure or self.catch_schema_failure
        if catch is not None:
            return ExecutionResult(Outcome.REJECTED, error=catch(error, context))
        logger.debug("Schema failure in %r is fatal: %s", definition.name, error)
        return ExecutionResult(Outcome.INVALID, error=error, is_unhandled_error=True)

    async def _fetch(
        self,
        definition: EndpointDefinition,
        request_arg: Any,
        arg: Any,
        context: ExecutionContext,
    ) -> QueryReturnValue[Any]:
        """One transport round trip, validated and transformed.

        Raw schemas only apply on the request-builder path; a custom
        ``query_fn`` already returns final values.
        """
        from_builder = definition.query is not None
        if from_builder:
            request = definition.query(request_arg)  # type: ignore[misc]
            raw = await maybe_await(
                self.base_query(request, context, definition.extra_options)
            )
        else:
            raw = await maybe_await(
                definition.query_fn(  # type: ignore[misc]
                    request_arg, context, definition.extra_options, self.base_query
                )
            )
        result = QueryReturnValue.coerce(raw)
        meta = result.meta

        if result.is_error:
            error = result.error
            if from_builder:
                error = await self._check(definition, "raw_error_response", error, arg)
            if definition.transform_error_response is not None:
                error = await maybe_await(
                    definition.transform_error_response(error, meta, arg)
                )
            error = await self._check(definition, "error_response", error, arg)
            meta = await self._check(definition, "meta", meta, arg)
            return QueryReturnValue(error=error, meta=meta)

        data = result.data
        if from_builder:
            data = await self._check(definition, "raw_response", data, arg)
        if definition.transform_response is not None:
            data = await maybe_await(definition.transform_response(data, meta, arg))
        data = await self._check(definition, "response", data, arg)
        meta = await self._check(definition, "meta", meta, arg)
        return QueryReturnValue(data=data, meta=meta)

    async def _execute_infinite(
        self,
        definition: EndpointDefinition,
        arg: Any,
        context: ExecutionContext,
        request: InfiniteRequest,
    ) -> ExecutionResult:
        options = definition.infinite_query_options  # type: ignore[attr-defined]
        existing = request.existing
        max_pages = request.max_pages or options.max_pages

        if request.direction is not None and existing is not None and existing.pages:
            if request.direction == "forward":
                param = paginate.get_next_page_param(options, existing, arg)
            else:
                param = paginate.get_previous_page_param(options, existing, arg)
            if param is None:
                # nothing further in that direction, keep what we have
                return ExecutionResult(Outcome.FULFILLED, data=existing)
            result = await self._fetch(
                definition, InfiniteQueryArg(arg, param), arg, context
            )
            if result.is_error:
                return self._classify(result)
            return ExecutionResult(
                Outcome.FULFILLED,
                data=result.data,
                meta=result.meta,
                page_param=param,
                direction=request.direction,
            )

        if existing is not None and existing.pages:
            # refetch every cached page, in order, from the first param
            param = existing.page_params[0]
            count = len(existing.pages)
        else:
            param = (
                request.initial_page_param
                if request.initial_page_param is not None
                else options.initial_page_param
            )
            count = 1

        data: InfiniteData[Any, Any] = InfiniteData()
        meta: Any = None
        for index in range(count):
            result = await self._fetch(
                definition, InfiniteQueryArg(arg, param), arg, context
            )
            if result.is_error:
                return self._classify(result)
            meta = result.meta
            data = paginate.add_page(data, result.data, param, "forward", max_pages)
            if index + 1 < count:
                param = paginate.get_next_page_param(options, data, arg)
                if param is None:
                    break
        return ExecutionResult(Outcome.FULFILLED, data=data, meta=meta)


__all__ = [
    "AbortController",
    "AbortSignal",
    "BaseQuery",
    "ExecutionContext",
    "ExecutionResult",
    "InfiniteRequest",
    "Outcome",
    "RequestExecutor",
]
