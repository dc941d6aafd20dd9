"""Tests for the request execution pipeline."""

import asyncio
import logging
from typing import Any

import pytest
from helpers import make_context

from tagquery import (
    AbortedError,
    InfiniteData,
    InfiniteQueryArg,
    InfiniteQueryDefinition,
    InfiniteQueryOptions,
    MutationDefinition,
    PydanticSchema,
    QueryDefinition,
    QueryReturnValue,
    SchemaValidationError,
)
from tagquery.executor import (
    AbortController,
    InfiniteRequest,
    Outcome,
    RequestExecutor,
)


class Recorder:
    """Base query returning a fixed result and recording its calls."""

    def __init__(self, result: Any = None) -> None:
        self.result = result if result is not None else {"data": {"id": 5}}
        self.calls: list[tuple[Any, Any, Any]] = []

    def __call__(self, request, context, extra_options=None):
        self.calls.append((request, context, extra_options))
        return self.result


class TestPipeline:
    """Tests for the builder and custom executor paths."""

    async def test_builder_result_goes_through_base_query(self) -> None:
        """Test that the built request is passed to the base query."""
        transport = Recorder()
        definition = QueryDefinition(
            name="getPost",
            query=lambda post_id: f"posts/{post_id}",
            extra_options={"cache": "no"},
            transform_response=lambda data, meta, arg: {**data, "arg": arg},
        )
        context = make_context()
        result = await RequestExecutor(transport).execute(definition, 5, context)

        assert result.outcome is Outcome.FULFILLED
        assert result.data == {"id": 5, "arg": 5}
        assert transport.calls == [("posts/5", context, {"cache": "no"})]

    async def test_query_fn_receives_base_query(self) -> None:
        """Test that a custom executor can call the base query."""
        transport = Recorder()

        async def custom(arg, context, extra_options, base_query):
            first = base_query(f"posts/{arg}", context, extra_options)
            return QueryReturnValue(data=[first["data"]], meta="custom")

        definition = QueryDefinition(name="getPost", query_fn=custom)
        result = await RequestExecutor(transport).execute(definition, 5, make_context())
        assert result.data == [{"id": 5}]
        assert result.meta == "custom"

    async def test_error_result_is_rejected(self) -> None:
        """Test that error results are transformed and rejected."""
        transport = Recorder({"error": {"status": 404}, "meta": "m"})
        definition = QueryDefinition(
            name="getPost",
            query=str,
            transform_error_response=lambda error, meta, arg: error["status"],
        )
        result = await RequestExecutor(transport).execute(definition, 5, make_context())
        assert result.outcome is Outcome.REJECTED
        assert result.error == 404
        assert result.meta == "m"
        assert not result.is_unhandled_error

    async def test_exception_is_unhandled_error(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a raising transport is logged as unhandled."""
        def broken(request, context, extra_options=None):
            raise RuntimeError("transport exploded")

        definition = MutationDefinition(name="updatePost", query=str)
        with caplog.at_level(logging.ERROR, logger="tagquery.executor"):
            result = await RequestExecutor(broken).execute(
                definition, 1, make_context()
            )
        assert result.outcome is Outcome.REJECTED
        assert result.is_unhandled_error
        assert isinstance(result.error, RuntimeError)
        assert "updatePost" in caplog.text

    async def test_malformed_transport_result(self) -> None:
        """Test that a malformed transport result is a TypeError."""
        definition = QueryDefinition(name="getPost", query=str)
        result = await RequestExecutor(Recorder("nope")).execute(
            definition, 5, make_context()
        )
        assert result.is_unhandled_error
        assert isinstance(result.error, TypeError)


class TestSchemas:
    """Tests for schema checks and schema failure handling."""

    async def test_response_is_coerced(self) -> None:
        """Test that the response schema coerces data."""
        transport = Recorder({"data": {"id": "5"}})
        definition = QueryDefinition(
            name="getPost",
            query=str,
            response_schema=PydanticSchema(dict[str, int]),
        )
        result = await RequestExecutor(transport).execute(definition, 5, make_context())
        assert result.data == {"id": 5}

    async def test_arg_failure_is_fatal_and_reported(self) -> None:
        """Test that an invalid argument never reaches the transport."""
        transport = Recorder()
        reported = []
        definition = QueryDefinition(
            name="getPost",
            query=str,
            arg_schema=PydanticSchema(int),
            on_schema_failure=lambda error, context: reported.append(error),
        )
        result = await RequestExecutor(transport).execute(
            definition, "five", make_context()
        )
        assert result.outcome is Outcome.INVALID
        assert isinstance(result.error, SchemaValidationError)
        assert result.error.schema_name == "arg_schema"
        assert reported == [result.error]
        assert transport.calls == []

    async def test_catch_schema_failure_turns_into_rejection(self) -> None:
        """Test that catch_schema_failure turns a failure into an error."""
        transport = Recorder({"data": "not a post"})
        executor = RequestExecutor(
            transport,
            catch_schema_failure=lambda error, context: {"status": "CUSTOM"},
        )
        definition = QueryDefinition(
            name="getPost", query=str, response_schema=PydanticSchema(dict)
        )
        result = await executor.execute(definition, 5, make_context())
        assert result.outcome is Outcome.REJECTED
        assert result.error == {"status": "CUSTOM"}

    async def test_endpoint_skip_overrides_api(self) -> None:
        """Test that the endpoint skip setting beats the api one."""
        transport = Recorder({"data": "raw"})
        executor = RequestExecutor(transport, skip_schema_validation=True)
        definition = QueryDefinition(
            name="getPost",
            query=str,
            response_schema=PydanticSchema(int),
            skip_schema_validation=False,
        )
        result = await executor.execute(definition, 5, make_context())
        assert result.outcome is Outcome.INVALID

    async def test_api_skip_by_name(self) -> None:
        """Test that the api can skip schemas by name."""
        transport = Recorder({"data": "raw"})
        executor = RequestExecutor(transport, skip_schema_validation=["response"])
        definition = QueryDefinition(
            name="getPost", query=str, response_schema=PydanticSchema(int)
        )
        result = await executor.execute(definition, 5, make_context())
        assert result.data == "raw"

    async def test_raw_response_schema_skipped_for_query_fn(self) -> None:
        """Test that custom executors skip the raw response schema."""
        definition = QueryDefinition(
            name="getPost",
            query_fn=lambda arg, context, extra, base_query: {"data": "final"},
            raw_response_schema=PydanticSchema(int),
        )
        result = await RequestExecutor(Recorder()).execute(
            definition, 5, make_context()
        )
        assert result.data == "final"


class TestAbort:
    """Tests for aborting a running request."""

    async def test_abort_while_waiting(self) -> None:
        """Test that aborting a waiting transport yields ABORTED."""
        started = asyncio.Event()

        async def slow(request, context, extra_options=None):
            started.set()
            await asyncio.sleep(10)
            return {"data": "late"}

        controller = AbortController()
        definition = QueryDefinition(name="getPost", query=str)
        task = asyncio.create_task(
            RequestExecutor(slow).execute(definition, 5, make_context(controller))
        )
        controller.task = task
        await started.wait()
        controller.abort("user")

        result = await task
        assert result.outcome is Outcome.ABORTED
        assert isinstance(result.error, AbortedError)
        assert result.error.reason == "user"
        assert controller.signal.aborted

    async def test_transport_can_watch_the_signal(self) -> None:
        """Test that the transport sees the abort signal."""
        seen = []

        async def watching(request, context, extra_options=None):
            context.abort("from transport")
            seen.append(context.signal.aborted)
            return {"data": 1}

        definition = QueryDefinition(name="getPost", query=str)
        result = await RequestExecutor(watching).execute(
            definition, 5, make_context()
        )
        # without a task to cancel the attempt still completes
        assert seen == [True]
        assert result.outcome is Outcome.FULFILLED


class TestInfinite:
    """Tests for infinite query page fetching."""

    @pytest.fixture
    def definition(self) -> InfiniteQueryDefinition:
        return InfiniteQueryDefinition(
            name="listPage",
            query=lambda arg: arg,
            infinite_query_options=InfiniteQueryOptions(
                initial_page_param=1,
                get_next_page_param=lambda last, pages, param, params, arg: (
                    param + 1 if param < 4 else None
                ),
                get_previous_page_param=lambda first, pages, param, params, arg: (
                    param - 1 if param > 1 else None
                ),
            ),
        )

    @staticmethod
    def pages(request: InfiniteQueryArg, context, extra_options=None):
        return {"data": f"{request.query_arg}-{request.page_param}"}

    async def test_initial_fetch(self, definition: InfiniteQueryDefinition) -> None:
        """Test that the first fetch uses the initial page param."""
        result = await RequestExecutor(self.pages).execute(
            definition, "q", make_context(), infinite=InfiniteRequest()
        )
        assert result.data == InfiniteData(["q-1"], [1])

    async def test_explicit_initial_param(
        self, definition: InfiniteQueryDefinition
    ) -> None:
        """Test that an explicit initial page param wins."""
        result = await RequestExecutor(self.pages).execute(
            definition,
            "q",
            make_context(),
            infinite=InfiniteRequest(initial_page_param=3),
        )
        assert result.data == InfiniteData(["q-3"], [3])

    async def test_forward_returns_single_page(
        self, definition: InfiniteQueryDefinition
    ) -> None:
        """Test that a forward fetch returns only the new page."""
        existing = InfiniteData(["q-1"], [1])
        result = await RequestExecutor(self.pages).execute(
            definition,
            "q",
            make_context(),
            infinite=InfiniteRequest(existing, "forward"),
        )
        assert result.data == "q-2"
        assert result.page_param == 2
        assert result.direction == "forward"

    async def test_no_next_page_keeps_existing(
        self, definition: InfiniteQueryDefinition
    ) -> None:
        """Test that no next param keeps the pages without a request."""
        existing = InfiniteData(["q-4"], [4])
        calls = []

        def transport(request, context, extra_options=None):
            calls.append(request)
            return {"data": None}

        result = await RequestExecutor(transport).execute(
            definition,
            "q",
            make_context(),
            infinite=InfiniteRequest(existing, "forward"),
        )
        assert result.data is existing
        assert result.direction is None
        assert calls == []

    async def test_refetch_reloads_every_page(
        self, definition: InfiniteQueryDefinition
    ) -> None:
        """Test that a refetch reloads every cached page."""
        existing = InfiniteData(["old-2", "old-3"], [2, 3])
        result = await RequestExecutor(self.pages).execute(
            definition, "q", make_context(), infinite=InfiniteRequest(existing)
        )
        assert result.data == InfiniteData(["q-2", "q-3"], [2, 3])

    async def test_refetch_stops_on_error(
        self, definition: InfiniteQueryDefinition
    ) -> None:
        """Test that a page refetch stops at the first error."""
        def transport(request, context, extra_options=None):
            if request.page_param == 2:
                return {"error": "page 2 failed"}
            return {"data": request.page_param}

        existing = InfiniteData([1, 2, 3], [1, 2, 3])
        result = await RequestExecutor(transport).execute(
            definition, "q", make_context(), infinite=InfiniteRequest(existing)
        )
        assert result.outcome is Outcome.REJECTED
        assert result.error == "page 2 failed"
