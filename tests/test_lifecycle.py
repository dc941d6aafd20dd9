"""Tests for endpoint lifecycle callbacks."""

import logging
from typing import Any

import pytest
from helpers import FakeBackend, define_posts, flush

from tagquery import (
    Api,
    CacheLifecycleApi,
    EntryRemovedError,
    FetchArgs,
    QueryLifecycleApi,
    QueryRejected,
    create_api,
)


class TestOnQueryStarted:
    """Tests for per-attempt callbacks."""

    async def test_runs_before_transport_and_sees_result(
        self, api: Api, backend: FakeBackend
    ) -> None:
        """Test that on_query_started runs first and sees the result."""
        events: list[Any] = []

        async def started(arg: int, lifecycle: QueryLifecycleApi) -> None:
            events.append(("started", arg, len(backend.requests)))
            fulfilled = await lifecycle.query_fulfilled
            events.append(("fulfilled", fulfilled.data["title"]))

        @api.query("getPost", on_query_started=started)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        await get_post.initiate(5).unwrap()
        await flush()
        assert events == [("started", 5, 0), ("fulfilled", "Five")]

    async def test_rejection_carries_error(
        self, api: Api, backend: FakeBackend
    ) -> None:
        """Test that query_fulfilled fails with the request error."""
        errors: list[Any] = []

        async def started(arg: int, lifecycle: QueryLifecycleApi) -> None:
            try:
                await lifecycle.query_fulfilled
            except QueryRejected as exc:
                errors.append(exc.error)

        @api.query("getPost", on_query_started=started)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        state = await get_post.initiate(404)
        await flush()
        assert state.is_error
        assert errors == [{"status": 404, "data": None}]

    async def test_optimistic_update_undone_on_failure(
        self, api: Api, backend: FakeBackend
    ) -> None:
        """Test that an optimistic update is undone when the request fails."""
        posts = define_posts(api)
        seen: list[str] = []

        async def optimistic(
            body: dict[str, Any], lifecycle: QueryLifecycleApi
        ) -> None:
            patch = lifecycle.api.update_query_data(
                "getPost", body["id"], lambda draft: draft.update(title=body["title"])
            )
            seen.append(lifecycle.api.select("getPost", body["id"]).data["title"])
            try:
                await lifecycle.query_fulfilled
            except QueryRejected:
                patch.undo()

        @api.mutation("renamePost", on_query_started=optimistic)
        def rename_post(body: dict[str, Any]) -> FetchArgs:
            return FetchArgs(f"posts/{body['id']}", method="PATCH", body=body)

        handle = posts.get_post.initiate(5)
        await handle.unwrap()
        backend.failing.add("posts/5")

        state = await rename_post.initiate({"id": 5, "title": "Optimistic"})
        await flush()

        assert state.is_error
        assert seen == ["Optimistic"]
        assert posts.get_post.select(5).data == {"id": 5, "title": "Five"}

    async def test_optimistic_update_kept_on_success(
        self, api: Api, backend: FakeBackend
    ) -> None:
        """Test that an optimistic update stays when the request succeeds."""
        posts = define_posts(api)

        def optimistic(body: dict[str, Any], lifecycle: QueryLifecycleApi) -> None:
            lifecycle.api.update_query_data(
                "getPost", body["id"], lambda draft: draft.update(title=body["title"])
            )

        @api.mutation("renamePost", on_query_started=optimistic)
        def rename_post(body: dict[str, Any]) -> FetchArgs:
            return FetchArgs(f"posts/{body['id']}", method="PATCH", body=body)

        await posts.get_post.initiate(5).unwrap()
        backend.hold("posts/5")
        rename_post.initiate({"id": 5, "title": "Optimistic"})
        await flush()

        assert posts.get_post.select(5).data["title"] == "Optimistic"
        backend.release("posts/5")

    async def test_mutation_lifecycle_cannot_update_cache(self, api: Api) -> None:
        """Test that mutation callbacks get no update_cached_data."""
        updaters: list[Any] = []

        def started(arg: Any, lifecycle: QueryLifecycleApi) -> None:
            updaters.append(lifecycle.update_cached_data)

        @api.mutation("updatePost", on_query_started=started)
        def update_post(body: dict[str, Any]) -> FetchArgs:
            return FetchArgs(f"posts/{body['id']}", method="PATCH", body=body)

        await update_post.initiate({"id": 5}).unwrap()
        assert updaters == [None]

    async def test_raising_callback_does_not_fail_request(
        self, api: Api, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a raising callback does not fail the request."""
        def started(arg: Any, lifecycle: QueryLifecycleApi) -> None:
            raise RuntimeError("callback bug")

        @api.query("getPost", on_query_started=started)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        with caplog.at_level(logging.WARNING, logger="tagquery.lifecycle"):
            post = await get_post.initiate(5).unwrap()
        assert post["id"] == 5
        assert "Lifecycle callback" in caplog.text

    async def test_async_callback_error_is_logged(
        self, api: Api, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that an async callback error is logged."""
        async def started(arg: Any, lifecycle: QueryLifecycleApi) -> None:
            await lifecycle.query_fulfilled
            raise ValueError("after fulfilled")

        @api.query("getPost", on_query_started=started)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        with caplog.at_level(logging.WARNING, logger="tagquery.lifecycle"):
            await get_post.initiate(5).unwrap()
            await flush()
        assert "after fulfilled" in caplog.text


class TestOnCacheEntryAdded:
    """Tests for per-entry callbacks."""

    async def test_loaded_then_removed(self, api: Api) -> None:
        """Test that cache_data_loaded and cache_entry_removed resolve."""
        log: list[Any] = []

        async def entry_added(arg: int, lifecycle: CacheLifecycleApi) -> None:
            log.append(("added", arg, lifecycle.get_cache_entry().status.value))
            loaded = await lifecycle.cache_data_loaded
            log.append(("loaded", loaded.data["id"]))
            await lifecycle.cache_entry_removed
            log.append(("removed", arg))

        @api.query("getPost", on_cache_entry_added=entry_added)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        handle = get_post.initiate(5)
        await handle.unwrap()
        await get_post.initiate(5, force_refetch=True).unwrap()
        await flush()
        assert log == [("added", 5, "pending"), ("loaded", 5)]

        api.reset_api_state()
        await flush()
        assert log[-1] == ("removed", 5)

    async def test_removed_before_first_value(
        self, api: Api, backend: FakeBackend
    ) -> None:
        """Test that removal before data fails cache_data_loaded."""
        log: list[str] = []

        async def entry_added(arg: int, lifecycle: CacheLifecycleApi) -> None:
            try:
                await lifecycle.cache_data_loaded
            except EntryRemovedError:
                log.append("never loaded")
            await lifecycle.cache_entry_removed
            log.append("removed")

        @api.query("getPost", on_cache_entry_added=entry_added)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        backend.hold("posts/5")
        handle = get_post.initiate(5)
        await flush()
        api.reset_api_state()
        await flush()

        assert log == ["never loaded", "removed"]
        assert (await handle.result()).outcome.value == "aborted"

    async def test_update_cached_data_from_entry_callback(self, api: Api) -> None:
        """Test that entry callbacks can update cached data."""
        async def entry_added(arg: int, lifecycle: CacheLifecycleApi) -> None:
            await lifecycle.cache_data_loaded
            assert lifecycle.update_cached_data is not None
            lifecycle.update_cached_data(lambda draft: draft.update(streamed=True))

        @api.query("getPost", on_cache_entry_added=entry_added)
        def get_post(post_id: int) -> str:
            return f"posts/{post_id}"

        await get_post.initiate(5).unwrap()
        await flush()
        assert get_post.select(5).data == {"id": 5, "title": "Five", "streamed": True}

    async def test_close_cancels_waiting_callbacks(self, backend: FakeBackend) -> None:
        """Test that close lets callbacks clean up."""
        api = create_api(base_query=backend)
        cleaned: list[bool] = []

        async def entry_added(arg: int, lifecycle: CacheLifecycleApi) -> None:
            await lifecycle.cache_entry_removed
            cleaned.append(True)

        api.query("getPost", on_cache_entry_added=entry_added)(lambda i: f"posts/{i}")

        await api.endpoints["getPost"].initiate(5).unwrap()
        await api.close()
        assert cleaned == [True]
