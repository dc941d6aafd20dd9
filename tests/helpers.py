"""Test doubles and helpers shared by the test modules."""

import asyncio
from dataclasses import dataclass
from typing import Any

from tagquery import (
    Api,
    ExecutionContext,
    FetchArgs,
    MutationEndpoint,
    QueryEndpoint,
    Tag,
)
from tagquery.executor import AbortController


class FakeBackend:
    """In-memory posts service used as a base query.

    Every request is recorded. The response is computed when the request
    arrives; ``hold(url)`` makes requests for ``url`` wait until the
    returned event is set before they answer.
    """

    def __init__(self) -> None:
        self.posts: dict[int, dict[str, Any]] = {
            5: {"id": 5, "title": "Five"},
            7: {"id": 7, "title": "Seven"},
        }
        self.requests: list[FetchArgs] = []
        self.failing: set[str] = set()
        self._gates: dict[str, asyncio.Event] = {}

    def hold(self, url: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[url] = gate
        return gate

    def release(self, url: str) -> None:
        gate = self._gates.pop(url, None)
        if gate is not None:
            gate.set()

    def calls(self, url: str, method: str = "GET") -> int:
        return sum(1 for r in self.requests if r.url == url and r.method == method)

    async def __call__(
        self, args: FetchArgs | str, context: Any, extra_options: Any = None
    ) -> dict[str, Any]:
        if not isinstance(args, FetchArgs):
            args = FetchArgs(args)
        self.requests.append(args)
        response = self._respond(args)
        gate = self._gates.get(args.url)
        if gate is not None:
            await gate.wait()
        return response

    def _respond(self, args: FetchArgs) -> dict[str, Any]:
        if args.url in self.failing:
            return {"error": {"status": 500, "data": "boom"}}
        if args.url == "posts":
            return {"data": [dict(self.posts[i]) for i in sorted(self.posts)]}
        post_id = int(args.url.split("/")[1])
        if post_id not in self.posts:
            return {"error": {"status": 404, "data": None}}
        if args.method == "PATCH":
            self.posts[post_id] = {**self.posts[post_id], **args.body}
        return {"data": dict(self.posts[post_id])}


@dataclass
class PostsApi:
    api: Api
    get_post: QueryEndpoint
    list_posts: QueryEndpoint
    update_post: MutationEndpoint


def define_posts(api: Api) -> PostsApi:
    """Register the posts endpoints on ``api``."""

    @api.query(
        "getPost", provides_tags=lambda _post, _err, post_id, _meta: [("Post", post_id)]
    )
    def get_post(post_id: int) -> str:
        return f"posts/{post_id}"

    @api.query(
        "listPosts",
        provides_tags=lambda posts, *_: [
            *(Tag("Post", post["id"]) for post in posts),
            Tag("Post", "LIST"),
        ],
    )
    def list_posts(_: Any) -> str:
        return "posts"

    @api.mutation(
        "updatePost",
        invalidates_tags=lambda _result, _err, body, _meta: [("Post", body["id"])],
    )
    def update_post(body: dict[str, Any]) -> FetchArgs:
        return FetchArgs(f"posts/{body['id']}", method="PATCH", body=body)

    return PostsApi(api, get_post, list_posts, update_post)


def make_context(controller: AbortController | None = None) -> ExecutionContext:
    """A standalone execution context for calling base queries directly."""
    controller = controller or AbortController()
    return ExecutionContext(
        signal=controller.signal,
        abort=controller.abort,
        get_state=dict,
        api=None,
        endpoint="getPost",
        type="query",
        request_id="r1",
    )


async def flush(ticks: int = 5) -> None:
    """Let ready callbacks and tasks run."""
    for _ in range(ticks):
        await asyncio.sleep(0)
