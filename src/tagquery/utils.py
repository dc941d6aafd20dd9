"""Small helpers shared across modules."""

import inspect
import secrets
import time
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def new_request_id() -> str:
    return secrets.token_urlsafe(12)


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable; callbacks may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value
