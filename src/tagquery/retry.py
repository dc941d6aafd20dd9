"""Retrying wrapper around a base query."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, NoReturn

from tagquery.executor import BaseQuery, ExecutionContext
from tagquery.types import QueryReturnValue
from tagquery.utils import maybe_await

logger = logging.getLogger(__name__)

Backoff = Callable[[int, int], Awaitable[None]]


class RetryBail(Exception):
    """Raised by :func:`bail` to stop retrying with a final error."""

    def __init__(self, error: Any, meta: Any = None) -> None:
        self.error = error
        self.meta = meta
        super().__init__(repr(error))


def bail(error: Any, meta: Any = None) -> NoReturn:
    """Stop retrying and settle with ``error``; call from inside a base query."""
    raise RetryBail(error, meta)


async def default_backoff(attempt: int, max_retries: int) -> None:
    """Exponential backoff with jitter: roughly 300ms, 600ms, 1.2s, ..."""
    attempts = min(attempt, max_retries)
    delay_ms = (random.random() + 0.4) * (300 << attempts)
    await asyncio.sleep(delay_ms / 1000)


def retry(
    base_query: BaseQuery,
    *,
    max_retries: int = 5,
    backoff: Backoff = default_backoff,
    retry_condition: Callable[..., bool] | None = None,
) -> BaseQuery:
    """Wrap ``base_query`` so failed attempts are retried.

    Error results and raised exceptions are retried until ``max_retries``
    is used up. An endpoint may override the count with
    ``extra_options={"max_retries": n}``. When ``retry_condition(error,
    args, attempt=, context=, extra_options=)`` is given it alone decides.
    """
    if max_retries < 0:
        raise ValueError("max_retries must not be negative")

    async def retrying(
        args: Any, context: ExecutionContext, extra_options: Any = None
    ) -> QueryReturnValue[Any]:
        limit = max_retries
        if isinstance(extra_options, Mapping):
            limit = extra_options.get("max_retries", max_retries)

        attempt = 0
        while True:
            failure: Exception | None = None
            try:
                result = QueryReturnValue.coerce(
                    await maybe_await(base_query(args, context, extra_options))
                )
            except RetryBail as exc:
                return QueryReturnValue(error=exc.error, meta=exc.meta)
            except Exception as exc:
                failure = exc
                result = QueryReturnValue(error=exc)
            if not result.is_error:
                return result

            attempt += 1
            if retry_condition is not None:
                should_retry = retry_condition(
                    result.error,
                    args,
                    attempt=attempt,
                    context=context,
                    extra_options=extra_options,
                )
            else:
                should_retry = attempt <= limit
            if not should_retry or context.signal.aborted:
                if failure is not None:
                    raise failure
                return result

            logger.debug(
                "Retrying %s (attempt %d) after %r",
                context.endpoint,
                attempt,
                result.error,
            )
            await backoff(attempt, limit)

    return retrying


retry.fail = bail  # type: ignore[attr-defined]


__all__ = ["RetryBail", "bail", "default_backoff", "retry"]
