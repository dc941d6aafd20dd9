"""A ready-made base query over httpx."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from tagquery.executor import BaseQuery, ExecutionContext
from tagquery.types import QueryReturnValue
from tagquery.utils import maybe_await

logger = logging.getLogger(__name__)

ResponseHandler = (
    Literal["json", "text", "content", "content-type"]
    | Callable[[httpx.Response], Any]
)


@dataclass(frozen=True, slots=True)
class FetchArgs:
    """Request description. A plain string is shorthand for a GET of that url.

    ``body`` is sent as JSON unless it is ``str`` or ``bytes``.
    """

    url: str
    method: str = "GET"
    params: Mapping[str, Any] | None = None
    body: Any = None
    headers: Mapping[str, str] | None = None
    response_handler: ResponseHandler = "json"
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class FetchMeta:
    request: httpx.Request
    response: httpx.Response | None = None


def join_url(base_url: str, url: str) -> str:
    if not base_url or httpx.URL(url).is_absolute_url:
        return url
    if not url:
        return base_url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


def _parse_body(response: httpx.Response, handler: ResponseHandler) -> Any:
    """Decode the body. Raises ValueError on malformed JSON."""
    if callable(handler):
        return handler(response)
    if handler == "content-type":
        content_type = response.headers.get("content-type", "")
        handler = "json" if "json" in content_type else "text"
    if handler == "text":
        return response.text
    if handler == "content":
        return response.content
    return response.json() if response.content else None


def fetch_base_query(
    base_url: str = "",
    *,
    prepare_headers: Callable[..., Any] | None = None,
    timeout: float | None = None,
    client: httpx.AsyncClient | None = None,
    validate_status: Callable[[httpx.Response, Any], bool] | None = None,
) -> BaseQuery:
    """Build a base query that sends requests with httpx.

    Usage:
        api = create_api(base_query=fetch_base_query("https://example.com/api"))

    Results:
        2xx                  -> ``{"data": body}``
        other status         -> ``{"error": {"status": code, "data": body}}``
        connection failure   -> ``{"error": {"status": "FETCH_ERROR", ...}}``
        timeout              -> ``{"error": {"status": "TIMEOUT_ERROR", ...}}``
        undecodable body     -> ``{"error": {"status": "PARSING_ERROR", ...}}``

    ``prepare_headers(headers, context)`` may modify and/or return the
    headers (sync or async). Without ``client`` each request opens and closes
    its own ``httpx.AsyncClient``.
    """

    async def base_query(
        args: FetchArgs | str,
        context: ExecutionContext,
        extra_options: Any = None,
    ) -> QueryReturnValue[Any]:
        fetch_args = args if isinstance(args, FetchArgs) else FetchArgs(str(args))

        headers = httpx.Headers(fetch_args.headers or {})
        if prepare_headers is not None:
            prepared = await maybe_await(prepare_headers(headers, context))
            if prepared is not None:
                headers = httpx.Headers(prepared)

        body: dict[str, Any] = {}
        if isinstance(fetch_args.body, (str, bytes)):
            body["content"] = fetch_args.body
        elif fetch_args.body is not None:
            body["json"] = fetch_args.body

        request_timeout = (
            fetch_args.timeout if fetch_args.timeout is not None else timeout
        )
        http = client if client is not None else httpx.AsyncClient()
        if request_timeout is not None:
            body["timeout"] = request_timeout
        request = http.build_request(
            fetch_args.method,
            join_url(base_url, fetch_args.url),
            params=fetch_args.params,
            headers=headers,
            **body,
        )
        try:
            response = await http.send(request)
        except httpx.TimeoutException as exc:
            logger.debug("%s %s timed out", request.method, request.url)
            return QueryReturnValue(
                error={"status": "TIMEOUT_ERROR", "error": str(exc)},
                meta=FetchMeta(request),
            )
        except httpx.HTTPError as exc:
            logger.debug("%s %s failed: %s", request.method, request.url, exc)
            return QueryReturnValue(
                error={"status": "FETCH_ERROR", "error": str(exc)},
                meta=FetchMeta(request),
            )
        finally:
            if client is None:
                await http.aclose()

        meta = FetchMeta(request, response)
        try:
            data = _parse_body(response, fetch_args.response_handler)
        except ValueError as exc:
            return QueryReturnValue(
                error={
                    "status": "PARSING_ERROR",
                    "original_status": response.status_code,
                    "data": response.text,
                    "error": str(exc),
                },
                meta=meta,
            )

        if validate_status is not None:
            ok = validate_status(response, data)
        else:
            ok = response.is_success
        if ok:
            return QueryReturnValue(data=data, meta=meta)
        return QueryReturnValue(
            error={"status": response.status_code, "data": data}, meta=meta
        )

    return base_query


__all__ = ["FetchArgs", "FetchMeta", "fetch_base_query", "join_url"]
