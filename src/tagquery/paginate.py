"""Page bookkeeping for infinite queries.

An infinite entry's data is an :class:`InfiniteData`: parallel lists of
fetched pages and the params used to fetch them. Page params for the next
and previous fetch are derived from that data by the endpoint's functions:

    get_next_page_param(last_page, all_pages, last_page_param,
                        all_page_params, query_arg)
    get_previous_page_param(first_page, all_pages, first_page_param,
                            all_page_params, query_arg)

Returning ``None`` means there is no page in that direction.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from tagquery.errors import InternalConsistencyError
from tagquery.types import PageDirection

TPage = TypeVar("TPage")
TPageParam = TypeVar("TPageParam")

PageParamFunction = Callable[[Any, list[Any], Any, list[Any], Any], Any]


@dataclass(slots=True)
class InfiniteData(Generic[TPage, TPageParam]):
    """Fetched pages, oldest-first, with the param each was fetched with."""

    pages: list[TPage] = field(default_factory=list)
    page_params: list[TPageParam] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[Any]]:
        return {"pages": list(self.pages), "page_params": list(self.page_params)}

    @classmethod
    def from_dict(cls, raw: dict[str, list[Any]]) -> InfiniteData[Any, Any]:
        return cls(list(raw.get("pages", [])), list(raw.get("page_params", [])))


@dataclass(frozen=True, slots=True, kw_only=True)
class InfiniteQueryOptions:
    """Paging configuration of an infinite query endpoint."""

    initial_page_param: Any
    get_next_page_param: PageParamFunction
    get_previous_page_param: PageParamFunction | None = None
    max_pages: int | None = None

    def __post_init__(self) -> None:
        if self.max_pages is not None:
            if self.max_pages < 1:
                raise ValueError("max_pages must be at least 1")
            if self.get_previous_page_param is None:
                raise InternalConsistencyError(
                    "max_pages requires get_previous_page_param so trimmed pages "
                    "can be fetched again"
                )


def get_next_page_param(
    options: InfiniteQueryOptions, data: InfiniteData[Any, Any] | None, query_arg: Any
) -> Any:
    if data is None or not data.pages:
        return None
    return options.get_next_page_param(
        data.pages[-1], data.pages, data.page_params[-1], data.page_params, query_arg
    )


def get_previous_page_param(
    options: InfiniteQueryOptions, data: InfiniteData[Any, Any] | None, query_arg: Any
) -> Any:
    if options.get_previous_page_param is None or data is None or not data.pages:
        return None
    return options.get_previous_page_param(
        data.pages[0], data.pages, data.page_params[0], data.page_params, query_arg
    )


def has_next_page(
    options: InfiniteQueryOptions, data: InfiniteData[Any, Any] | None, query_arg: Any
) -> bool:
    return get_next_page_param(options, data, query_arg) is not None


def has_previous_page(
    options: InfiniteQueryOptions, data: InfiniteData[Any, Any] | None, query_arg: Any
) -> bool:
    return get_previous_page_param(options, data, query_arg) is not None


def add_page(
    data: InfiniteData[TPage, TPageParam] | None,
    page: TPage,
    page_param: TPageParam,
    direction: PageDirection,
    max_pages: int | None = None,
) -> InfiniteData[TPage, TPageParam]:
    """Return new data with ``page`` appended (forward) or prepended (backward).

    When ``max_pages`` is exceeded, pages are dropped from the end opposite
    to the fetch direction.
    """
    pages = list(data.pages) if data is not None else []
    params = list(data.page_params) if data is not None else []
    if direction == "forward":
        pages.append(page)
        params.append(page_param)
    else:
        pages.insert(0, page)
        params.insert(0, page_param)

    if max_pages and len(pages) > max_pages:
        over = len(pages) - max_pages
        if direction == "forward":
            pages, params = pages[over:], params[over:]
        else:
            pages, params = pages[:-over], params[:-over]
    return InfiniteData(pages, params)


__all__ = [
    "InfiniteData",
    "InfiniteQueryOptions",
    "add_page",
    "get_next_page_param",
    "get_previous_page_param",
    "has_next_page",
    "has_previous_page",
]
