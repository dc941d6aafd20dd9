"""Cache key serialization.

A cache key identifies one (endpoint, argument) combination. The default
form is ``endpoint_name(<canonical json>)`` where mapping keys are sorted
recursively, so arguments that differ only in key order share a key.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel

if TYPE_CHECKING:
    from tagquery.endpoints import EndpointDefinition


class SerializeQueryArgs(Protocol):
    def __call__(
        self,
        *,
        query_args: Any,
        endpoint_name: str,
        endpoint_definition: EndpointDefinition | None,
    ) -> Any: ...


def _canonicalize(value: Any) -> Any:
    """Convert ``value`` into JSON-ready data with sorted mapping keys."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)

    if isinstance(value, Mapping):
        return {
            str(key): _canonicalize(value[key]) for key in sorted(value, key=str)
        }
    if isinstance(value, (list, tuple)):
        return [_canonicalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        items = [_canonicalize(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, default=str))
    return value


def encode_args(query_args: Any) -> str:
    """Canonical string for ``query_args``."""
    return json.dumps(
        _canonicalize(query_args),
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def default_serialize_query_args(
    *,
    query_args: Any,
    endpoint_name: str,
    endpoint_definition: EndpointDefinition | None = None,
) -> str:
    """Default cache key: ``endpoint_name(<canonical json>)``."""
    _ = endpoint_definition
    return f"{endpoint_name}({encode_args(query_args)})"


class KeySerializer:
    """Turns (endpoint, argument) into a cache key.

    Precedence: the endpoint's own ``serialize_query_args``, then the
    api-level override, then :func:`default_serialize_query_args`. An
    endpoint-level function returning a ``str`` provides the key verbatim;
    any other return value is fed through the default serializer. Custom
    functions must be pure and deterministic.
    """

    def __init__(self, serialize_query_args: SerializeQueryArgs | None = None) -> None:
        self._api_serializer: Callable[..., Any] = (
            serialize_query_args or default_serialize_query_args
        )

    def serialize(self, definition: EndpointDefinition, query_args: Any) -> str:
        endpoint_serializer = getattr(definition, "serialize_query_args", None)
        if endpoint_serializer is not None:
            initial = endpoint_serializer(
                query_args=query_args,
                endpoint_name=definition.name,
                endpoint_definition=definition,
            )
            if isinstance(initial, str):
                return initial
            return default_serialize_query_args(
                query_args=initial,
                endpoint_name=definition.name,
                endpoint_definition=definition,
            )

        key = self._api_serializer(
            query_args=query_args,
            endpoint_name=definition.name,
            endpoint_definition=definition,
        )
        if not isinstance(key, str):
            raise TypeError(
                f"serialize_query_args must return str, got {type(key).__name__}"
            )
        return key


__all__ = ["KeySerializer", "default_serialize_query_args", "encode_args"]
