"""Tag definition, expansion and the provided-tags index."""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Tag:
    """An invalidation topic, optionally scoped to one id.

    ``Tag("Post")`` covers every post; ``Tag("Post", 5)`` covers post 5.
    """

    type: str
    id: Hashable | None = None

    def __repr__(self) -> str:
        if self.id is None:
            return f"Tag({self.type})"
        return f"Tag({self.type}:{self.id!r})"


TagDescription = Tag | str | tuple[str, Hashable] | Mapping[str, Any]
ResultDescription = (
    Sequence[TagDescription | None]
    | Callable[[Any, Any, Any, Any], Sequence[TagDescription | None] | None]
)


def expand_tag(description: TagDescription) -> Tag:
    """Normalize the accepted tag shorthands into a :class:`Tag`.

    Example:
        expand_tag("Post")                       # Tag(Post)
        expand_tag(("Post", 5))                  # Tag(Post:5)
        expand_tag({"type": "Post", "id": 5})    # Tag(Post:5)
    """
    if isinstance(description, Tag):
        return description
    if isinstance(description, str):
        return Tag(description)
    if isinstance(description, tuple) and len(description) in (1, 2):
        return Tag(*description)
    if isinstance(description, Mapping) and "type" in description:
        return Tag(description["type"], description.get("id"))
    raise TypeError(f"Invalid tag description: {description!r}")


def calculate_provided_by(
    description: ResultDescription | None,
    result: Any,
    error: Any,
    arg: Any,
    meta: Any,
    *,
    tag_types: Iterable[str] = (),
) -> list[Tag]:
    """Resolve a static or result-dependent tag description to tags.

    Callables receive ``(result, error, arg, meta)``. Duplicates and ``None``
    entries are dropped; order is preserved.
    """
    if description is None:
        return []
    if callable(description):
        raw = description(result, error, arg, meta)
    else:
        raw = description
    known = set(tag_types)
    tags: list[Tag] = []
    for item in raw or ():
        if item is None:
            continue
        tag = expand_tag(item)
        if known and tag.type not in known:
            logger.warning(
                "Tag type %r was used, but not specified in tag_types", tag.type
            )
        if tag not in tags:
            tags.append(tag)
    return tags


class TagIndex:
    """Bidirectional mapping between cache keys and the tags they provide.

    Two one-directional maps are kept in sync by :meth:`provide` and
    :meth:`remove_key`, the only mutation paths:

        _provided: type -> id (None for bare tags) -> set of keys
        _keys:     key  -> tags last provided by that key
    """

    def __init__(self) -> None:
        self._provided: dict[str, dict[Hashable | None, set[str]]] = {}
        self._keys: dict[str, tuple[Tag, ...]] = {}

    def provide(self, key: str, tags: Iterable[Tag]) -> None:
        """Replace the tag set owned by ``key``."""
        self.remove_key(key)
        owned = tuple(dict.fromkeys(tags))
        if not owned:
            return
        self._keys[key] = owned
        for tag in owned:
            self._provided.setdefault(tag.type, {}).setdefault(tag.id, set()).add(key)

    def remove_key(self, key: str) -> None:
        for tag in self._keys.pop(key, ()):
            by_id = self._provided.get(tag.type)
            if by_id is None:
                continue
            keys = by_id.get(tag.id)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del by_id[tag.id]
            if not by_id:
                del self._provided[tag.type]

    def tags_for(self, key: str) -> tuple[Tag, ...]:
        return self._keys.get(key, ())

    def invalidated_by(self, tags: Iterable[TagDescription]) -> set[str]:
        """Every key currently providing any of ``tags``.

        A bare tag matches all ids of its type; an id tag matches that id and
        bare registrations of its type.
        """
        result: set[str] = set()
        for description in tags:
            tag = expand_tag(description)
            by_id = self._provided.get(tag.type)
            if not by_id:
                continue
            if tag.id is None:
                for keys in by_id.values():
                    result |= keys
            else:
                result |= by_id.get(tag.id, set())
                result |= by_id.get(None, set())
        return result

    def keys(self) -> list[str]:
        return list(self._keys)

    def clear(self) -> None:
        self._provided.clear()
        self._keys.clear()

    def to_dict(self) -> dict[str, list[list[Any]]]:
        """JSON-friendly ``{key: [[type, id], ...]}``."""
        return {
            key: [[tag.type, tag.id] for tag in tags]
            for key, tags in self._keys.items()
        }


__all__ = [
    "ResultDescription",
    "Tag",
    "TagDescription",
    "TagIndex",
    "calculate_provided_by",
    "expand_tag",
]
