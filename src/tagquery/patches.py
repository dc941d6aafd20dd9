"""Structural patches for cached data.

Optimistic updates are recorded as patches against the cached value, with
inverse patches that revert only the paths they touched. Concurrent updates
to other paths survive an undo.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

PatchOp = Literal["add", "remove", "replace"]


@dataclass(frozen=True, slots=True)
class Patch:
    op: PatchOp
    path: tuple[Any, ...]
    value: Any = None


@dataclass(frozen=True, slots=True)
class PatchCollection:
    """Result of an optimistic update; call :meth:`undo` to roll it back."""

    patches: list[Patch] = field(default_factory=list)
    inverse_patches: list[Patch] = field(default_factory=list)
    _undo: Callable[[], None] | None = None

    def undo(self) -> None:
        if self._undo is not None:
            self._undo()


def diff(old: Any, new: Any) -> tuple[list[Patch], list[Patch]]:
    """Patches turning ``old`` into ``new``, and the inverse patches."""
    patches: list[Patch] = []
    inverse: list[Patch] = []
    _diff(old, new, (), patches, inverse)
    inverse.reverse()
    return patches, inverse


def _diff(
    old: Any,
    new: Any,
    path: tuple[Any, ...],
    patches: list[Patch],
    inverse: list[Patch],
) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in old:
            if key not in new:
                patches.append(Patch("remove", (*path, key)))
                inverse.append(Patch("add", (*path, key), copy.deepcopy(old[key])))
        for key, value in new.items():
            if key not in old:
                patches.append(Patch("add", (*path, key), copy.deepcopy(value)))
                inverse.append(Patch("remove", (*path, key)))
            else:
                _diff(old[key], value, (*path, key), patches, inverse)
        return

    if isinstance(old, list) and isinstance(new, list) and len(old) == len(new):
        for index, (before, after) in enumerate(zip(old, new)):
            _diff(before, after, (*path, index), patches, inverse)
        return

    if type(old) is not type(new) or old != new:
        patches.append(Patch("replace", path, copy.deepcopy(new)))
        inverse.append(Patch("replace", path, copy.deepcopy(old)))


def apply_patches(value: Any, patches: list[Patch]) -> Any:
    """Return a patched deep copy of ``value``."""
    result = copy.deepcopy(value)
    for patch in patches:
        if not patch.path:
            result = None if patch.op == "remove" else copy.deepcopy(patch.value)
            continue
        parent = result
        for part in patch.path[:-1]:
            parent = parent[part]
        last = patch.path[-1]
        if patch.op == "remove":
            del parent[last]
        elif patch.op == "add" and isinstance(parent, list):
            parent.insert(last, copy.deepcopy(patch.value))
        else:
            parent[last] = copy.deepcopy(patch.value)
    return result


def produce(value: Any, recipe: Callable[[Any], Any]) -> Any:
    """Run ``recipe`` on a draft copy of ``value``.

    The recipe either mutates the draft in place and returns ``None``, or
    returns a replacement value.
    """
    draft = copy.deepcopy(value)
    returned = recipe(draft)
    return draft if returned is None else returned


__all__ = ["Patch", "PatchCollection", "apply_patches", "diff", "produce"]
