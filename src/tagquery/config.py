"""Api-level configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from tagquery.duration import parse_duration, parse_refetch_threshold
from tagquery.schema import SCHEMA_NAMES, SkipSchemaValidation
from tagquery.types import Duration

InvalidationBehavior = Literal["delayed", "immediately"]

_INVALIDATION_BEHAVIORS = ("delayed", "immediately")


@dataclass(frozen=True, slots=True)
class ApiConfig:
    """Validated settings shared by every endpoint of an api.

    Durations are stored in milliseconds. ``refetch_on_mount_or_arg_change``
    is either a bool or a max age in milliseconds.
    """

    reducer_path: str = "api"
    keep_unused_data_for: int = 60_000
    refetch_on_mount_or_arg_change: bool | int = False
    refetch_on_focus: bool = False
    refetch_on_reconnect: bool = False
    invalidation_behavior: InvalidationBehavior = "delayed"
    tag_types: tuple[str, ...] = ()
    skip_schema_validation: SkipSchemaValidation = False

    @classmethod
    def create(
        cls,
        *,
        reducer_path: str = "api",
        keep_unused_data_for: Duration = "60s",
        refetch_on_mount_or_arg_change: bool | Duration = False,
        refetch_on_focus: bool = False,
        refetch_on_reconnect: bool = False,
        invalidation_behavior: InvalidationBehavior = "delayed",
        tag_types: tuple[str, ...] | list[str] = (),
        skip_schema_validation: SkipSchemaValidation = False,
    ) -> ApiConfig:
        """Build a config from user-facing values.

        Raises:
            ValueError: on an unknown option value or a malformed duration.
        """
        if not reducer_path:
            raise ValueError("reducer_path must be a non-empty string")
        if invalidation_behavior not in _INVALIDATION_BEHAVIORS:
            raise ValueError(
                f"invalidation_behavior must be one of {_INVALIDATION_BEHAVIORS}, "
                f"got {invalidation_behavior!r}"
            )
        if not isinstance(skip_schema_validation, bool):
            unknown = set(skip_schema_validation) - SCHEMA_NAMES
            if unknown:
                raise ValueError(f"Unknown schema names: {sorted(unknown)}")
            skip_schema_validation = frozenset(skip_schema_validation)
        threshold = parse_refetch_threshold(refetch_on_mount_or_arg_change)
        return cls(
            reducer_path=reducer_path,
            keep_unused_data_for=parse_duration(keep_unused_data_for),
            refetch_on_mount_or_arg_change=False if threshold is None else threshold,
            refetch_on_focus=refetch_on_focus,
            refetch_on_reconnect=refetch_on_reconnect,
            invalidation_behavior=invalidation_behavior,
            tag_types=tuple(tag_types),
            skip_schema_validation=skip_schema_validation,
        )

    def to_dict(self) -> dict[str, Any]:
        skip = self.skip_schema_validation
        return {
            "reducer_path": self.reducer_path,
            "keep_unused_data_for": self.keep_unused_data_for,
            "refetch_on_mount_or_arg_change": self.refetch_on_mount_or_arg_change,
            "refetch_on_focus": self.refetch_on_focus,
            "refetch_on_reconnect": self.refetch_on_reconnect,
            "invalidation_behavior": self.invalidation_behavior,
            "tag_types": list(self.tag_types),
            "skip_schema_validation": skip if isinstance(skip, bool) else sorted(skip),
        }


__all__ = ["ApiConfig", "InvalidationBehavior"]
