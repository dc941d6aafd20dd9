"""Schema validation boundary.

The engine only relies on the pass/fail contract: a validator exposes
``validate(value)`` returning a :class:`ValidationResult` (or an awaitable of
one). :class:`PydanticSchema` adapts any type pydantic understands.
"""

from __future__ import annotations

from collections.abc import Awaitable, Collection
from dataclasses import dataclass
from typing import (
    Any,
    Generic,
    Literal,
    Protocol,
    TypeVar,
    runtime_checkable,
)

import pydantic

from tagquery.errors import SchemaValidationError
from tagquery.utils import maybe_await

T = TypeVar("T")

SchemaName = Literal[
    "arg",
    "raw_response",
    "response",
    "raw_error_response",
    "error_response",
    "meta",
]
SCHEMA_NAMES: frozenset[str] = frozenset(
    ("arg", "raw_response", "response", "raw_error_response", "error_response", "meta")
)

SkipSchemaValidation = bool | Collection[SchemaName]


@dataclass(frozen=True, slots=True)
class ValidationResult(Generic[T]):
    """Outcome of one validation: the (possibly coerced) value or issues."""

    success: bool
    value: T | None = None
    issues: tuple[Any, ...] = ()

    @classmethod
    def ok(cls, value: T) -> ValidationResult[T]:
        return cls(True, value)

    @classmethod
    def failure(cls, issues: Collection[Any]) -> ValidationResult[Any]:
        return cls(False, None, tuple(issues))


@runtime_checkable
class SchemaValidator(Protocol):
    """Anything with a compliant ``validate`` method."""

    def validate(
        self, value: Any
    ) -> ValidationResult[Any] | Awaitable[ValidationResult[Any]]:
        """Validate ``value``."""
        ...


class PydanticSchema(Generic[T]):
    """Validator backed by :class:`pydantic.TypeAdapter`.

    Usage:
        arg_schema=PydanticSchema(int)
        response_schema=PydanticSchema(list[Post])
    """

    __slots__ = ("_adapter",)

    def __init__(self, type_: Any) -> None:
        self._adapter: pydantic.TypeAdapter[T] = pydantic.TypeAdapter(type_)

    def validate(self, value: Any) -> ValidationResult[T]:
        try:
            return ValidationResult.ok(self._adapter.validate_python(value))
        except pydantic.ValidationError as exc:
            return ValidationResult.failure(exc.errors())


def should_skip(skip: SkipSchemaValidation | None, schema_name: SchemaName) -> bool:
    if skip is None or skip is False:
        return False
    if skip is True:
        return True
    return schema_name in skip


async def parse_with_schema(
    schema: SchemaValidator,
    value: Any,
    schema_name: SchemaName,
    *,
    endpoint_name: str | None = None,
    arg: Any = None,
) -> Any:
    """Validate ``value`` and return the validated value.

    Raises:
        SchemaValidationError: if the validator reports failure.
    """
    result = await maybe_await(schema.validate(value))
    if not result.success:
        raise SchemaValidationError(
            list(result.issues),
            value,
            f"{schema_name}_schema",
            endpoint_name=endpoint_name,
            arg=arg,
        )
    return result.value


__all__ = [
    "PydanticSchema",
    "SchemaName",
    "SchemaValidator",
    "SkipSchemaValidation",
    "ValidationResult",
    "parse_with_schema",
    "should_skip",
]
