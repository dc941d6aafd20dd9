"""Exception types raised or reported by tagquery."""

from typing import Any


class TagQueryError(Exception):
    """Base class for all tagquery errors."""


class InternalConsistencyError(TagQueryError):
    """Programming error: conflicting definitions or misuse of the api."""


class AbortedError(TagQueryError):
    """The request attempt was canceled before it settled."""

    name = "AbortError"

    def __init__(self, reason: Any = None) -> None:
        self.reason = reason
        message = "Aborted" if reason is None else f"Aborted: {reason}"
        super().__init__(message)


class SchemaValidationError(TagQueryError):
    """A value failed one of the endpoint's schemas."""

    def __init__(
        self,
        issues: Any,
        value: Any,
        schema_name: str,
        *,
        endpoint_name: str | None = None,
        arg: Any = None,
    ) -> None:
        self.issues = issues
        self.value = value
        self.schema_name = schema_name
        self.endpoint_name = endpoint_name
        self.arg = arg
        where = f" for endpoint {endpoint_name!r}" if endpoint_name else ""
        super().__init__(f"{schema_name} failed validation{where}: {issues!r}")


class TransportError(TagQueryError):
    """Wraps a non-exception error value returned by the transport."""

    def __init__(self, error: Any, meta: Any = None) -> None:
        self.error = error
        self.meta = meta
        super().__init__(repr(error))


class QueryRejected(TagQueryError):
    """Failure value of a lifecycle ``query_fulfilled`` future."""

    def __init__(
        self, error: Any, meta: Any = None, *, is_unhandled_error: bool = False
    ) -> None:
        self.error = error
        self.meta = meta
        self.is_unhandled_error = is_unhandled_error
        super().__init__(repr(error))


class EntryRemovedError(TagQueryError):
    """The cache entry was removed before its first value arrived."""

    def __init__(self) -> None:
        super().__init__("Promise never resolved before cache_entry_removed.")


def raise_for_error(error: Any, meta: Any = None) -> None:
    """Raise ``error`` as an exception, wrapping plain values."""
    if isinstance(error, BaseException):
        raise error
    raise TransportError(error, meta)
