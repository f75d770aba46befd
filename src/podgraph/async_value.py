"""Snapshots of an asynchronous definition's state.

An async factory's node never holds a bare value: readers and listeners see
AsyncLoading while the coroutine runs, then AsyncData or AsyncError.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

T = TypeVar("T")


class AsyncValue(Generic[T]):
    __slots__ = ()

    is_loading = False
    has_error = False

    @property
    def value(self) -> T | None:
        return None

    @property
    def error(self) -> BaseException | None:
        return None

    def when(self, *, data, error, loading):
        """Dispatch on the state: call data(value), error(exc) or loading()."""
        if isinstance(self, AsyncData):
            return data(self.value)
        if isinstance(self, AsyncError):
            return error(self.error)
        return loading()


class AsyncLoading(AsyncValue[Any]):
    __slots__ = ()

    is_loading = True

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AsyncLoading)

    def __hash__(self) -> int:
        return hash(AsyncLoading)

    def __repr__(self) -> str:
        return "AsyncLoading()"


class AsyncData(AsyncValue[T]):
    __slots__ = ("_value",)

    def __init__(self, value: T) -> None:
        self._value = value

    @property
    def value(self) -> T:
        return self._value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AsyncData) and other._value == self._value

    __hash__ = None

    def __repr__(self) -> str:
        return f"AsyncData({self._value!r})"


class AsyncError(AsyncValue[Any]):
    __slots__ = ("_error",)

    has_error = True

    def __init__(self, error: BaseException) -> None:
        self._error = error

    @property
    def error(self) -> BaseException:
        return self._error

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AsyncError) and other._error is self._error

    def __hash__(self) -> int:
        return id(self._error)

    def __repr__(self) -> str:
        return f"AsyncError({self._error!r})"
