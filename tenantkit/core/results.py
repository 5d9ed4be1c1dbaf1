"""Two-variant outcome container for expected business failures.

Use cases return ``Result.ok(value)`` or ``Result.fail(error)`` instead of
raising for anything the caller is expected to handle (not found, conflict,
permission denied). Exceptions stay reserved for programming errors and
infrastructure faults.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Generic, NoReturn, TypeVar

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")
F = TypeVar("F")


class ResultAccessError(RuntimeError):
    """Raised when reading the value of a failure or the error of a success."""


class Result(Generic[T, E]):
    __slots__ = ()

    is_success: bool
    is_failure: bool

    @staticmethod
    def ok(value: U) -> Ok[U, Any]:
        return Ok(value)

    @staticmethod
    def fail(error: F) -> Fail[Any, F]:
        return Fail(error)

    def get_value(self) -> T:
        raise NotImplementedError

    def get_error(self) -> E:
        raise NotImplementedError

    def map(self, fn: Callable[[T], U]) -> Result[U, E]:
        if self.is_failure:
            return Fail(self.get_error())
        return Ok(fn(self.get_value()))

    def map_error(self, fn: Callable[[E], F]) -> Result[T, F]:
        if self.is_success:
            return Ok(self.get_value())
        return Fail(fn(self.get_error()))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        if self.is_failure:
            return Fail(self.get_error())
        return fn(self.get_value())

    def match(self, on_success: Callable[[T], U], on_failure: Callable[[E], U]) -> U:
        if self.is_success:
            return on_success(self.get_value())
        return on_failure(self.get_error())


class Ok(Result[T, E]):
    __slots__ = ("_value",)

    is_success = True
    is_failure = False

    def __init__(self, value: T) -> None:
        self._value = value

    def get_value(self) -> T:
        return self._value

    def get_error(self) -> NoReturn:
        msg = "Cannot get error from Ok result"
        raise ResultAccessError(msg)

    def __repr__(self) -> str:
        return f"Ok({self._value!r})"


class Fail(Result[T, E]):
    __slots__ = ("_error",)

    is_success = False
    is_failure = True

    def __init__(self, error: E) -> None:
        self._error = error

    def get_value(self) -> NoReturn:
        msg = "Cannot get value from Fail result"
        raise ResultAccessError(msg)

    def get_error(self) -> E:
        return self._error

    def __repr__(self) -> str:
        return f"Fail({self._error!r})"
