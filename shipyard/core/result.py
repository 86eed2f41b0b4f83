"""Result type for explicit error handling.

Every pipeline operation that can fail for an expected reason (a toolchain
exits non-zero, a tag already exists, an upload is refused) returns a
Result instead of raising. Exceptions are reserved for programming errors.

Usage:
    def resolve(trigger: TriggerContext) -> Result[ReleaseInfo, ResolutionError]:
        if trigger.event not in KNOWN_EVENTS:
            return Err(ResolutionError(message=f"unknown event: {trigger.event}"))
        return Ok(info)

    match resolve(trigger):
        case Ok(info):
            console.print(info.tag)
        case Err(error):
            console.error(error.message)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeGuard, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E")
F = TypeVar("F")


@dataclass(frozen=True, slots=True)
class Ok[T]:
    """Represents a successful result containing a value.

    Attributes:
        value: The success value.
    """

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Returns the contained value."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Returns the contained value, ignoring the default."""
        return self.value

    def map(self, f: Callable[[T], U]) -> Ok[U]:
        """Applies a function to the contained value."""
        return Ok(f(self.value))

    def map_err(self, f: Callable[[E], F]) -> Ok[T]:
        """Returns self unchanged (no error to map)."""
        return self

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err[E]:
    """Represents a failed result containing an error.

    Attributes:
        error: The error value.
    """

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> None:
        """Raises ValueError with the error.

        Raises:
            ValueError: Always, containing the error.
        """
        raise ValueError(f"called unwrap on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Returns the default value."""
        return default

    def map(self, f: Callable[[T], U]) -> Err[E]:
        """Returns self unchanged (no value to map)."""
        return self

    def map_err(self, f: Callable[[E], F]) -> Err[F]:
        """Applies a function to the contained error.

        Used at layer boundaries, e.g. turning a hosting ReleaseError into
        a target-scoped UploadError.
        """
        return Err(f(self.error))

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


type Result[T, E] = Ok[T] | Err[E]


def is_ok[T, E](result: Result[T, E]) -> TypeGuard[Ok[T]]:
    """Type guard that checks if a Result is Ok."""
    return isinstance(result, Ok)


def is_err[T, E](result: Result[T, E]) -> TypeGuard[Err[E]]:
    """Type guard that checks if a Result is Err."""
    return isinstance(result, Err)
