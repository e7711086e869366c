"""
Result values for expected business outcomes.

Responsibility:
    Carries either a success value or a structured ``Error`` out of service
    operations whose failure is a normal business answer (trigger not
    available, requirements unmet, not enough history to revert).

Architecture position:
    Kernel > Domain -- pure data, no I/O.

Invariants enforced:
    - A failed Result always carries an Error whose kind is not NONE.
    - A successful Result never carries an Error.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Broad category of a business failure."""

    NONE = "none"
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NULL_VALUE = "null_value"
    GENERAL = "general"


@dataclass(frozen=True)
class Error:
    """A machine-readable business failure."""

    kind: ErrorKind
    code: str
    message: str
    details: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def validation(cls, code: str, message: str) -> "Error":
        return cls(ErrorKind.VALIDATION, code, message)

    @classmethod
    def business_rule(
        cls, code: str, message: str, details: tuple[str, ...] = ()
    ) -> "Error":
        return cls(ErrorKind.BUSINESS_RULE, code, message, tuple(details))

    @classmethod
    def not_found(cls, code: str, message: str) -> "Error":
        return cls(ErrorKind.NOT_FOUND, code, message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success-or-failure wrapper."""

    value: T | None = None
    error: Error | None = None

    def __post_init__(self) -> None:
        if self.error is not None and self.error.kind == ErrorKind.NONE:
            raise ValueError("A failed Result requires an error kind other than NONE")

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @classmethod
    def ok(cls, value: Any = None) -> "Result[Any]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: Error) -> "Result[Any]":
        if error is None:
            raise ValueError("Result.fail requires an Error")
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise ValueError describing the failure."""
        if self.error is not None:
            raise ValueError(f"Cannot unwrap failed result: {self.error}")
        return self.value  # type: ignore[return-value]
