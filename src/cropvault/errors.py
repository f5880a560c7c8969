"""Result values and exceptions shared by the billing engine and the BLL.

The pure engine modules never raise for expected business conditions. They
return an :class:`Outcome` that holds either a value or a :class:`LedgerError`
naming the offending entity. The business logic layer unwraps outcomes, which
turns a failed outcome into a :class:`BusinessRuleViolation` for the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, Optional, TypeVar

from .constants import ErrorKind


T = TypeVar("T")


@dataclass(frozen=True)
class LedgerError:
    """Tagged description of a rejected ledger operation."""

    kind: ErrorKind
    message: str
    entity_id: Optional[str] = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""

    def __init__(self, error: LedgerError) -> None:
        super().__init__(str(error))
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def entity_id(self) -> Optional[str]:
        return self.error.entity_id


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced inflow, outflow, area, or crop type is unknown."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            LedgerError(
                kind=ErrorKind.NOT_FOUND,
                message=f"Unknown {entity} id: {entity_id}",
                entity_id=entity_id,
            )
        )


class StaleRecordError(BusinessRuleViolation):
    """Raised when a record changed between read and write."""

    def __init__(self, entity_id: str, message: str) -> None:
        super().__init__(
            LedgerError(
                kind=ErrorKind.CONCURRENT_MODIFICATION,
                message=message,
                entity_id=entity_id,
            )
        )


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a successful value or a :class:`LedgerError`."""

    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "Outcome[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise :class:`BusinessRuleViolation`."""
        if self.error is not None:
            raise BusinessRuleViolation(self.error)
        return self.value  # type: ignore[return-value]


def fail(kind: ErrorKind, message: str, entity_id: Optional[str] = None, **detail: Any) -> Outcome[Any]:
    """Shorthand for building a failed outcome."""
    return Outcome.failure(LedgerError(kind=kind, message=message, entity_id=entity_id, detail=detail))


__all__ = [
    "LedgerError",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "StaleRecordError",
    "Outcome",
    "fail",
]
