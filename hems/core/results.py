"""
Result values returned by the exam core instead of raising for expected
business failures.
"""
import enum
import functools
import logging
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    """Failure taxonomy shared by all services."""
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    INTEGRITY_VIOLATION = "integrity_violation"
    TRANSIENT_CONFLICT = "transient_conflict"
    INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    reason: str = ""
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorKind, reason: str, message: str = "") -> "Result":
        return cls(ok=False, error=error, reason=reason, message=message or reason.replace("_", " "))

    def __bool__(self) -> bool:
        return self.ok


def invalid(reason: str, message: str = "") -> Result:
    return Result.failure(ErrorKind.INVALID_INPUT, reason, message)


def not_found(reason: str, message: str = "") -> Result:
    return Result.failure(ErrorKind.NOT_FOUND, reason, message)


def precondition(reason: str, message: str = "") -> Result:
    return Result.failure(ErrorKind.PRECONDITION_FAILED, reason, message)


def conflict(reason: str, message: str = "") -> Result:
    return Result.failure(ErrorKind.TRANSIENT_CONFLICT, reason, message)


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def storage_guarded(func):
    """Report storage faults raised inside a service method as an infrastructure failure.

    The decorated method must belong to an object exposing ``db``; the open
    transaction is rolled back before returning.
    """
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.exception(f"Storage error in {func.__qualname__}: {e}")
            self.db.rollback()
            return Result.failure(ErrorKind.INFRASTRUCTURE, "storage_error", "The storage layer is unavailable")
    return wrapper
