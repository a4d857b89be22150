"""
Tagged success/failure values returned by the use-case and service layers.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from onboarding_tracker.exceptions import ErrorCategory, OnboardingTrackerError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Generic result type for operations that can fail.

    Example:
        result = service.pause_session(session_id)
        if result.success:
            session = result.value
        else:
            logger.warning(result.error)
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        """Create successful result."""
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: str, category: ErrorCategory = ErrorCategory.SYSTEM) -> "Result[T]":
        """Create failed result."""
        return cls(success=False, error=error, category=category)

    @classmethod
    def from_error(cls, error: OnboardingTrackerError) -> "Result[T]":
        """Create failed result from a structured error, keeping its message and category."""
        return cls(success=False, error=error.message, category=error.category)

    @property
    def failed(self) -> bool:
        return not self.success

    def unwrap(self) -> T:
        """Return the value or raise if the result is a failure."""
        if not self.success:
            raise ValueError(f"Called unwrap() on a failed result: {self.error}")
        return self.value
