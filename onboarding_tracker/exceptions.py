"""
Custom exception hierarchy for the onboarding session tracker.
Provides structured error handling with user-friendly messages and proper categorization.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    BUSINESS_LOGIC = "business_logic"
    INFRASTRUCTURE = "infrastructure"
    SYSTEM = "system"


class OnboardingTrackerError(Exception):
    """
    Base error: carries optional structured fields next to the message.
    Subclasses pass their defaults through, callers may override them.
    """

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.user_message = user_message or message
        self.category = category or ErrorCategory.SYSTEM
        self.severity = severity or ErrorSeverity.MEDIUM
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }


# Validation Errors
class ValidationError(OnboardingTrackerError):
    """Base class for validation errors."""

    def __init__(self, message: str, field: str | None = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        kwargs.setdefault("user_message", "Invalid input provided. Please check your data and try again.")
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details=details,
            **kwargs,
        )
        self.field = field


class InvalidEmailError(ValidationError):
    """Malformed email address."""

    def __init__(self, value: Any, **kwargs):
        super().__init__(
            f"Invalid email address: {value!r}",
            field="email",
            user_message="Please provide a valid email address.",
            **kwargs,
        )


class StepDataValidationError(ValidationError):
    """A step payload failed validation."""

    def __init__(self, message: str, step: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        if step:
            self.details["step"] = step
        self.step = step


class BusinessInfoValidationError(StepDataValidationError):
    """Invalid business information."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, step="business", **kwargs)


class ChannelConfigValidationError(StepDataValidationError):
    """Invalid messaging-channel integration settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, step="integration", **kwargs)


class PhoneVerificationError(StepDataValidationError):
    """Phone number or verification code problems."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, step="verification", **kwargs)


class BotConfigValidationError(StepDataValidationError):
    """Invalid bot configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, step="bot-setup", **kwargs)


class TestingResultsValidationError(StepDataValidationError):
    """Invalid bot testing results."""

    __test__ = False  # keep pytest from collecting this class

    def __init__(self, message: str, **kwargs):
        super().__init__(message, step="testing", **kwargs)


# Not Found Errors
class SessionNotFoundError(OnboardingTrackerError):
    """No onboarding session matches the given identifier."""

    def __init__(self, identifier_type: str, identifier: str, **kwargs):
        super().__init__(
            f"No session found for {identifier_type}",
            user_message="The requested onboarding session was not found.",
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            details={"identifier_type": identifier_type, "identifier": identifier},
            **kwargs,
        )


# Business Logic Errors
class BusinessRuleError(OnboardingTrackerError):
    """Base class for business rule violations."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message, category=ErrorCategory.BUSINESS_LOGIC, severity=ErrorSeverity.MEDIUM, **kwargs
        )


class InvalidSessionStateError(BusinessRuleError):
    """Operation attempted against a session in the wrong status."""

    def __init__(self, message: str, status: str | None = None, **kwargs):
        super().__init__(
            message,
            user_message="This onboarding session cannot be changed in its current state.",
            details={"status": status} if status else {},
            **kwargs,
        )


class InvalidStepTransitionError(BusinessRuleError):
    """Requested step is not reachable from the current step."""

    def __init__(self, current_step: str, next_step: str, **kwargs):
        super().__init__(
            f"Cannot move from step '{current_step}' to '{next_step}'",
            user_message="Please finish the current onboarding step first.",
            details={"current_step": current_step, "next_step": next_step},
            **kwargs,
        )


class SessionExpiredError(BusinessRuleError):
    """Onboarding session has expired."""

    def __init__(self, session_id: str, **kwargs):
        super().__init__(
            "Session has expired",
            user_message="Your onboarding session has expired. Use your recovery link to continue.",
            details={"session_id": session_id},
            **kwargs,
        )


class SyncConflictError(BusinessRuleError):
    """Client state trails the stored session revision."""

    def __init__(self, client_revision: int, server_revision: int, **kwargs):
        super().__init__(
            "Client is behind server state",
            user_message="This session was changed on another device. Please reload.",
            details={"client_revision": client_revision, "server_revision": server_revision},
            **kwargs,
        )


# Infrastructure Errors
class RepositoryError(OnboardingTrackerError):
    """A persistence call failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            user_message="A storage error occurred. Please try again later.",
            category=ErrorCategory.INFRASTRUCTURE,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
