"""
Email value type.
Wraps a validated, normalized email address used as the natural lookup key
of an onboarding session.
"""

import re
from dataclasses import dataclass
from typing import Any

from onboarding_tracker.exceptions import InvalidEmailError

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MAX_EMAIL_LENGTH = 254


def is_valid_email(value: Any) -> bool:
    """Check whether a value is a syntactically valid email address."""
    if not isinstance(value, str):
        return False
    candidate = value.strip()
    if not candidate or len(candidate) > MAX_EMAIL_LENGTH:
        return False
    return bool(EMAIL_PATTERN.match(candidate))


@dataclass(frozen=True)
class Email:
    """Validated email address (trimmed, lower-cased)."""

    value: str

    def __post_init__(self):
        if not is_valid_email(self.value):
            raise InvalidEmailError(self.value)
        object.__setattr__(self, "value", self.value.strip().lower())

    @classmethod
    def create(cls, value: Any) -> "Email":
        """Build an Email, raising InvalidEmailError for malformed input."""
        if isinstance(value, Email):
            return value
        return cls(value)

    @property
    def domain(self) -> str:
        return self.value.split("@", 1)[1]

    def __str__(self) -> str:
        return self.value
