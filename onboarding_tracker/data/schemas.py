"""
Pydantic schemas for onboarding step payloads.
Provides validation models for the data collected by each wizard step and
helpers to build, verify and parse them.
"""

import re
import secrets
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from onboarding_tracker.exceptions import (
    BotConfigValidationError,
    BusinessInfoValidationError,
    ChannelConfigValidationError,
    PhoneVerificationError,
    StepDataValidationError,
    TestingResultsValidationError,
)
from onboarding_tracker.logic.onboarding_session import OnboardingStep
from onboarding_tracker.utils.clock import utcnow

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
WEBSITE_PATTERN = re.compile(r"^(https?://)?([a-zA-Z0-9-]+\.)+[a-zA-Z]{2,}(:\d+)?([/?#]\S*)?$")

MIN_ACCESS_TOKEN_LENGTH = 50
MIN_VERIFY_TOKEN_LENGTH = 8
MAX_VERIFICATION_ATTEMPTS = 5
MAX_EMPLOYEE_COUNT = 1_000_000

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

SUPPORTED_LANGUAGES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "pt": "Portuguese",
    "ar": "Arabic",
    "sw": "Swahili",
    "am": "Amharic",
    "ha": "Hausa",
    "ig": "Igbo",
    "yo": "Yoruba",
}


class BusinessType(str, Enum):
    STARTUP = "startup"
    SME = "sme"
    ENTERPRISE = "enterprise"
    AGENCY = "agency"
    NON_PROFIT = "non-profit"
    OTHER = "other"


class Industry(str, Enum):
    E_COMMERCE = "e-commerce"
    HEALTHCARE = "healthcare"
    EDUCATION = "education"
    FINANCE = "finance"
    REAL_ESTATE = "real-estate"
    TRAVEL = "travel"
    FOOD_BEVERAGE = "food-beverage"
    TECHNOLOGY = "technology"
    CONSULTING = "consulting"
    RETAIL = "retail"
    OTHER = "other"


class ExpectedVolume(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _text(value: Any, label: str) -> str:
    """Stripped text of a raw string field, empty when missing."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string")
    return value.strip()


# Base schemas
class StepSchema(BaseModel):
    """Base schema for step payloads: immutable, enum values stored as strings."""

    model_config = ConfigDict(
        frozen=True,
        use_enum_values=True,
        populate_by_name=True,
        extra="ignore",
    )

    def is_complete(self) -> bool:
        return True


# Business step
class BusinessInfo(StepSchema):
    """Business information collected on the business step."""

    company_name: str
    business_type: BusinessType
    industry: Industry
    employee_count: int
    website: Optional[str] = None
    description: Optional[str] = None
    expected_volume: ExpectedVolume

    @field_validator("company_name", mode="before")
    @classmethod
    def validate_company_name(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Company name is required")
        name = v.strip()
        if len(name) < 2:
            raise ValueError("Company name must be at least 2 characters")
        if len(name) > 100:
            raise ValueError("Company name must be less than 100 characters")
        return name

    @field_validator("employee_count")
    @classmethod
    def validate_employee_count(cls, v):
        if v < 1:
            raise ValueError("Employee count must be at least 1")
        if v > MAX_EMPLOYEE_COUNT:
            raise ValueError("Employee count seems too high")
        return v

    @field_validator("website", mode="before")
    @classmethod
    def validate_website(cls, v):
        if v is None:
            return None
        website = str(v).strip()
        if not website:
            return None
        if not WEBSITE_PATTERN.match(website):
            raise ValueError("Invalid website URL")
        return website

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v):
        if v is None:
            return None
        description = str(v).strip()
        if not description:
            return None
        if len(description) > 500:
            raise ValueError("Description must be less than 500 characters")
        return description

    def is_complete(self) -> bool:
        return bool(self.company_name and self.business_type and self.industry)


def get_business_size_category(employee_count: int) -> str:
    if employee_count <= 10:
        return "micro"
    if employee_count <= 50:
        return "small"
    if employee_count <= 250:
        return "medium"
    return "large"


def get_recommended_plan(info: BusinessInfo) -> str:
    """Pick a pricing plan; high volume always needs the enterprise plan."""
    size = get_business_size_category(info.employee_count)
    if info.expected_volume == ExpectedVolume.HIGH.value or size == "large":
        return "enterprise"
    if size == "micro" and info.expected_volume == ExpectedVolume.LOW.value:
        return "starter"
    return "growth"


def format_website_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    if not url:
        return ""
    if url.startswith(("http://", "https://")):
        return url
    return f"https://{url}"


# Integration step
class ChannelIntegrationConfig(StepSchema):
    """Messaging-channel (WhatsApp Business) integration settings."""

    business_account_id: str
    phone_number_id: str
    app_id: str
    access_token: str = Field(repr=False)
    webhook_url: str
    verify_token: str = Field(repr=False)
    is_test_mode: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("business_account_id", "phone_number_id", "app_id", mode="before")
    @classmethod
    def validate_required_ids(cls, v, info):
        value = str(v).strip() if v is not None else ""
        if not value:
            label = info.field_name.replace("_", " ").capitalize()
            raise ValueError(f"{label} is required")
        return value

    @field_validator("access_token", mode="before")
    @classmethod
    def validate_access_token(cls, v):
        token = _text(v, "Access token")
        if not token:
            raise ValueError("Access token is required")
        if len(token) < MIN_ACCESS_TOKEN_LENGTH:
            raise ValueError("Access token appears to be invalid")
        return token

    @field_validator("webhook_url", mode="before")
    @classmethod
    def validate_webhook_url(cls, v):
        url = _text(v, "Webhook URL")
        if not url:
            raise ValueError("Webhook URL is required")
        if not WEBSITE_PATTERN.match(url) or "://" not in url:
            raise ValueError("Invalid webhook URL format")
        if not url.startswith("https://"):
            raise ValueError("Webhook URL must use HTTPS")
        return url

    @field_validator("verify_token", mode="before")
    @classmethod
    def validate_verify_token(cls, v):
        token = _text(v, "Verify token")
        if not token:
            raise ValueError("Verify token is required")
        if len(token) < MIN_VERIFY_TOKEN_LENGTH:
            raise ValueError(f"Verify token must be at least {MIN_VERIFY_TOKEN_LENGTH} characters")
        return token

    @property
    def masked_access_token(self) -> str:
        return mask_access_token(self.access_token)


def mask_access_token(token: str) -> str:
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


# Verification step
class PhoneVerification(StepSchema):
    """Phone number verification state."""

    phone_number: str
    country_code: str
    is_verified: bool = False
    verification_code: Optional[str] = Field(default=None, repr=False)
    verification_attempts: int = 0
    last_verification_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @field_validator("phone_number", mode="before")
    @classmethod
    def validate_phone_number(cls, v):
        number = re.sub(r"\s+", "", _text(v, "Phone number"))
        if not PHONE_PATTERN.match(number):
            raise ValueError("Invalid phone number format")
        return number

    @field_validator("country_code", mode="before")
    @classmethod
    def validate_country_code(cls, v):
        code = _text(v, "Country code")
        if len(code) != 2:
            raise ValueError("Invalid country code")
        return code.upper()

    def is_complete(self) -> bool:
        return self.is_verified


def generate_verification_code() -> str:
    """Six-digit numeric code."""
    return str(100000 + secrets.randbelow(900000))


def send_verification_code(verification: PhoneVerification, code: Optional[str] = None) -> PhoneVerification:
    """Attach a fresh code to the verification (delivery is out of band)."""
    return verification.model_copy(
        update={
            "verification_code": code or generate_verification_code(),
            "last_verification_at": utcnow(),
        }
    )


def verify_phone_number(verification: PhoneVerification, code: str) -> PhoneVerification:
    """Check a code against the sent one; every attempt counts."""
    if verification.verification_attempts >= MAX_VERIFICATION_ATTEMPTS:
        raise PhoneVerificationError("Too many verification attempts")
    if not verification.verification_code:
        raise PhoneVerificationError("No verification code sent")

    is_valid = verification.verification_code == code.strip()
    return verification.model_copy(
        update={
            "is_verified": is_valid,
            "verification_attempts": verification.verification_attempts + 1,
            "verified_at": utcnow() if is_valid else verification.verified_at,
        }
    )


# Bot setup step
class DaySchedule(StepSchema):
    is_open: bool
    open_time: Optional[str] = None
    close_time: Optional[str] = None

    @field_validator("open_time", "close_time")
    @classmethod
    def validate_times(cls, v):
        if v is not None and not validate_time_format(v):
            raise ValueError(f"Invalid time format: {v!r} (expected HH:MM)")
        return v


def _default_schedule() -> Dict[str, DaySchedule]:
    weekday = DaySchedule(is_open=True, open_time="09:00", close_time="17:00")
    closed = DaySchedule(is_open=False)
    return {day: (weekday if day not in ("saturday", "sunday") else closed) for day in WEEKDAYS}


class BusinessHours(StepSchema):
    enabled: bool = False
    timezone: str = "UTC"
    schedule: Dict[str, DaySchedule] = Field(default_factory=_default_schedule)
    closed_message: Optional[str] = None

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v):
        unknown = set(v) - set(WEEKDAYS)
        if unknown:
            raise ValueError(f"Unknown weekday(s): {', '.join(sorted(unknown))}")
        return {**_default_schedule(), **v}


class BotCommand(StepSchema):
    trigger: str
    description: str
    response: str
    is_active: bool = True


def _default_commands() -> List[BotCommand]:
    return [
        BotCommand(
            trigger="help",
            description="Show available commands",
            response="Available commands:\n• help - Show this help message\n• contact - Contact support",
        ),
        BotCommand(
            trigger="contact",
            description="Contact support",
            response="For support, please email us at support@example.com or call +1-555-0123",
        ),
    ]


class BotConfiguration(StepSchema):
    """Chat bot configuration collected on the bot-setup step."""

    name: str
    welcome_message: Optional[str] = Field(default=None, validate_default=True)
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    auto_reply_enabled: bool = True
    language_code: str = "en"
    fallback_message: str = (
        "I'm sorry, I didn't understand that. Please try again or type 'help' for assistance."
    )
    commands: List[BotCommand] = Field(default_factory=_default_commands)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v):
        name = _text(v, "Bot name")
        if not name:
            raise ValueError("Bot name is required")
        if len(name) < 2:
            raise ValueError("Bot name must be at least 2 characters")
        if len(name) > 50:
            raise ValueError("Bot name must be less than 50 characters")
        return name

    @field_validator("welcome_message", mode="before")
    @classmethod
    def default_welcome_message(cls, v, info):
        message = _text(v, "Welcome message")
        if not message and "name" in info.data:
            return f"Hello! Welcome to {info.data['name']}. How can I help you today?"
        return message or None

    @field_validator("language_code")
    @classmethod
    def validate_language_code(cls, v):
        if v not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {v}")
        return v


def validate_time_format(value: str) -> bool:
    return bool(TIME_PATTERN.match(value or ""))


def _to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def is_business_open(hours: BusinessHours, at: datetime) -> bool:
    """Whether the bot's business hours include the given local time."""
    if not hours.enabled:
        return True
    day = hours.schedule[WEEKDAYS[at.weekday()]]
    if not day.is_open:
        return False
    if not day.open_time or not day.close_time:
        return True
    current = at.hour * 60 + at.minute
    return _to_minutes(day.open_time) <= current <= _to_minutes(day.close_time)


def get_supported_languages() -> List[Dict[str, str]]:
    return [{"code": code, "name": name} for code, name in SUPPORTED_LANGUAGES.items()]


# Testing step
class TestingResults(StepSchema):
    """Outcome of the end-to-end bot test."""

    __test__ = False

    webhook_connected: bool = False
    message_sent: bool = False
    response_received: bool = False
    tested_at: Optional[datetime] = None

    @property
    def all_tests_passed(self) -> bool:
        return self.webhook_connected and self.message_sent and self.response_received

    def is_complete(self) -> bool:
        return self.all_tests_passed


STEP_SCHEMAS: Dict[OnboardingStep, Type[StepSchema]] = {
    OnboardingStep.BUSINESS: BusinessInfo,
    OnboardingStep.INTEGRATION: ChannelIntegrationConfig,
    OnboardingStep.VERIFICATION: PhoneVerification,
    OnboardingStep.BOT_SETUP: BotConfiguration,
    OnboardingStep.TESTING: TestingResults,
}

STEP_ERRORS: Dict[OnboardingStep, Type[StepDataValidationError]] = {
    OnboardingStep.BUSINESS: BusinessInfoValidationError,
    OnboardingStep.INTEGRATION: ChannelConfigValidationError,
    OnboardingStep.VERIFICATION: PhoneVerificationError,
    OnboardingStep.BOT_SETUP: BotConfigValidationError,
    OnboardingStep.TESTING: TestingResultsValidationError,
}


def _first_error_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    message = error.get("msg", "Invalid value")
    # pydantic prefixes messages raised from validators
    return message.removeprefix("Value error, ")


def parse_step_data(step: OnboardingStep | str, payload: Any) -> Optional[StepSchema]:
    """Validate a raw payload for a step.

    Returns None for steps that carry no payload (welcome, complete). Raises
    the step's StepDataValidationError subclass when validation fails.
    """
    step = OnboardingStep(step)
    schema = STEP_SCHEMAS.get(step)
    if schema is None:
        return None
    if isinstance(payload, schema):
        return payload
    if not isinstance(payload, Mapping):
        raise STEP_ERRORS[step](f"Payload for step '{step.value}' must be an object")
    try:
        return schema.model_validate(dict(payload))
    except ValidationError as e:
        field = ".".join(str(part) for part in e.errors()[0].get("loc", ()))
        raise STEP_ERRORS[step](
            _first_error_message(e), field=field or None, details={"errors": e.error_count()}, cause=e
        ) from e


def step_data_to_dict(model: StepSchema) -> Dict[str, Any]:
    """JSON-compatible form stored in session.step_data."""
    return model.model_dump(mode="json")


def create_business_info(**params) -> BusinessInfo:
    return parse_step_data(OnboardingStep.BUSINESS, params)


def create_channel_integration_config(**params) -> ChannelIntegrationConfig:
    return parse_step_data(OnboardingStep.INTEGRATION, params)


def create_phone_verification(**params) -> PhoneVerification:
    return parse_step_data(OnboardingStep.VERIFICATION, params)


def create_bot_configuration(**params) -> BotConfiguration:
    return parse_step_data(OnboardingStep.BOT_SETUP, params)


def create_testing_results(**params) -> TestingResults:
    return parse_step_data(OnboardingStep.TESTING, params)


def get_step_model(step_data: Mapping[str, Any], step: OnboardingStep | str) -> Optional[StepSchema]:
    """Parse the stored payload of a step back into its model, None if absent."""
    step = OnboardingStep(step)
    payload = step_data.get(step.value)
    if payload is None:
        return None
    return parse_step_data(step, payload)
