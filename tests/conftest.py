"""
Pytest configuration and fixtures for onboarding session tracker tests.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add the repository root to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from config.config import DatabaseConfig, FeatureFlags, SessionConfig
from onboarding_tracker.data.database_factory import DatabaseFactory
from onboarding_tracker.data.repositories import OnboardingRepository, SQLAlchemyOnboardingRepository
from onboarding_tracker.logic.email import Email
from onboarding_tracker.logic.onboarding_session import DeviceInfo, create_onboarding_session

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """Fixed reference time for deterministic tests."""
    return FIXED_NOW


@pytest.fixture
def clock(now):
    """Clock callable returning the fixed reference time."""
    return lambda: now


@pytest.fixture
def user_email():
    return Email("owner@example.com")


@pytest.fixture
def device_info():
    return DeviceInfo(user_agent="Mozilla/5.0", ip="203.0.113.7", country="KE", city="Nairobi")


@pytest.fixture
def new_session(user_email, device_info, now):
    """Fresh in-progress session started at the reference time."""
    return create_onboarding_session(user_email, device_info, "google", now=now)


@pytest.fixture
def session_config():
    return SessionConfig()


@pytest.fixture
def feature_flags():
    return FeatureFlags(enforce_step_order=True, strict_sync=False, reuse_in_progress_sessions=True)


@pytest.fixture
def mock_repository():
    """Repository double; update/save echo their argument by default."""
    repository = Mock(spec=OnboardingRepository)
    repository.save.side_effect = lambda session: session
    repository.update.side_effect = lambda session: session
    return repository


@pytest.fixture
def database_factory():
    """In-memory sqlite database with the schema created."""
    database_config = DatabaseConfig()
    database_config.dsn = "sqlite:///:memory:"
    database_config.echo = False
    factory = DatabaseFactory(database_config)
    factory.create_all_tables()
    yield factory
    factory.close()


@pytest.fixture
def repository(database_factory):
    return SQLAlchemyOnboardingRepository(database_factory)


@pytest.fixture
def business_payload():
    return {
        "company_name": "Acme Trading",
        "business_type": "sme",
        "industry": "retail",
        "employee_count": 12,
        "website": "acme.example.com",
        "expected_volume": "medium",
    }


@pytest.fixture
def integration_payload():
    return {
        "business_account_id": "102290129340398",
        "phone_number_id": "106540352242922",
        "app_id": "543210987654321",
        "access_token": "EAAG" + "x" * 60,
        "webhook_url": "https://hooks.acme.example.com/whatsapp",
        "verify_token": "verify-me-please",
    }


@pytest.fixture
def verification_payload():
    return {"phone_number": "+254 712 345 678", "country_code": "ke", "is_verified": True}


@pytest.fixture
def bot_payload():
    return {"name": "Acme Helper", "language_code": "en"}


@pytest.fixture
def testing_payload():
    return {"webhook_connected": True, "message_sent": True, "response_received": True}
