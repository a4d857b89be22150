"""
Database models for the onboarding session tracker.
Defines the SQLAlchemy model backing the onboarding session repository.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, validates
from sqlalchemy.types import TypeDecorator

from onboarding_tracker.logic.onboarding_session import OnboardingStatus, OnboardingStep

Base = declarative_base()


# Database-agnostic JSON column type
class JSONColumn(TypeDecorator):
    """JSON column that uses JSONB for PostgreSQL and JSON for other databases."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class OnboardingSessionRecord(Base):
    """Persisted onboarding session."""

    __tablename__ = "onboarding_sessions"

    id = Column(String(36), primary_key=True)
    user_email = Column(String(254), nullable=False, index=True)
    current_step = Column(String(32), nullable=False, default=OnboardingStep.WELCOME.value)
    status = Column(String(32), nullable=False, default=OnboardingStatus.IN_PROGRESS.value, index=True)
    completed_steps = Column(JSONColumn, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    step_data = Column(JSONColumn, nullable=False, default=dict)
    # "metadata" is reserved on declarative classes
    session_metadata = Column("metadata", JSONColumn, nullable=False, default=dict)
    analytics = Column(JSONColumn, nullable=False, default=dict)
    recovery_token = Column(String(64), nullable=True, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_onboarding_sessions_email_status", "user_email", "status"),
        Index("idx_onboarding_sessions_last_activity", "last_activity_at"),
    )

    @validates("status")
    def validate_status(self, key, status):
        """Validate session status."""
        if status not in [s.value for s in OnboardingStatus]:
            raise ValueError(f"Invalid status: {status}")
        return status

    @validates("current_step")
    def validate_current_step(self, key, step):
        """Validate onboarding step."""
        if step not in [s.value for s in OnboardingStep]:
            raise ValueError(f"Invalid step: {step}")
        return step

    def __repr__(self):
        return f"<OnboardingSessionRecord(id={self.id}, status={self.status}, step={self.current_step})>"
