"""
Repository classes for the onboarding session tracker.
Declares the repository port the services depend on and implements it on top
of SQLAlchemy.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import asc, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from onboarding_tracker.exceptions import RepositoryError, SessionNotFoundError
from onboarding_tracker.logic.email import Email
from onboarding_tracker.logic.onboarding_session import (
    AnalyticsFilters,
    DeviceInfo,
    OnboardingAnalyticsSummary,
    OnboardingSession,
    OnboardingStatus,
    OnboardingStep,
    SessionAnalytics,
    STEP_ORDER,
    calculate_session_analytics,
)
from onboarding_tracker.utils.clock import ensure_utc, parse_datetime, utcnow
from onboarding_tracker.utils.jsonify import to_jsonable

from .models import OnboardingSessionRecord

logger = logging.getLogger(__name__)


class OnboardingRepository(ABC):
    """Persistence port for onboarding sessions.

    Lookups return None when nothing matches; implementations raise
    RepositoryError when the underlying store fails.
    """

    @abstractmethod
    def save(self, session: OnboardingSession) -> OnboardingSession:
        """Insert a new session and return the stored value."""

    @abstractmethod
    def find_by_id(self, session_id: str) -> Optional[OnboardingSession]:
        """Get a session by ID."""

    @abstractmethod
    def find_by_user_email(self, email: Email | str) -> Optional[OnboardingSession]:
        """Get the active (in-progress) session of a user, most recent first."""

    @abstractmethod
    def find_by_recovery_token(self, token: str) -> Optional[OnboardingSession]:
        """Get a session by its recovery token."""

    @abstractmethod
    def update(self, session: OnboardingSession) -> OnboardingSession:
        """Overwrite an existing session and return the stored value."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Delete a session; False when it did not exist."""

    @abstractmethod
    def find_by_status(self, status: OnboardingStatus) -> List[OnboardingSession]:
        """Get all sessions in a status."""

    @abstractmethod
    def find_abandoned_sessions(self, older_than_minutes: int) -> List[OnboardingSession]:
        """Get in-progress sessions inactive for longer than the threshold."""

    @abstractmethod
    def find_expired_sessions(self) -> List[OnboardingSession]:
        """Get in-progress or paused sessions whose expiry has passed."""

    @abstractmethod
    def find_sessions_in_date_range(self, start: datetime, end: datetime) -> List[OnboardingSession]:
        """Get sessions started within [start, end]."""

    @abstractmethod
    def get_analytics_summary(self, filters: Optional[AnalyticsFilters] = None) -> OnboardingAnalyticsSummary:
        """Aggregate analytics over the sessions matching the filters."""

    @abstractmethod
    def cleanup_expired_sessions(self) -> int:
        """Hard-delete expired sessions and return how many were removed."""

    @abstractmethod
    def get_active_session_count(self) -> int:
        """Count in-progress sessions."""


def analytics_to_dict(analytics: SessionAnalytics) -> Dict[str, Any]:
    """JSON document stored in the analytics column."""
    return to_jsonable({
        "started_at": analytics.started_at,
        "last_activity_at": analytics.last_activity_at,
        "completed_at": analytics.completed_at,
        "abandoned_at": analytics.abandoned_at,
        "resumed_at": analytics.resumed_at,
        "paused_at": analytics.paused_at,
        "step_timestamps": {step: list(entries) for step, entries in analytics.step_timestamps.items()},
        "step_durations": dict(analytics.step_durations),
        "device_info": analytics.device_info.to_dict() if analytics.device_info else None,
        "ab_test_variants": dict(analytics.ab_test_variants),
        "conversion_source": analytics.conversion_source,
        "abandonment_reason": analytics.abandonment_reason,
    })


def analytics_from_dict(data: Dict[str, Any], started_at: datetime, last_activity_at: datetime) -> SessionAnalytics:
    """Rebuild analytics from its stored document; missing steps default to empty."""
    raw_timestamps = data.get("step_timestamps") or {}
    raw_durations = data.get("step_durations") or {}
    return SessionAnalytics(
        started_at=parse_datetime(data.get("started_at")) or started_at,
        last_activity_at=parse_datetime(data.get("last_activity_at")) or last_activity_at,
        completed_at=parse_datetime(data.get("completed_at")),
        abandoned_at=parse_datetime(data.get("abandoned_at")),
        resumed_at=parse_datetime(data.get("resumed_at")),
        paused_at=parse_datetime(data.get("paused_at")),
        step_timestamps={
            step: tuple(parse_datetime(value) for value in raw_timestamps.get(step.value) or ())
            for step in STEP_ORDER
        },
        step_durations={step: int(raw_durations.get(step.value) or 0) for step in STEP_ORDER},
        device_info=DeviceInfo.from_dict(data.get("device_info")),
        ab_test_variants=dict(data.get("ab_test_variants") or {}),
        conversion_source=data.get("conversion_source"),
        abandonment_reason=data.get("abandonment_reason"),
    )


def record_to_session(record: OnboardingSessionRecord) -> OnboardingSession:
    started_at = ensure_utc(record.started_at)
    last_activity_at = ensure_utc(record.last_activity_at)
    return OnboardingSession(
        id=record.id,
        user_email=Email(record.user_email),
        current_step=OnboardingStep(record.current_step),
        status=OnboardingStatus(record.status),
        completed_steps=tuple(OnboardingStep(step) for step in record.completed_steps or ()),
        started_at=started_at,
        last_activity_at=last_activity_at,
        completed_at=ensure_utc(record.completed_at),
        expires_at=ensure_utc(record.expires_at),
        step_data=dict(record.step_data or {}),
        metadata=dict(record.session_metadata or {}),
        analytics=analytics_from_dict(record.analytics or {}, started_at, last_activity_at),
        recovery_token=record.recovery_token,
        revision=record.revision or 1,
    )


def apply_session_to_record(session: OnboardingSession, record: OnboardingSessionRecord) -> OnboardingSessionRecord:
    record.user_email = session.user_email.value
    record.current_step = session.current_step.value
    record.status = session.status.value
    record.completed_steps = [step.value for step in session.completed_steps]
    record.started_at = session.started_at
    record.last_activity_at = session.last_activity_at
    record.completed_at = session.completed_at
    record.step_data = to_jsonable(session.step_data)
    record.session_metadata = to_jsonable(session.metadata)
    record.analytics = analytics_to_dict(session.analytics)
    record.recovery_token = session.recovery_token
    record.expires_at = session.expires_at
    record.revision = session.revision
    return record


class SQLAlchemyOnboardingRepository(OnboardingRepository):
    """Repository for onboarding sessions backed by the onboarding_sessions table.

    Every call runs in its own unit of work obtained from the database
    factory, so a failed write never rolls back an unrelated one.
    """

    def __init__(self, database_factory):
        self.database_factory = database_factory

    @contextmanager
    def _unit_of_work(self, operation: str) -> Generator[Session, None, None]:
        try:
            with self.database_factory.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Error during %s: %s", operation, e)
            raise RepositoryError(f"Failed to {operation}: {e}", cause=e) from e

    def save(self, session: OnboardingSession) -> OnboardingSession:
        with self._unit_of_work("save onboarding session") as db:
            record = apply_session_to_record(session, OnboardingSessionRecord(id=session.id))
            db.add(record)
            db.flush()
            logger.info("Saved onboarding session %s", session.id)
            return record_to_session(record)

    def find_by_id(self, session_id: str) -> Optional[OnboardingSession]:
        with self._unit_of_work("find onboarding session by id") as db:
            record = db.get(OnboardingSessionRecord, session_id)
            return record_to_session(record) if record else None

    def find_by_user_email(self, email: Email | str) -> Optional[OnboardingSession]:
        value = email.value if isinstance(email, Email) else str(email).strip().lower()
        with self._unit_of_work("find onboarding session by email") as db:
            record = (
                db.query(OnboardingSessionRecord)
                .filter(
                    OnboardingSessionRecord.user_email == value,
                    OnboardingSessionRecord.status == OnboardingStatus.IN_PROGRESS.value,
                )
                .order_by(desc(OnboardingSessionRecord.started_at))
                .first()
            )
            return record_to_session(record) if record else None

    def find_by_recovery_token(self, token: str) -> Optional[OnboardingSession]:
        with self._unit_of_work("find onboarding session by recovery token") as db:
            record = (
                db.query(OnboardingSessionRecord)
                .filter(OnboardingSessionRecord.recovery_token == token)
                .first()
            )
            return record_to_session(record) if record else None

    def update(self, session: OnboardingSession) -> OnboardingSession:
        with self._unit_of_work("update onboarding session") as db:
            record = db.get(OnboardingSessionRecord, session.id)
            if record is None:
                raise SessionNotFoundError("id", session.id)
            apply_session_to_record(session, record)
            db.flush()
            return record_to_session(record)

    def delete(self, session_id: str) -> bool:
        with self._unit_of_work("delete onboarding session") as db:
            record = db.get(OnboardingSessionRecord, session_id)
            if record is None:
                return False
            db.delete(record)
            db.flush()
            return True

    def find_by_status(self, status: OnboardingStatus) -> List[OnboardingSession]:
        with self._unit_of_work("find onboarding sessions by status") as db:
            records = (
                db.query(OnboardingSessionRecord)
                .filter(OnboardingSessionRecord.status == OnboardingStatus(status).value)
                .order_by(desc(OnboardingSessionRecord.started_at))
                .all()
            )
            return [record_to_session(r) for r in records]

    def find_abandoned_sessions(
        self, older_than_minutes: int, *, now: Optional[datetime] = None
    ) -> List[OnboardingSession]:
        cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)
        with self._unit_of_work("find abandoned onboarding sessions") as db:
            records = (
                db.query(OnboardingSessionRecord)
                .filter(
                    OnboardingSessionRecord.status == OnboardingStatus.IN_PROGRESS.value,
                    OnboardingSessionRecord.last_activity_at < cutoff,
                )
                .order_by(asc(OnboardingSessionRecord.last_activity_at))
                .all()
            )
            return [record_to_session(r) for r in records]

    def find_expired_sessions(self, *, now: Optional[datetime] = None) -> List[OnboardingSession]:
        with self._unit_of_work("find expired onboarding sessions") as db:
            records = (
                db.query(OnboardingSessionRecord)
                .filter(
                    OnboardingSessionRecord.status.in_(
                        [OnboardingStatus.IN_PROGRESS.value, OnboardingStatus.PAUSED.value]
                    ),
                    OnboardingSessionRecord.expires_at < (now or utcnow()),
                )
                .order_by(asc(OnboardingSessionRecord.expires_at))
                .all()
            )
            return [record_to_session(r) for r in records]

    def find_sessions_in_date_range(self, start: datetime, end: datetime) -> List[OnboardingSession]:
        with self._unit_of_work("find onboarding sessions in date range") as db:
            records = (
                db.query(OnboardingSessionRecord)
                .filter(
                    OnboardingSessionRecord.started_at >= start,
                    OnboardingSessionRecord.started_at <= end,
                )
                .order_by(desc(OnboardingSessionRecord.started_at))
                .all()
            )
            return [record_to_session(r) for r in records]

    def get_analytics_summary(self, filters: Optional[AnalyticsFilters] = None) -> OnboardingAnalyticsSummary:
        filters = filters or AnalyticsFilters()
        with self._unit_of_work("get onboarding analytics summary") as db:
            query = db.query(OnboardingSessionRecord)
            if filters.start_date:
                query = query.filter(OnboardingSessionRecord.started_at >= filters.start_date)
            if filters.end_date:
                query = query.filter(OnboardingSessionRecord.started_at <= filters.end_date)
            if filters.statuses:
                query = query.filter(
                    OnboardingSessionRecord.status.in_([OnboardingStatus(s).value for s in filters.statuses])
                )
            sessions = [record_to_session(r) for r in query.all()]

        # conversion source lives inside the analytics document
        if filters.conversion_source:
            sessions = [s for s in sessions if s.analytics.conversion_source == filters.conversion_source]
        return calculate_session_analytics(sessions)

    def cleanup_expired_sessions(self, *, now: Optional[datetime] = None) -> int:
        with self._unit_of_work("clean up expired onboarding sessions") as db:
            deleted = (
                db.query(OnboardingSessionRecord)
                .filter(OnboardingSessionRecord.expires_at < (now or utcnow()))
                .delete(synchronize_session=False)
            )
            logger.info("Deleted %d expired onboarding sessions", deleted)
            return deleted

    def get_active_session_count(self) -> int:
        with self._unit_of_work("count active onboarding sessions") as db:
            return (
                db.query(OnboardingSessionRecord)
                .filter(OnboardingSessionRecord.status == OnboardingStatus.IN_PROGRESS.value)
                .count()
            )
