"""
Session management service for the onboarding session tracker.
Orchestrates multi-step session workflows (recovery, abandonment sweep,
cleanup, cross-device sync, pause/resume) on top of the repository port.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from config.config import FeatureFlags, SessionConfig
from onboarding_tracker.exceptions import (
    InvalidSessionStateError,
    OnboardingTrackerError,
    SessionNotFoundError,
    SyncConflictError,
)
from onboarding_tracker.data.repositories import OnboardingRepository
from onboarding_tracker.logic.onboarding_session import (
    AnalyticsFilters,
    DeviceInfo,
    OnboardingAnalyticsSummary,
    OnboardingSession,
    OnboardingStatus,
    SessionAnalyticsSummary,
    abandon_onboarding,
    extend_session_expiry,
    generate_analytics_summary,
    is_session_expired,
    minutes_until_expiry,
    pause_onboarding,
    record_ab_test_variant,
    resume_onboarding,
    update_device_info,
    update_onboarding_metadata,
)
from onboarding_tracker.utils.clock import utcnow
from onboarding_tracker.utils.logging import mask_secret
from onboarding_tracker.utils.result import Result

logger = logging.getLogger(__name__)

INACTIVE_TIMEOUT_REASON = "inactive_timeout"

DEFAULT_ANALYTICS_STATUSES = (
    OnboardingStatus.COMPLETED,
    OnboardingStatus.ABANDONED,
    OnboardingStatus.IN_PROGRESS,
)


@dataclass(frozen=True)
class SessionRecoveryResult:
    session: OnboardingSession
    was_expired: bool
    was_extended: bool


@dataclass(frozen=True)
class AbandonmentTrackingResult:
    total_abandoned: int
    sessions_marked_abandoned: List[OnboardingSession] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SessionCleanupResult:
    expired_sessions_deleted: int
    abandoned_sessions_marked: int
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SessionSyncResult:
    synchronized: bool
    conflicts: List[str]
    resolved: bool
    revision: int


@dataclass(frozen=True)
class SessionAnalyticsReport:
    summary: OnboardingAnalyticsSummary
    active_sessions: int
    timestamp: datetime


class SessionManagementService:
    """High-level session management operations.

    Every public method returns a Result. Expected failures keep the message
    of the error that caused them; anything else is logged and reported as
    "Unexpected error <operation>". Storage is only written after the
    in-memory transition succeeded.
    """

    def __init__(
        self,
        repository: OnboardingRepository,
        session_config: Optional[SessionConfig] = None,
        feature_flags: Optional[FeatureFlags] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.session_config = session_config or SessionConfig()
        self.feature_flags = feature_flags or FeatureFlags()
        self._clock = clock

    def _failure(self, operation: str, error: Exception) -> Result:
        if isinstance(error, OnboardingTrackerError):
            logger.warning("Failed %s: %s", operation, error.message, extra={"operation": operation})
            return Result.from_error(error)
        logger.error("Unexpected error %s: %s", operation, error, exc_info=True, extra={"operation": operation})
        return Result.fail(f"Unexpected error {operation}")

    def _load(self, session_id: str) -> OnboardingSession:
        session = self.repository.find_by_id(session_id)
        if session is None:
            raise SessionNotFoundError("id", session_id)
        return session

    def _is_close_to_expiry(self, session: OnboardingSession, now: datetime) -> bool:
        return minutes_until_expiry(session, now=now) < self.session_config.near_expiry_minutes

    def recover_session(self, recovery_token: str) -> Result[SessionRecoveryResult]:
        """Resume a session from its recovery token.

        Expired or nearly expired sessions are extended, and paused ones are
        resumed, before being handed back.
        """
        try:
            session = self.repository.find_by_recovery_token(recovery_token)
            if session is None:
                raise SessionNotFoundError("recovery token", mask_secret(recovery_token))

            now = self._clock()
            was_expired = is_session_expired(session, now=now)
            was_extended = False

            if was_expired or self._is_close_to_expiry(session, now):
                recovered = extend_session_expiry(
                    session, self.session_config.recovery_extension_hours, now=now
                )
                if session.status == OnboardingStatus.PAUSED:
                    recovered = resume_onboarding(recovered, now=now)
                session = self.repository.update(recovered)
                was_extended = True
                logger.info(
                    "Recovered session %s (expired=%s)", session.id, was_expired,
                    extra={"session_id": session.id, "operation": "recover_session"},
                )

            return Result.ok(SessionRecoveryResult(session=session, was_expired=was_expired, was_extended=was_extended))
        except Exception as e:
            return self._failure("recovering session", e)

    def track_abandoned_sessions(self, threshold_minutes: Optional[int] = None) -> Result[AbandonmentTrackingResult]:
        """Mark in-progress sessions inactive for longer than the threshold as abandoned.

        Best effort: a session that fails to persist is reported in errors and
        the sweep carries on with the rest.
        """
        if threshold_minutes is None:
            threshold_minutes = self.session_config.abandonment_threshold_minutes
        try:
            candidates = self.repository.find_abandoned_sessions(threshold_minutes)
        except Exception as e:
            return self._failure("tracking abandoned sessions", e)

        marked: List[OnboardingSession] = []
        errors: List[str] = []
        for session in candidates:
            try:
                abandoned = abandon_onboarding(session, INACTIVE_TIMEOUT_REASON, now=self._clock())
                marked.append(self.repository.update(abandoned))
            except Exception as e:
                logger.warning(
                    "Failed to mark session %s as abandoned: %s", session.id, e,
                    extra={"session_id": session.id, "operation": "track_abandoned_sessions"},
                )
                errors.append(f"Failed to mark session {session.id} as abandoned: {e}")

        if marked:
            logger.info("Marked %d of %d inactive sessions as abandoned", len(marked), len(candidates))
        return Result.ok(
            AbandonmentTrackingResult(
                total_abandoned=len(candidates),
                sessions_marked_abandoned=marked,
                errors=errors,
            )
        )

    def perform_session_cleanup(self) -> Result[SessionCleanupResult]:
        """Delete expired sessions, then sweep for abandoned ones.

        The two phases are independent; failures of either end up in errors
        and the cleanup itself still succeeds.
        """
        errors: List[str] = []

        expired_deleted = 0
        try:
            expired_deleted = self.repository.cleanup_expired_sessions()
        except Exception as e:
            logger.error("Failed to clean up expired sessions: %s", e, exc_info=True)
            errors.append(f"Failed to clean up expired sessions: {e}")

        abandoned_marked = 0
        tracking = self.track_abandoned_sessions(self.session_config.cleanup_abandonment_threshold_minutes)
        if tracking.success:
            abandoned_marked = len(tracking.value.sessions_marked_abandoned)
            errors.extend(tracking.value.errors)
        else:
            errors.append(f"Failed to track abandoned sessions: {tracking.error}")

        logger.info(
            "Session cleanup finished: %d expired deleted, %d abandoned marked, %d errors",
            expired_deleted, abandoned_marked, len(errors),
        )
        return Result.ok(
            SessionCleanupResult(
                expired_sessions_deleted=expired_deleted,
                abandoned_sessions_marked=abandoned_marked,
                errors=errors,
            )
        )

    def synchronize_session(
        self, session_id: str, client_revision: int, device_info: Optional[DeviceInfo] = None
    ) -> Result[SessionSyncResult]:
        """Reconcile a client's view of a session with the stored one.

        A client revision behind the stored revision is a conflict. With
        strict_sync it is rejected; otherwise it is reported and the device
        info / expiry refresh is still written.
        """
        try:
            session = self._load(session_id)
            conflicts: List[str] = []
            if client_revision < session.revision:
                if self.feature_flags.strict_sync:
                    raise SyncConflictError(client_revision, session.revision)
                conflicts.append("Client is behind server state")

            now = self._clock()
            updated = session
            if device_info is not None:
                updated = update_device_info(updated, device_info, now=now)
            if session.status == OnboardingStatus.IN_PROGRESS and self._is_close_to_expiry(session, now):
                updated = extend_session_expiry(updated, self.session_config.expiry_hours, now=now)
            if updated is not session:
                updated = self.repository.update(updated)

            return Result.ok(
                SessionSyncResult(
                    synchronized=not conflicts,
                    conflicts=conflicts,
                    resolved=not conflicts,
                    revision=updated.revision,
                )
            )
        except Exception as e:
            return self._failure("synchronizing session", e)

    def pause_session(self, session_id: str, reason: Optional[str] = None) -> Result[OnboardingSession]:
        try:
            session = self._load(session_id)
            if session.status != OnboardingStatus.IN_PROGRESS:
                raise InvalidSessionStateError(
                    f"Only in-progress sessions can be paused (status: {session.status.value})",
                    status=session.status.value,
                )
            now = self._clock()
            note = {"paused_at": now.isoformat()}
            if reason:
                note["pause_reason"] = reason
            paused = update_onboarding_metadata(pause_onboarding(session, now=now), note, now=now)
            return Result.ok(self.repository.update(paused))
        except Exception as e:
            return self._failure("pausing session", e)

    def resume_session(self, session_id: str) -> Result[OnboardingSession]:
        try:
            session = self._load(session_id)
            if session.status != OnboardingStatus.PAUSED:
                raise InvalidSessionStateError("Session is not paused", status=session.status.value)
            now = self._clock()
            resumed = resume_onboarding(session, now=now)
            resumed = extend_session_expiry(resumed, self.session_config.expiry_hours, now=now)
            resumed = update_onboarding_metadata(resumed, {"resumed_at": now.isoformat()}, now=now)
            return Result.ok(self.repository.update(resumed))
        except Exception as e:
            return self._failure("resuming session", e)

    def update_ab_test_variant(self, session_id: str, test_name: str, variant: str) -> Result[OnboardingSession]:
        try:
            session = self._load(session_id)
            updated = record_ab_test_variant(session, test_name, variant, now=self._clock())
            return Result.ok(self.repository.update(updated))
        except Exception as e:
            return self._failure("updating A/B test variant", e)

    def get_session_analytics(self, filters: Optional[AnalyticsFilters] = None) -> Result[SessionAnalyticsReport]:
        """Aggregate analytics plus the live active-session count."""
        try:
            filters = filters or AnalyticsFilters()
            if filters.statuses is None:
                filters = AnalyticsFilters(
                    start_date=filters.start_date,
                    end_date=filters.end_date,
                    statuses=DEFAULT_ANALYTICS_STATUSES,
                    conversion_source=filters.conversion_source,
                )
            summary = self.repository.get_analytics_summary(filters)
            active = self.repository.get_active_session_count()
            return Result.ok(SessionAnalyticsReport(summary=summary, active_sessions=active, timestamp=self._clock()))
        except Exception as e:
            return self._failure("getting session analytics", e)

    def get_session_summary(self, session_id: str) -> Result[SessionAnalyticsSummary]:
        try:
            return Result.ok(generate_analytics_summary(self._load(session_id), now=self._clock()))
        except Exception as e:
            return self._failure("getting session summary", e)
