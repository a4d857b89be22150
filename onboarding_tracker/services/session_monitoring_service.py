"""
Session monitoring service for the onboarding session tracker.
Runs periodic maintenance (expired-session cleanup, abandonment sweep) on a
background thread and derives health metrics and alerts from session data.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.config import MonitoringSettings
from onboarding_tracker.data.repositories import OnboardingRepository
from onboarding_tracker.exceptions import ErrorSeverity, OnboardingTrackerError
from onboarding_tracker.logic.onboarding_session import AnalyticsFilters
from onboarding_tracker.services.session_management_service import SessionManagementService
from onboarding_tracker.utils.clock import utcnow

logger = logging.getLogger(__name__)

SYSTEM_ERROR_CRITICAL_COUNT = 3
EXPIRED_NOTIFICATION_THRESHOLD = 10
ABANDONED_NOTIFICATION_THRESHOLD = 20


class AlertType(str, Enum):
    """Kinds of session alerts."""

    HIGH_ABANDONMENT = "high_abandonment"
    SYSTEM_ERROR = "system_error"
    CLEANUP_REQUIRED = "cleanup_required"


@dataclass
class SessionAlert:
    """Alert raised from session health metrics."""

    type: AlertType
    message: str
    severity: ErrorSeverity
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MonitoringReport:
    """Outcome of one monitoring cycle."""

    timestamp: datetime
    active_sessions: int
    expired_sessions_deleted: int
    abandoned_sessions_marked: int
    next_run_at: datetime
    errors: List[str] = field(default_factory=list)


@dataclass
class SessionHealthMetrics:
    """Session health over the last 24 hours."""

    active_sessions: int
    recent_completions: int
    recent_abandonments: int
    average_completion_time: float
    alerts: List[SessionAlert] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class SessionMonitoringService:
    """Periodic onboarding session maintenance and health reporting.

    start() runs a cycle immediately and then every interval on a daemon
    thread; stop() sets the cancellation event and joins the thread.
    """

    def __init__(
        self,
        repository: OnboardingRepository,
        session_management_service: SessionManagementService,
        settings: Optional[MonitoringSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.session_management_service = session_management_service
        self.settings = settings or MonitoringSettings()
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[MonitoringReport] = None

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.settings.interval_minutes)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start background monitoring."""
        if self.is_running:
            logger.warning("Session monitoring is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitoring_loop, name="session-monitor", daemon=True)
        self._thread.start()
        logger.info("Session monitoring started (interval: %s minutes)", self.settings.interval_minutes)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop background monitoring."""
        if not self.is_running:
            logger.warning("Session monitoring is not running")
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Session monitoring stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called; True if monitoring was stopped."""
        return self._stop_event.wait(timeout)

    def get_status(self) -> Dict[str, Any]:
        next_run_at = self.last_report.next_run_at if self.last_report and self.is_running else None
        return {
            "is_running": self.is_running,
            "interval_minutes": self.settings.interval_minutes,
            "notifications_enabled": self.settings.enable_notifications,
            "next_run_at": next_run_at,
        }

    def _monitoring_loop(self) -> None:
        """Main monitoring loop."""
        while not self._stop_event.is_set():
            try:
                self.run_monitoring_cycle()
            except Exception as e:
                logger.error("Session monitoring cycle failed: %s", e, exc_info=True)
            if self._stop_event.wait(self.interval.total_seconds()):
                break

    def run_monitoring_cycle(self) -> MonitoringReport:
        """Count active sessions and run the session cleanup once."""
        timestamp = self._clock()
        errors: List[str] = []
        logger.info("Running session monitoring cycle at %s", timestamp.isoformat())

        active_sessions = 0
        try:
            active_sessions = self.repository.get_active_session_count()
        except OnboardingTrackerError as e:
            errors.append(f"Failed to get active session count: {e.message}")

        expired_deleted = 0
        abandoned_marked = 0
        cleanup = self.session_management_service.perform_session_cleanup()
        if cleanup.success:
            expired_deleted = cleanup.value.expired_sessions_deleted
            abandoned_marked = cleanup.value.abandoned_sessions_marked
            errors.extend(cleanup.value.errors)
        else:
            errors.append(f"Cleanup failed: {cleanup.error}")

        report = MonitoringReport(
            timestamp=timestamp,
            active_sessions=active_sessions,
            expired_sessions_deleted=expired_deleted,
            abandoned_sessions_marked=abandoned_marked,
            next_run_at=timestamp + self.interval,
            errors=errors,
        )
        self.last_report = report
        logger.info(
            "Monitoring cycle completed: active=%d expired_deleted=%d abandoned_marked=%d errors=%d",
            active_sessions, expired_deleted, abandoned_marked, len(errors),
        )

        if self.settings.enable_notifications:
            self.send_notifications(report)
        return report

    def get_health_metrics(self) -> SessionHealthMetrics:
        """Active sessions plus completions/abandonments of the last 24 hours, with alerts."""
        errors: List[str] = []
        now = self._clock()

        active_sessions = 0
        try:
            active_sessions = self.repository.get_active_session_count()
        except OnboardingTrackerError as e:
            errors.append(f"Failed to get active session count: {e.message}")

        recent_completions = 0
        recent_abandonments = 0
        average_completion_time = 0.0
        try:
            summary = self.repository.get_analytics_summary(
                AnalyticsFilters(start_date=now - timedelta(days=1), end_date=now)
            )
            recent_completions = summary.completed_sessions
            recent_abandonments = summary.abandoned_sessions
            average_completion_time = summary.average_completion_time
        except OnboardingTrackerError as e:
            errors.append(f"Failed to get analytics summary: {e.message}")

        metrics = SessionHealthMetrics(
            active_sessions=active_sessions,
            recent_completions=recent_completions,
            recent_abandonments=recent_abandonments,
            average_completion_time=average_completion_time,
            errors=errors,
        )
        metrics.alerts = self.generate_alerts(metrics)
        return metrics

    def generate_alerts(self, metrics: SessionHealthMetrics) -> List[SessionAlert]:
        alerts: List[SessionAlert] = []

        total_recent = metrics.recent_completions + metrics.recent_abandonments
        if total_recent > 0:
            rate = metrics.recent_abandonments / total_recent * 100
            data = {
                "abandonment_rate": rate,
                "recent_abandonments": metrics.recent_abandonments,
                "total_sessions": total_recent,
            }
            if rate > self.settings.high_abandonment_rate:
                alerts.append(SessionAlert(
                    type=AlertType.HIGH_ABANDONMENT,
                    message=f"High abandonment rate detected: {rate:.1f}%",
                    severity=ErrorSeverity.HIGH,
                    data=data,
                ))
            elif rate > self.settings.elevated_abandonment_rate:
                alerts.append(SessionAlert(
                    type=AlertType.HIGH_ABANDONMENT,
                    message=f"Elevated abandonment rate: {rate:.1f}%",
                    severity=ErrorSeverity.MEDIUM,
                    data=data,
                ))

        if metrics.errors:
            alerts.append(SessionAlert(
                type=AlertType.SYSTEM_ERROR,
                message=f"{len(metrics.errors)} system error(s) detected",
                severity=(
                    ErrorSeverity.CRITICAL
                    if len(metrics.errors) > SYSTEM_ERROR_CRITICAL_COUNT
                    else ErrorSeverity.HIGH
                ),
                data={"errors": list(metrics.errors), "error_count": len(metrics.errors)},
            ))

        threshold = self.settings.active_session_alert_threshold
        if metrics.active_sessions > threshold:
            alerts.append(SessionAlert(
                type=AlertType.CLEANUP_REQUIRED,
                message=f"High number of active sessions: {metrics.active_sessions}",
                severity=ErrorSeverity.HIGH if metrics.active_sessions > threshold * 2 else ErrorSeverity.MEDIUM,
                data={"active_sessions": metrics.active_sessions, "threshold": threshold},
            ))

        return alerts

    @staticmethod
    def should_notify(report: MonitoringReport) -> bool:
        return (
            bool(report.errors)
            or report.expired_sessions_deleted > EXPIRED_NOTIFICATION_THRESHOLD
            or report.abandoned_sessions_marked > ABANDONED_NOTIFICATION_THRESHOLD
        )

    def send_notifications(self, report: MonitoringReport) -> bool:
        """Log a notification for significant cycles; returns whether one was sent."""
        if not self.should_notify(report):
            return False
        level = logging.WARNING if report.errors else logging.INFO
        logger.log(
            level,
            "Session monitoring notification: expired_deleted=%d abandoned_marked=%d errors=%s",
            report.expired_sessions_deleted, report.abandoned_sessions_marked, report.errors,
            extra={"operation": "session_monitoring", "status": "warning" if report.errors else "ok"},
        )
        return True
