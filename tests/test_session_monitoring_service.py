"""
Unit tests for the session monitoring service.
Tests monitoring cycles, health metrics, alert thresholds and the background thread.
"""

import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from config.config import MonitoringSettings
from onboarding_tracker.exceptions import ErrorSeverity, RepositoryError
from onboarding_tracker.logic.onboarding_session import OnboardingAnalyticsSummary
from onboarding_tracker.services.session_management_service import (
    SessionCleanupResult,
    SessionManagementService,
)
from onboarding_tracker.services.session_monitoring_service import (
    AlertType,
    MonitoringReport,
    SessionHealthMetrics,
    SessionMonitoringService,
)
from onboarding_tracker.utils.result import Result


class TestSessionMonitoringService:
    """Test cases for SessionMonitoringService."""

    @pytest.fixture
    def settings(self):
        return MonitoringSettings(
            interval_minutes=60,
            high_abandonment_rate=70.0,
            elevated_abandonment_rate=50.0,
            active_session_alert_threshold=1000,
            enable_notifications=False,
        )

    @pytest.fixture
    def mock_management_service(self):
        service = Mock(spec=SessionManagementService)
        service.perform_session_cleanup.return_value = Result.ok(
            SessionCleanupResult(expired_sessions_deleted=2, abandoned_sessions_marked=1, errors=[])
        )
        return service

    @pytest.fixture
    def monitor(self, mock_repository, mock_management_service, settings, clock):
        service = SessionMonitoringService(mock_repository, mock_management_service, settings=settings, clock=clock)
        yield service
        if service.is_running:
            service.stop()

    def metrics(self, active=0, completions=0, abandonments=0, errors=None):
        return SessionHealthMetrics(
            active_sessions=active,
            recent_completions=completions,
            recent_abandonments=abandonments,
            average_completion_time=0.0,
            errors=errors or [],
        )

    # run_monitoring_cycle

    def test_monitoring_cycle(self, monitor, mock_repository, now):
        mock_repository.get_active_session_count.return_value = 5

        report = monitor.run_monitoring_cycle()

        assert report.timestamp == now
        assert report.active_sessions == 5
        assert report.expired_sessions_deleted == 2
        assert report.abandoned_sessions_marked == 1
        assert report.next_run_at == now + timedelta(minutes=60)
        assert report.errors == []
        assert monitor.last_report is report

    def test_monitoring_cycle_collects_errors(self, monitor, mock_repository, mock_management_service):
        mock_repository.get_active_session_count.side_effect = RepositoryError("count failed")
        mock_management_service.perform_session_cleanup.return_value = Result.ok(
            SessionCleanupResult(expired_sessions_deleted=0, abandoned_sessions_marked=0, errors=["x failed"])
        )

        report = monitor.run_monitoring_cycle()

        assert report.active_sessions == 0
        assert report.errors == ["Failed to get active session count: count failed", "x failed"]

    def test_monitoring_cycle_with_failed_cleanup(self, monitor, mock_repository, mock_management_service):
        mock_repository.get_active_session_count.return_value = 1
        mock_management_service.perform_session_cleanup.return_value = Result.fail("Unexpected error cleaning up")

        report = monitor.run_monitoring_cycle()

        assert report.errors == ["Cleanup failed: Unexpected error cleaning up"]

    def test_monitoring_cycle_sends_notifications_when_enabled(
        self, mock_repository, mock_management_service, settings, clock
    ):
        settings.enable_notifications = True
        mock_repository.get_active_session_count.return_value = 0
        service = SessionMonitoringService(mock_repository, mock_management_service, settings=settings, clock=clock)
        service.send_notifications = Mock(return_value=False)

        report = service.run_monitoring_cycle()

        service.send_notifications.assert_called_once_with(report)

    # get_health_metrics

    def test_health_metrics_with_high_abandonment(self, monitor, mock_repository, now):
        mock_repository.get_active_session_count.return_value = 10
        mock_repository.get_analytics_summary.return_value = OnboardingAnalyticsSummary(
            total_sessions=10, completed_sessions=2, abandoned_sessions=8, average_completion_time=42.0
        )

        metrics = monitor.get_health_metrics()

        assert metrics.active_sessions == 10
        assert metrics.recent_completions == 2
        assert metrics.recent_abandonments == 8
        assert metrics.average_completion_time == 42.0
        assert [alert.type for alert in metrics.alerts] == [AlertType.HIGH_ABANDONMENT]
        assert metrics.alerts[0].severity == ErrorSeverity.HIGH
        assert metrics.alerts[0].data["abandonment_rate"] == 80.0

        filters = mock_repository.get_analytics_summary.call_args[0][0]
        assert filters.start_date == now - timedelta(days=1)
        assert filters.end_date == now

    def test_health_metrics_with_failures(self, monitor, mock_repository):
        mock_repository.get_active_session_count.side_effect = RepositoryError("count failed")
        mock_repository.get_analytics_summary.side_effect = RepositoryError("summary failed")

        metrics = monitor.get_health_metrics()

        assert len(metrics.errors) == 2
        assert [alert.type for alert in metrics.alerts] == [AlertType.SYSTEM_ERROR]
        assert metrics.alerts[0].severity == ErrorSeverity.HIGH

    # generate_alerts

    def test_no_alerts_for_healthy_metrics(self, monitor):
        assert monitor.generate_alerts(self.metrics(active=10, completions=9, abandonments=1)) == []

    def test_no_abandonment_alert_without_sessions(self, monitor):
        assert monitor.generate_alerts(self.metrics()) == []

    def test_elevated_abandonment(self, monitor):
        alerts = monitor.generate_alerts(self.metrics(completions=4, abandonments=6))

        assert len(alerts) == 1
        assert alerts[0].type == AlertType.HIGH_ABANDONMENT
        assert alerts[0].severity == ErrorSeverity.MEDIUM
        assert alerts[0].message == "Elevated abandonment rate: 60.0%"

    def test_many_errors_are_critical(self, monitor):
        alerts = monitor.generate_alerts(self.metrics(errors=["a", "b", "c", "d"]))

        assert alerts[0].type == AlertType.SYSTEM_ERROR
        assert alerts[0].severity == ErrorSeverity.CRITICAL
        assert alerts[0].data["error_count"] == 4

    @pytest.mark.parametrize(
        "active, severity",
        [(1000, None), (1500, ErrorSeverity.MEDIUM), (2000, ErrorSeverity.MEDIUM), (2001, ErrorSeverity.HIGH)],
    )
    def test_active_session_alert(self, monitor, active, severity):
        alerts = monitor.generate_alerts(self.metrics(active=active))

        if severity is None:
            assert alerts == []
        else:
            assert alerts[0].type == AlertType.CLEANUP_REQUIRED
            assert alerts[0].severity == severity

    # notifications

    @pytest.mark.parametrize(
        "expired, abandoned, errors, expected",
        [
            (0, 0, [], False),
            (10, 20, [], False),
            (11, 0, [], True),
            (0, 21, [], True),
            (0, 0, ["boom"], True),
        ],
    )
    def test_should_notify(self, monitor, now, expired, abandoned, errors, expected):
        report = MonitoringReport(
            timestamp=now,
            active_sessions=0,
            expired_sessions_deleted=expired,
            abandoned_sessions_marked=abandoned,
            next_run_at=now,
            errors=errors,
        )

        assert SessionMonitoringService.should_notify(report) is expected
        assert monitor.send_notifications(report) is expected

    # background thread

    @pytest.mark.slow
    def test_start_and_stop(self, monitor, mock_repository, mock_management_service):
        mock_repository.get_active_session_count.return_value = 0
        cycle_ran = threading.Event()
        cleanup_result = mock_management_service.perform_session_cleanup.return_value

        def cleanup():
            cycle_ran.set()
            return cleanup_result

        mock_management_service.perform_session_cleanup.side_effect = cleanup

        monitor.start()
        assert monitor.is_running
        assert cycle_ran.wait(timeout=5)
        assert monitor.wait(timeout=0.01) is False
        assert monitor.get_status()["is_running"] is True

        monitor.stop()

        assert not monitor.is_running
        assert monitor.get_status() == {
            "is_running": False,
            "interval_minutes": 60,
            "notifications_enabled": False,
            "next_run_at": None,
        }

    def test_start_twice_keeps_single_thread(self, monitor, mock_repository):
        mock_repository.get_active_session_count.return_value = 0
        monitor.start()
        thread = monitor._thread

        monitor.start()

        assert monitor._thread is thread
        monitor.stop()

    def test_stop_when_not_running(self, monitor):
        monitor.stop()
        assert not monitor.is_running
