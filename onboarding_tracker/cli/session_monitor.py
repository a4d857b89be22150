#!/usr/bin/env python3
"""
CLI entrypoint for onboarding session maintenance.
Wires configuration, database and services, and exposes cleanup,
abandonment tracking, health reporting and a long-running monitor.
"""

import json
import signal
import sys
from dataclasses import dataclass

import click

from config.config import Config, config
from onboarding_tracker.data.database_factory import DatabaseFactory
from onboarding_tracker.data.repositories import SQLAlchemyOnboardingRepository
from onboarding_tracker.services.session_management_service import SessionManagementService
from onboarding_tracker.services.session_monitoring_service import SessionMonitoringService
from onboarding_tracker.utils.jsonify import to_jsonable
from onboarding_tracker.utils.logging import get_logger

logger = get_logger(__name__)


class GracefulShutdown:
    """Stop the monitor on SIGINT/SIGTERM."""

    def __init__(self, monitor: SessionMonitoringService):
        self.monitor = monitor
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown")
        self.monitor.stop()


@dataclass
class Services:
    """Objects built once per CLI invocation."""

    database: DatabaseFactory
    repository: SQLAlchemyOnboardingRepository
    session_management: SessionManagementService
    monitoring: SessionMonitoringService


def build_services(app_config: Config) -> Services:
    database = DatabaseFactory(app_config.database)
    repository = SQLAlchemyOnboardingRepository(database)
    session_management = SessionManagementService(
        repository, session_config=app_config.session, feature_flags=app_config.feature_flags
    )
    monitoring = SessionMonitoringService(repository, session_management, settings=app_config.monitoring)
    return Services(database, repository, session_management, monitoring)


def _echo_json(data) -> None:
    click.echo(json.dumps(to_jsonable(data), indent=2, default=str))


@click.group()
@click.option("--database-url", default=None, help="Override the configured database DSN")
@click.pass_context
def cli(ctx: click.Context, database_url: str | None):
    """Onboarding session maintenance commands."""
    if database_url:
        config.database.dsn = database_url
    ctx.obj = build_services(config)
    ctx.call_on_close(ctx.obj.database.close)


@cli.command("init-db")
@click.pass_obj
def init_db(services: Services):
    """Create the onboarding_sessions table."""
    services.database.create_all_tables()
    click.echo("Database tables created")


@cli.command()
@click.pass_obj
def cleanup(services: Services):
    """Delete expired sessions and mark inactive ones abandoned."""
    result = services.session_management.perform_session_cleanup()
    if not result.success:
        raise click.ClickException(result.error)
    report = result.value
    _echo_json({
        "expired_sessions_deleted": report.expired_sessions_deleted,
        "abandoned_sessions_marked": report.abandoned_sessions_marked,
        "errors": report.errors,
    })
    if report.errors:
        sys.exit(1)


@cli.command("track-abandoned")
@click.option("--threshold", default=None, type=int, help="Minutes of inactivity before a session counts as abandoned")
@click.pass_obj
def track_abandoned(services: Services, threshold: int | None):
    """Mark in-progress sessions inactive for too long as abandoned."""
    result = services.session_management.track_abandoned_sessions(threshold)
    if not result.success:
        raise click.ClickException(result.error)
    _echo_json({
        "total_abandoned": result.value.total_abandoned,
        "sessions_marked_abandoned": [s.id for s in result.value.sessions_marked_abandoned],
        "errors": result.value.errors,
    })


@cli.command()
@click.pass_obj
def health(services: Services):
    """Print session health metrics and alerts."""
    metrics = services.monitoring.get_health_metrics()
    _echo_json({
        "database_healthy": services.database.health_check(),
        "active_sessions": metrics.active_sessions,
        "recent_completions": metrics.recent_completions,
        "recent_abandonments": metrics.recent_abandonments,
        "average_completion_time": metrics.average_completion_time,
        "alerts": [
            {"type": a.type, "severity": a.severity, "message": a.message, "data": a.data}
            for a in metrics.alerts
        ],
    })


@cli.command()
@click.option("--interval", default=None, type=int, help="Minutes between monitoring cycles")
@click.pass_obj
def monitor(services: Services, interval: int | None):
    """Run the session monitor until interrupted."""
    monitoring = services.monitoring
    if interval is not None:
        monitoring.settings.interval_minutes = interval
    logger.info(f"Starting session monitor (interval={monitoring.settings.interval_minutes} minutes)")

    GracefulShutdown(monitoring)
    monitoring.start()
    try:
        monitoring.wait()
    except KeyboardInterrupt:
        logger.info("Monitor interrupted by user")
        monitoring.stop()
    logger.info("Monitor shutdown complete")


def main():
    cli()


if __name__ == "__main__":
    main()
