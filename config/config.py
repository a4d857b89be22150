"""
Configuration management system for the onboarding session tracker.
Provides centralized configuration with environment variable overrides and feature flags.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so all os.getenv calls see variables
load_dotenv()


@dataclass
class DatabaseConfig:
    """Database configuration settings."""

    dsn: str = "sqlite:///./onboarding_sessions.db"
    pool_size: int = 10
    max_overflow: int = 20
    echo: bool = False

    def __post_init__(self):
        # Prefer explicit DSN from env; support both ONBOARDING_DATABASE_URL and DATABASE_URL
        env_dsn = os.getenv("ONBOARDING_DATABASE_URL") or os.getenv("DATABASE_URL")
        if env_dsn:
            self.dsn = env_dsn
        if env_echo := os.getenv("DATABASE_ECHO"):
            self.echo = env_echo.lower() == "true"


@dataclass
class SessionConfig:
    """Lifecycle settings for onboarding sessions."""

    expiry_hours: int = 24
    recovery_extension_hours: int = 24
    near_expiry_minutes: int = 60
    abandonment_threshold_minutes: int = 30
    cleanup_abandonment_threshold_minutes: int = 60

    def __post_init__(self):
        if env_expiry := os.getenv("SESSION_EXPIRY_HOURS"):
            self.expiry_hours = int(env_expiry)
        if env_extension := os.getenv("SESSION_RECOVERY_EXTENSION_HOURS"):
            self.recovery_extension_hours = int(env_extension)
        if env_near := os.getenv("SESSION_NEAR_EXPIRY_MINUTES"):
            self.near_expiry_minutes = int(env_near)
        if env_threshold := os.getenv("SESSION_ABANDONMENT_THRESHOLD_MINUTES"):
            self.abandonment_threshold_minutes = int(env_threshold)
        if env_cleanup := os.getenv("SESSION_CLEANUP_ABANDONMENT_THRESHOLD_MINUTES"):
            self.cleanup_abandonment_threshold_minutes = int(env_cleanup)

    def validate(self) -> list[str]:
        """Validate configuration parameters and return list of errors."""
        errors = []

        if self.expiry_hours < 1:
            errors.append("expiry_hours must be at least 1")
        if self.recovery_extension_hours < 1:
            errors.append("recovery_extension_hours must be at least 1")
        if self.near_expiry_minutes < 0:
            errors.append("near_expiry_minutes cannot be negative")
        if self.abandonment_threshold_minutes < 1:
            errors.append("abandonment_threshold_minutes must be at least 1")
        if self.cleanup_abandonment_threshold_minutes < 1:
            errors.append("cleanup_abandonment_threshold_minutes must be at least 1")

        return errors


class MonitoringSettings(BaseSettings):
    """
    Background monitoring settings.
    Values are read from MONITORING_* environment variables
    (e.g. MONITORING_INTERVAL_MINUTES=15).
    """

    model_config = SettingsConfigDict(env_prefix="MONITORING_", extra="ignore")

    interval_minutes: int = 60
    high_abandonment_rate: float = 70.0
    elevated_abandonment_rate: float = 50.0
    active_session_alert_threshold: int = 1000
    enable_notifications: bool = True


@dataclass
class FeatureFlags:
    """Feature flags for controlling system behavior."""

    enforce_step_order: bool = True
    strict_sync: bool = False
    reuse_in_progress_sessions: bool = True

    def __post_init__(self):
        """Override feature flags from environment variables."""
        for flag_name in self.__dataclass_fields__:
            env_var = f"FEATURE_{flag_name.upper()}"
            if env_value := os.getenv(env_var):
                setattr(self, flag_name, env_value.lower() == "true")


@dataclass
class Config:
    """Main configuration class that aggregates all configuration sections."""

    # Environment
    environment: str = "development"
    debug: bool = True

    # Configuration sections
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    feature_flags: FeatureFlags = field(default_factory=FeatureFlags)

    # Application settings
    app_name: str = "onboarding-session-tracker"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    def __post_init__(self):
        """Override main config from environment variables."""
        if env_environment := os.getenv("ENVIRONMENT"):
            self.environment = env_environment
            self.debug = env_environment == "development"

        if env_log_level := os.getenv("LOG_LEVEL"):
            self.log_level = env_log_level

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def get_feature_flag(self, flag_name: str) -> bool:
        """Get a feature flag value by name."""
        return getattr(self.feature_flags, flag_name, False)

    def validate(self) -> None:
        """Validate configuration settings."""
        if self.is_production and self.database.dsn.startswith("sqlite"):
            raise ValueError("A sqlite DSN is not supported in production")

        session_errors = self.session.validate()
        if session_errors:
            raise ValueError(f"Session configuration errors: {', '.join(session_errors)}")

        if self.monitoring.interval_minutes < 1:
            raise ValueError("Monitoring interval must be at least 1 minute")


def initialize_config() -> Config:
    """Initialize configuration and validate it."""
    base_config = Config()
    base_config.validate()
    return base_config


# Global configuration instance
config = initialize_config()
