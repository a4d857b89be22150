"""
Configuration package for the onboarding session tracker.
Provides centralized configuration management with environment overrides
and feature flags.
"""

from .config import (
    Config,
    DatabaseConfig,
    FeatureFlags,
    MonitoringSettings,
    SessionConfig,
    config,
    initialize_config,
)

__all__ = [
    "config",
    "initialize_config",
    "Config",
    "DatabaseConfig",
    "SessionConfig",
    "MonitoringSettings",
    "FeatureFlags",
]
