"""Configuration management for ThreatVault."""

from .loader import (
    APIConfig,
    AttackConfig,
    ConfigurationLoader,
    DatabaseConfig,
    ImportConfig,
    LoggingConfig,
    ThreatVaultConfig,
    load_config,
    setup_logging,
)

__all__ = [
    "APIConfig",
    "AttackConfig",
    "ConfigurationLoader",
    "DatabaseConfig",
    "ImportConfig",
    "LoggingConfig",
    "ThreatVaultConfig",
    "load_config",
    "setup_logging",
]
