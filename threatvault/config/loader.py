"""Configuration loader for ThreatVault."""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from threatvault.core.exceptions import ConfigurationError
from threatvault.core.stix import parse_spec_version

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Object store configuration."""
    backend: str = "memory"
    url: Optional[str] = None
    min_connections: int = 2
    max_connections: int = 10

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        backend = v.lower()
        if backend not in ("memory", "postgres"):
            raise ValueError(f"backend must be 'memory' or 'postgres', got {v!r}")
        return backend


class AttackConfig(BaseModel):
    """ATT&CK specification versions and domain vocabulary."""
    spec_version: str = "3.3.0"
    default_object_spec_version: str = "2.0.0"
    # Allowed x_mitre_data_sources values for ICS techniques; None keeps them as stored
    ics_data_sources: Optional[List[str]] = None

    @field_validator("spec_version", "default_object_spec_version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if parse_spec_version(v) is None:
            raise ValueError(f"not a valid version: {v!r}")
        return v


class ImportConfig(BaseModel):
    """Collection bundle import behaviour."""
    progress_every: int = Field(default=1, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = "logs/threatvault.log"
    max_file_size_mb: int = 50
    backup_count: int = 5
    enable_console_logging: bool = True


class APIConfig(BaseModel):
    """API server configuration."""
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class ThreatVaultConfig(BaseModel):
    """Main ThreatVault configuration."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    attack: AttackConfig = Field(default_factory=AttackConfig)
    imports: ImportConfig = Field(default_factory=ImportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: APIConfig = Field(default_factory=APIConfig)


class ConfigurationLoader:
    """Loads the configuration once and caches it."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = Path(config_path).expanduser() if config_path else Path("config.yaml")
        self._config = None

    def load_config(self) -> ThreatVaultConfig:
        """Load configuration from file and environment."""
        if self._config is None:
            self._config = load_config(self.config_path)
        return self._config

    def __repr__(self) -> str:
        return f"ConfigurationLoader(config_path={self.config_path})"


def load_config(config_path: Optional[Union[str, Path]] = None) -> ThreatVaultConfig:
    """Load ThreatVault configuration from file and environment variables.

    Args:
        config_path: Path to configuration file. Defaults to config.yaml in current directory.

    Returns:
        ThreatVaultConfig instance with loaded configuration

    Raises:
        ConfigurationError: If the file cannot be parsed or the configuration is invalid
    """
    config_path = Path(config_path).expanduser() if config_path else Path("config.yaml")

    config_data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse config file: {e}", config_path=str(config_path))
    else:
        logger.info(f"Config file {config_path} not found, using defaults")

    if not isinstance(config_data, dict):
        raise ConfigurationError("Configuration root must be a mapping", config_path=str(config_path))

    config_data = _apply_environment_overrides(config_data)

    try:
        config = ThreatVaultConfig.model_validate(config_data)
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ConfigurationError(f"Invalid configuration: {e}", config_path=str(config_path))
    logger.info("Configuration validated successfully")
    return config


def _apply_environment_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration.

    Args:
        config_data: Base configuration data from file

    Returns:
        Configuration data with environment overrides applied
    """
    overrides = {
        "DATABASE_URL": ("database", "url"),
        "THREATVAULT_STORE": ("database", "backend"),
        "ATTACK_SPEC_VERSION": ("attack", "spec_version"),
        "LOG_LEVEL": ("logging", "level"),
        "PORT": ("api", "port"),
    }
    for env_var, (section, key) in overrides.items():
        value = os.getenv(env_var)
        if value:
            config_data.setdefault(section, {})[key] = value

    # A database URL without an explicit backend selects postgres
    if os.getenv("DATABASE_URL") and not os.getenv("THREATVAULT_STORE"):
        config_data["database"].setdefault("backend", "postgres")

    if os.getenv('DEBUG'):
        config_data.setdefault('api', {})['debug'] = os.getenv('DEBUG').lower() in ('true', '1', 'yes')

    return config_data


def setup_logging(config: ThreatVaultConfig) -> None:
    """Set up logging based on configuration.

    Args:
        config: ThreatVault configuration instance
    """
    formatter = logging.Formatter(config.logging.format)
    handlers: List[logging.Handler] = []

    if config.logging.file_path:
        log_file = Path(config.logging.file_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=config.logging.max_file_size_mb * 1024 * 1024,
            backupCount=config.logging.backup_count
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if config.logging.enable_console_logging:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.logging.level.upper(), logging.INFO))
    root_logger.handlers = handlers

    logger.info("Logging configured successfully")
