"""Versioned object store backends."""

from threatvault.config.loader import DatabaseConfig
from threatvault.core.exceptions import ConfigurationError

from .base import ObjectStore
from .memory import InMemoryObjectStore
from .postgres import PostgresObjectStore


def create_store(config: DatabaseConfig) -> ObjectStore:
    """Build the configured (unopened) store backend."""
    if config.backend == "memory":
        return InMemoryObjectStore()
    if config.backend == "postgres":
        return PostgresObjectStore(
            config.url,
            min_connections=config.min_connections,
            max_connections=config.max_connections,
        )
    raise ConfigurationError(f"Unknown store backend: {config.backend}")


__all__ = ["ObjectStore", "InMemoryObjectStore", "PostgresObjectStore", "create_store"]
