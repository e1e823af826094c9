"""REST API for ThreatVault."""

from .main import create_app

__all__ = ["create_app"]
