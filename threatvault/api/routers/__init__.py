"""API Routers for ThreatVault."""

from .collection_bundles import router as collection_bundles_router
from .collections import router as collections_router
from .stix_bundles import router as stix_bundles_router

__all__ = ["collection_bundles_router", "collections_router", "stix_bundles_router"]
