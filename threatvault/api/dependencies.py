"""FastAPI dependencies resolving the components built at startup."""

from fastapi import HTTPException, Request, status

from threatvault.bundles import BundleExporter, ImportCoordinator, ImportProgressStreamer, StixBundleExporter
from threatvault.store.base import ObjectStore


def _component(request: Request, name: str, label: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized"
        )
    return component


def get_store(request: Request) -> ObjectStore:
    """Get the object store instance."""
    return _component(request, "store", "Object store")


def get_import_coordinator(request: Request) -> ImportCoordinator:
    return _component(request, "coordinator", "Import coordinator")


def get_progress_streamer(request: Request) -> ImportProgressStreamer:
    return _component(request, "streamer", "Progress streamer")


def get_bundle_exporter(request: Request) -> BundleExporter:
    return _component(request, "exporter", "Bundle exporter")


def get_stix_bundle_exporter(request: Request) -> StixBundleExporter:
    return _component(request, "stix_exporter", "STIX bundle exporter")
