"""FastAPI application for ThreatVault API.

This module provides the FastAPI application with the collection bundle
import/export endpoints, collection inspection, domain-wide STIX export,
health checks and Prometheus metrics.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from threatvault import __version__
from threatvault.bundles import (
    BundleExporter,
    BundleValidator,
    ImportCoordinator,
    ImportProgressStreamer,
    StixBundleExporter,
)
from threatvault.config.loader import ThreatVaultConfig, load_config
from threatvault.core.exceptions import (
    BundleRejectedError,
    CollectionNotFoundError,
    MissingParameterError,
    ThreatVaultError,
)
from threatvault.metrics import render_metrics
from threatvault.store import create_store
from threatvault.store.base import ObjectStore

from .routers import collection_bundles_router, collections_router, stix_bundles_router

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Response model for health checks."""
    status: str
    timestamp: datetime
    version: str
    components: Dict[str, str]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _build_components(app: FastAPI, config: ThreatVaultConfig, store: ObjectStore) -> None:
    validator = BundleValidator(
        system_spec_version=config.attack.spec_version,
        default_object_spec_version=config.attack.default_object_spec_version,
    )
    coordinator = ImportCoordinator(store, validator=validator)
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.streamer = ImportProgressStreamer(coordinator, progress_every=config.imports.progress_every)
    app.state.exporter = BundleExporter(store, ics_data_sources=config.attack.ics_data_sources)
    app.state.stix_exporter = StixBundleExporter(store)


def create_app(config: Optional[ThreatVaultConfig] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    """Create the ThreatVault API application.

    Args:
        config: Loaded configuration; read from config.yaml and the environment if omitted
        store: Object store to serve; built from ``config.database`` if omitted
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting ThreatVault API...")
        object_store = store or create_store(config.database)
        try:
            await object_store.open()
        except Exception as e:
            logger.error(f"Failed to open object store: {str(e)}")
            raise
        _build_components(app, config, object_store)
        logger.info("ThreatVault API started successfully")

        yield

        logger.info("Shutting down ThreatVault API...")
        await object_store.close()

    app = FastAPI(
        title="ThreatVault API",
        version=__version__,
        description="Versioned ATT&CK/STIX object vault with collection bundle import and export",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(collection_bundles_router, prefix="/api")
    app.include_router(collections_router, prefix="/api")
    app.include_router(stix_bundles_router, prefix="/api")

    @app.get("/", response_model=Dict[str, str])
    async def read_root():
        """Root endpoint."""
        return {
            "message": "ThreatVault API",
            "version": __version__,
            "status": "operational"
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        object_store = getattr(request.app.state, "store", None)
        components = {
            "api": "healthy",
            "store": "healthy" if object_store is not None and object_store.is_open else "unavailable",
        }
        overall_status = "healthy" if all(
            value == "healthy" for value in components.values()
        ) else "degraded"

        return HealthResponse(
            status=overall_status,
            timestamp=datetime.now(timezone.utc),
            version=__version__,
            components=components
        )

    @app.get("/metrics")
    async def metrics():
        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)

    _register_exception_handlers(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(BundleRejectedError)
    async def bundle_rejected_handler(request, exc: BundleRejectedError):
        """Rejected import: 400 with bundle and object error details."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                **exc.to_dict(),
                "status_code": status.HTTP_400_BAD_REQUEST,
                "timestamp": _timestamp(),
            }
        )

    @app.exception_handler(CollectionNotFoundError)
    async def not_found_handler(request, exc: CollectionNotFoundError):
        return _error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(MissingParameterError)
    async def missing_parameter_handler(request, exc: MissingParameterError):
        return _error_response(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(ThreatVaultError)
    async def threatvault_error_handler(request, exc: ThreatVaultError):
        logger.error(f"Unhandled ThreatVault error: {exc.message}")
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Custom HTTP exception handler."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code,
                "timestamp": _timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """General exception handler."""
        logger.error(f"Unhandled exception: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "status_code": 500,
                "timestamp": _timestamp()
            }
        )


def _error_response(status_code: int, exc: ThreatVaultError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "error_code": exc.error_code,
            "status_code": status_code,
            "timestamp": _timestamp(),
        }
    )


if __name__ == "__main__":
    import uvicorn

    app_config = load_config()
    uvicorn.run(create_app(app_config), host=app_config.api.host, port=app_config.api.port)
