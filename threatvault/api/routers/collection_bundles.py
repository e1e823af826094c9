"""Collection Bundles API Router.

Import of collection bundles (optionally streamed as server-sent events)
and export of a collection revision as a bundle.
"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from threatvault.bundles import BundleExporter, ImportCoordinator, ImportProgressStreamer, ProgressEvent, to_sse
from threatvault.bundles.streaming import EVENT_ERROR
from threatvault.core.exceptions import StoreError
from threatvault.core.models import ImportOptions
from threatvault.core.types import ForceImport

from ..dependencies import get_bundle_exporter, get_import_coordinator, get_progress_streamer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/collection-bundles", tags=["Collection Bundles"])


async def _read_bundle(request: Request):
    body = await request.body()
    if not body.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body is empty")
    try:
        return json.loads(body)
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid JSON: {e}")


def _import_options(check_only: bool, preview_only: bool, force_import: Optional[List[str]]) -> ImportOptions:
    try:
        force = ForceImport.parse(force_import)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ImportOptions(check_only=check_only, preview_only=preview_only, force_import=force)


# =============================================================================
# Import
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def import_collection_bundle(
    request: Request,
    checkOnly: bool = Query(default=False, description="Classify without writing"),
    previewOnly: bool = Query(default=False, description="Classify without writing"),
    forceImport: Optional[List[str]] = Query(
        default=None,
        description="Overrides: duplicate-collection, attack-spec-version-violations, all",
    ),
    stream: bool = Query(default=False, description="Stream progress as server-sent events"),
    coordinator: ImportCoordinator = Depends(get_import_coordinator),
    streamer: ImportProgressStreamer = Depends(get_progress_streamer),
):
    """Import a collection bundle."""
    if stream:
        # The streaming transport reports every failure inside the stream
        try:
            options = _import_options(checkOnly, previewOnly, forceImport)
            bundle, read_error = await _read_bundle(request), None
        except HTTPException as e:
            options, bundle, read_error = None, None, e

        async def event_generator():
            if read_error is not None:
                yield to_sse(ProgressEvent(
                    EVENT_ERROR, {"status_code": read_error.status_code, "error": read_error.detail}
                ))
                return
            async for event in streamer.stream(bundle, options):
                yield to_sse(event)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    options = _import_options(checkOnly, previewOnly, forceImport)
    bundle = await _read_bundle(request)
    try:
        result = await coordinator.import_bundle(bundle, options)
    except StoreError as e:
        logger.error(f"Failed to import collection bundle: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to import collection bundle: {e.message}"
        )

    return JSONResponse(status_code=status.HTTP_201_CREATED, content=result.to_dict())


# =============================================================================
# Export
# =============================================================================

@router.get("")
async def export_collection_bundle(
    collectionId: Optional[str] = Query(default=None, description="STIX id of the collection"),
    collectionModified: Optional[str] = Query(default=None, description="Collection revision; latest if omitted"),
    previewOnly: bool = Query(default=False, description="Do not record the export on the collection"),
    includeNotes: bool = Query(default=False, description="Include notes about exported objects"),
    exporter: BundleExporter = Depends(get_bundle_exporter),
):
    """Export a collection revision as a bundle."""
    if not collectionId:
        detail = (
            "collectionModified requires collectionId"
            if collectionModified else "collectionId is required"
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    try:
        return await exporter.export_collection(
            collectionId,
            collectionModified,
            include_notes=includeNotes,
            preview_only=previewOnly,
        )
    except StoreError as e:
        logger.error(f"Failed to export collection {collectionId}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to export collection bundle"
        )
