"""STIX Bundles API Router: domain-wide export."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from threatvault.bundles import StixBundleExporter
from threatvault.core.types import WorkflowState

from ..dependencies import get_stix_bundle_exporter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stix-bundles", tags=["STIX Bundles"])


@router.get("")
async def export_stix_bundle(
    domain: str = Query(..., description="ATT&CK domain, e.g. enterprise-attack"),
    includeDeprecated: bool = Query(default=False),
    includeRevoked: bool = Query(default=False),
    includeNotes: bool = Query(default=False),
    state: Optional[WorkflowState] = Query(default=None, description="Only objects in this workflow state"),
    exporter: StixBundleExporter = Depends(get_stix_bundle_exporter),
):
    """Export the latest content of one domain as a STIX bundle."""
    return await exporter.export_domain(
        domain,
        include_deprecated=includeDeprecated,
        include_revoked=includeRevoked,
        include_notes=includeNotes,
        state=state.value if state else None,
    )
