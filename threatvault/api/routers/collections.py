"""Collections API Router.

Read access to stored collection revisions, so clients can re-inspect the
``workspace.import_categories`` recorded by an import.
"""

import logging
from enum import Enum
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from threatvault.core.types import ObjectType
from threatvault.store.base import ObjectStore

from ..dependencies import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/collections", tags=["Collections"])


class VersionSelection(str, Enum):
    LATEST = "latest"
    ALL = "all"


def _not_found(stix_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Collection not found: {stix_id}")


@router.get("/{stix_id}")
async def get_collection(
    stix_id: str,
    versions: VersionSelection = Query(default=VersionSelection.LATEST),
    store: ObjectStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    """Get the latest revision, or all revisions, of a collection."""
    revisions = await store.retrieve_versions(stix_id)
    revisions = [r for r in revisions if r.object_type == ObjectType.COLLECTION]
    if not revisions:
        raise _not_found(stix_id)
    if versions == VersionSelection.LATEST:
        revisions = revisions[:1]
    return [r.to_dict() for r in revisions]


@router.get("/{stix_id}/modified/{modified}")
async def get_collection_version(
    stix_id: str,
    modified: str,
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    """Get one collection revision."""
    revision = await store.retrieve_version(stix_id, modified)
    if revision is None or revision.object_type != ObjectType.COLLECTION:
        raise _not_found(stix_id)
    return revision.to_dict()
