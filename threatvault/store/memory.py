"""In-memory object store, used for tests, dry runs and single-process setups."""

import asyncio
import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from threatvault.core.exceptions import DuplicateVersionError, StoreError
from threatvault.core.models import VersionedObject, Workspace
from threatvault.core.stix import VersionKey, make_key
from threatvault.core.types import WorkflowState

from .base import ObjectStore, TypeFilter, matches_filters, normalize_types

logger = logging.getLogger(__name__)


class InMemoryObjectStore(ObjectStore):
    """Dictionary-backed store.

    Revisions are copied on the way in and out so callers can never mutate
    stored state by accident.
    """

    def __init__(self):
        super().__init__()
        self._objects: Dict[str, Dict[VersionKey, VersionedObject]] = {}
        self._references: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._objects.values())

    async def insert_many(
        self,
        objects: Sequence[VersionedObject],
        references: Sequence[Dict[str, Any]] = (),
    ) -> None:
        self._require_open()
        if not objects and not references:
            return

        async with self._lock:
            batch_keys = set()
            for obj in objects:
                key = obj.key
                if key is None:
                    raise StoreError(f"Object {obj.stix.get('id')} has no id or version timestamp")
                if key in batch_keys or key in self._objects.get(obj.stix_id, {}):
                    raise DuplicateVersionError(obj.stix_id, obj.modified)
                batch_keys.add(key)

            for obj in objects:
                self._objects.setdefault(obj.stix_id, {})[obj.key] = obj.copy()
            for reference in references:
                self._references[reference["source_name"]] = copy.deepcopy(reference)

        logger.debug(f"Inserted {len(objects)} revisions and {len(references)} references")

    async def update_workspace(self, stix_id: str, modified: str, workspace: Workspace) -> bool:
        self._require_open()
        key = make_key(stix_id, modified)
        async with self._lock:
            stored = self._objects.get(stix_id, {}).get(key)
            if stored is None:
                return False
            stored.workspace = Workspace.from_dict(workspace.to_dict())
        return True

    async def retrieve_versions(self, stix_id: str) -> List[VersionedObject]:
        self._require_open()
        versions = self._objects.get(stix_id, {})
        ordered = sorted(versions.values(), key=lambda obj: obj.modified_at, reverse=True)
        return [obj.copy() for obj in ordered]

    async def retrieve_version(self, stix_id: str, modified: str) -> Optional[VersionedObject]:
        self._require_open()
        stored = self._objects.get(stix_id, {}).get(make_key(stix_id, modified))
        return stored.copy() if stored else None

    async def retrieve_references(self, source_names: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        self._require_open()
        return {
            name: copy.deepcopy(self._references[name])
            for name in source_names
            if name in self._references
        }

    async def find(
        self,
        object_type: TypeFilter = None,
        *,
        latest_only: bool = True,
        include_revoked: bool = True,
        include_deprecated: bool = True,
        domain: Optional[str] = None,
        state: Optional[Union[str, WorkflowState]] = None,
        query: Optional[Dict[str, Any]] = None,
    ) -> List[VersionedObject]:
        self._require_open()
        types = normalize_types(object_type)

        candidates: List[VersionedObject] = []
        for versions in self._objects.values():
            ordered = sorted(versions.values(), key=lambda obj: obj.modified_at, reverse=True)
            if types is not None and ordered[0].stix_type not in types:
                continue
            candidates.extend(ordered[:1] if latest_only else ordered)

        return [
            obj.copy()
            for obj in candidates
            if matches_filters(
                obj,
                include_revoked=include_revoked,
                include_deprecated=include_deprecated,
                domain=domain,
                state=state,
                query=query,
            )
        ]
