"""Abstract versioned object store.

Objects are appended as revisions keyed by ``(stix.id, modified)``. The store
never rewrites STIX content; only the workspace of a revision is mutable.
It performs no referential-integrity checks.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from threatvault.core.exceptions import StoreNotOpenError
from threatvault.core.models import VersionedObject, Workspace
from threatvault.core.stix import VersionKey, make_key
from threatvault.core.types import WorkflowState

logger = logging.getLogger(__name__)

TypeFilter = Union[str, Iterable[str], None]


def normalize_types(object_type: TypeFilter) -> Optional[frozenset]:
    if object_type is None:
        return None
    if isinstance(object_type, str):
        return frozenset({object_type})
    return frozenset(getattr(t, "value", t) for t in object_type)


def matches_filters(
    obj: VersionedObject,
    *,
    include_revoked: bool = True,
    include_deprecated: bool = True,
    domain: Optional[str] = None,
    state: Optional[Union[str, WorkflowState]] = None,
    query: Optional[Dict[str, Any]] = None,
) -> bool:
    """Apply the attribute filters shared by every backend's ``find``."""
    if not include_revoked and obj.is_revoked:
        return False
    if not include_deprecated and obj.is_deprecated:
        return False
    if domain is not None and domain not in (obj.stix.get("x_mitre_domains") or []):
        return False
    if state is not None:
        wanted = WorkflowState(state)
        if obj.workspace.workflow.state != wanted:
            return False
    for key, value in (query or {}).items():
        if obj.stix.get(key) != value:
            return False
    return True


class ObjectStore(ABC):
    """Append-only store of STIX object revisions.

    Lifecycle is explicit: call ``open()`` before use and ``close()`` when
    done, or use the store as an async context manager.
    """

    def __init__(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def __aenter__(self) -> "ObjectStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise StoreNotOpenError(type(self).__name__)

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert(self, obj: VersionedObject) -> None:
        """Append one revision.

        Raises:
            DuplicateVersionError: If the (id, modified) pair already exists
        """
        await self.insert_many([obj])

    @abstractmethod
    async def insert_many(
        self,
        objects: Sequence[VersionedObject],
        references: Sequence[Dict[str, Any]] = (),
    ) -> None:
        """Append a batch of revisions atomically: all are written or none.

        ``references`` are citation references saved in the same batch,
        replacing any stored reference with the same ``source_name``.

        Raises:
            DuplicateVersionError: If any (id, modified) pair already exists
                or appears twice in the batch
            StoreError: If the write fails
        """

    @abstractmethod
    async def update_workspace(self, stix_id: str, modified: str, workspace: Workspace) -> bool:
        """Replace the workspace of one revision. Returns False if it does not exist."""

    # =========================================================================
    # Reads
    # =========================================================================

    @abstractmethod
    async def retrieve_versions(self, stix_id: str) -> List[VersionedObject]:
        """All revisions of an object, newest first."""

    @abstractmethod
    async def retrieve_version(self, stix_id: str, modified: str) -> Optional[VersionedObject]:
        """The revision with exactly this ``modified`` instant, if stored."""

    @abstractmethod
    async def retrieve_references(self, source_names: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Stored citation references with the given source names, keyed by source name."""

    async def retrieve_by_attack_id(self, attack_id: str) -> Optional[VersionedObject]:
        """Latest revision of the object whose workspace carries ``attack_id``."""
        for obj in await self.find():
            if obj.attack_id == attack_id:
                return obj
        return None

    async def retrieve_latest(self, stix_id: str) -> Optional[VersionedObject]:
        versions = await self.retrieve_versions(stix_id)
        return versions[0] if versions else None

    async def retrieve_versions_bulk(
        self, pairs: Iterable[Sequence[str]]
    ) -> Dict[VersionKey, VersionedObject]:
        """Look up many exact revisions; returns only those found, keyed by version key."""
        found: Dict[VersionKey, VersionedObject] = {}
        for stix_id, modified in pairs:
            key = make_key(stix_id, modified)
            if key is None or key in found:
                continue
            obj = await self.retrieve_version(stix_id, modified)
            if obj is not None:
                found[key] = obj
        return found

    @abstractmethod
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
        """Attribute query over stored revisions.

        With ``latest_only`` the revoked/deprecated/domain/state filters are
        applied to the latest revision of each id, never to older ones.
        """
