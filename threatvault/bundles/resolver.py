"""Resolve a collection's pinned contents to stored object revisions."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from threatvault.core.exceptions import CollectionNotFoundError, MissingParameterError
from threatvault.core.models import ContentsEntry, VersionedObject
from threatvault.core.stix import make_key, string_refs
from threatvault.core.types import ObjectType
from threatvault.store.base import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedContentSet:
    """The exact revisions a collection revision pins, in contents order.

    ``missing`` lists contents entries whose revision is not stored; they are
    dropped from ``objects`` rather than treated as errors.
    """
    collection: VersionedObject
    objects: List[VersionedObject] = field(default_factory=list)
    missing: List[ContentsEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.objects)


class CollectionContentResolver:
    """Looks up the revisions listed in a collection's ``x_mitre_contents``."""

    def __init__(self, store: ObjectStore):
        self.store = store

    async def retrieve_collection(
        self, collection_id: Optional[str], collection_modified: Optional[str] = None
    ) -> VersionedObject:
        """Return the requested collection revision, or the latest one.

        Raises:
            MissingParameterError: If no collection id was given
            CollectionNotFoundError: If the collection or revision is unknown
        """
        if not collection_id:
            raise MissingParameterError("collectionId is required", parameter="collectionId")

        if collection_modified:
            collection = await self.store.retrieve_version(collection_id, collection_modified)
        else:
            collection = await self.store.retrieve_latest(collection_id)

        if collection is None or collection.object_type != ObjectType.COLLECTION:
            raise CollectionNotFoundError(collection_id, collection_modified)
        return collection

    async def resolve(
        self,
        collection_id: Optional[str],
        collection_modified: Optional[str] = None,
        include_notes: bool = False,
    ) -> ResolvedContentSet:
        collection = await self.retrieve_collection(collection_id, collection_modified)
        resolved = ResolvedContentSet(collection=collection)

        entries = collection.contents
        found = await self.store.retrieve_versions_bulk(
            (entry.object_ref, entry.object_modified) for entry in entries
        )

        seen = set()
        for entry in entries:
            key = make_key(entry.object_ref, entry.object_modified)
            obj = found.get(key) if key is not None else None
            if obj is None:
                resolved.missing.append(entry)
                continue
            if key in seen:
                continue
            seen.add(key)
            if obj.object_type == ObjectType.NOTE and not include_notes:
                continue
            resolved.objects.append(obj)

        if resolved.missing:
            logger.debug(
                f"Collection {collection.stix_id} ({collection.modified}): "
                f"{len(resolved.missing)} contents entries not found"
            )

        if include_notes:
            await self._add_notes(resolved)
        return resolved

    async def _add_notes(self, resolved: ResolvedContentSet) -> None:
        """Add the latest active notes that annotate objects in the set."""
        ids = {obj.stix_id for obj in resolved.objects}
        notes = await self.store.find(
            ObjectType.NOTE.value,
            include_revoked=False,
            include_deprecated=False,
        )
        for note in notes:
            if note.stix_id in ids:
                continue
            if ids.intersection(string_refs(note.stix.get("object_refs"))):
                resolved.objects.append(note)
                ids.add(note.stix_id)
