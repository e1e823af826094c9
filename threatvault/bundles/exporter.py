"""Assemble output bundles from resolved collection contents."""

import copy
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from threatvault.core.models import ExportRecord, VersionedObject
from threatvault.core.stix import utc_now
from threatvault.metrics import BUNDLE_EXPORTS
from threatvault.store.base import ObjectStore

from .enrichment import AttackObjectLookup, add_derived_data_sources, convert_link_by_id_tags, index_by_attack_id
from .resolver import CollectionContentResolver, ResolvedContentSet

logger = logging.getLogger(__name__)

IDENTITY_REF_PROPERTIES = ("created_by_ref", "x_mitre_modified_by_ref")


def make_bundle(objects: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": "bundle",
        "id": f"bundle--{uuid.uuid4()}",
        "spec_version": "2.1",
        "objects": list(objects),
    }


async def collect_companions(store: ObjectStore, objects: List[VersionedObject]) -> List[VersionedObject]:
    """Latest identities and marking definitions referenced by ``objects``.

    Companions already present in ``objects`` are not repeated, and
    references that cannot be found are skipped.
    """
    present = {obj.stix_id for obj in objects}
    companions: List[VersionedObject] = []

    async def add(refs: Iterable[str]) -> None:
        for ref in refs:
            if ref in present:
                continue
            present.add(ref)
            companion = await store.retrieve_latest(ref)
            if companion is None:
                logger.debug(f"Referenced object {ref} not found; omitted from export")
                continue
            companions.append(companion)

    identity_refs = [
        obj.stix[prop]
        for obj in objects
        for prop in IDENTITY_REF_PROPERTIES
        if obj.stix.get(prop)
    ]
    await add(dict.fromkeys(identity_refs))

    marking_refs = [
        ref
        for obj in list(objects) + companions
        for ref in obj.stix.get("object_marking_refs") or []
    ]
    await add(dict.fromkeys(marking_refs))
    return companions


class BundleExporter:
    """Builds collection bundles: collection first, then contents, then companions.

    Exported objects are copies; techniques get derived data sources and
    LinkById tags become citations without touching the stored revisions.
    """

    def __init__(
        self,
        store: ObjectStore,
        resolver: Optional[CollectionContentResolver] = None,
        ics_data_sources: Optional[Sequence[str]] = None,
    ):
        self.store = store
        self.resolver = resolver or CollectionContentResolver(store)
        self.ics_data_sources = ics_data_sources

    async def export(
        self,
        resolved: ResolvedContentSet,
        collection: Optional[VersionedObject] = None,
        preview_only: bool = False,
    ) -> Dict[str, Any]:
        """Assemble the bundle for a resolved content set.

        Unless ``preview_only`` is set, the export is recorded in the
        collection revision's ``workspace.exported``.
        """
        collection = collection or resolved.collection
        members = [collection] + [obj for obj in resolved.objects if obj.stix_id != collection.stix_id]

        seen = set()
        unique = []
        for obj in members:
            if obj.key not in seen:
                seen.add(obj.key)
                unique.append(obj)

        companions = await collect_companions(self.store, unique)
        objects = [copy.deepcopy(obj.stix) for obj in unique + companions]
        add_derived_data_sources(objects, self.ics_data_sources)
        lookup = self._attack_object_lookup(index_by_attack_id(objects))
        for stix in objects:
            await convert_link_by_id_tags(stix, lookup)
        bundle = make_bundle(objects)

        if not preview_only:
            collection.workspace.exported.append(ExportRecord(utc_now(), bundle["id"]))
            await self.store.update_workspace(collection.stix_id, collection.modified, collection.workspace)
            logger.info(f"Exported collection {collection.stix_id} ({collection.modified}) as {bundle['id']}")

        BUNDLE_EXPORTS.labels(kind="collection").inc()
        return bundle

    def _attack_object_lookup(self, in_bundle: Dict[str, Dict[str, Any]]) -> AttackObjectLookup:
        """Resolve ATT&CK IDs from the bundle first, then from the store."""
        cache: Dict[str, Optional[Dict[str, Any]]] = dict(in_bundle)

        async def lookup(attack_id: str) -> Optional[Dict[str, Any]]:
            if attack_id not in cache:
                found = await self.store.retrieve_by_attack_id(attack_id)
                cache[attack_id] = found.stix if found else None
            return cache[attack_id]

        return lookup

    async def export_collection(
        self,
        collection_id: Optional[str],
        collection_modified: Optional[str] = None,
        include_notes: bool = False,
        preview_only: bool = False,
    ) -> Dict[str, Any]:
        resolved = await self.resolver.resolve(collection_id, collection_modified, include_notes=include_notes)
        return await self.export(resolved, preview_only=preview_only)
