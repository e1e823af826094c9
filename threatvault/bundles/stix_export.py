"""Domain-wide STIX bundle export.

Selects the latest revision of every domain-scoped object in an ATT&CK
domain, pulls in groups, campaigns and detection strategies connected to
them through relationships, and keeps the relationships whose two ends both
made it into the bundle.
"""

import logging
from typing import Any, Dict, List, Optional

from threatvault.core.models import VersionedObject
from threatvault.core.stix import string_refs
from threatvault.core.types import DOMAIN_SCOPED_TYPES, RELATED_TYPES, ObjectType
from threatvault.metrics import BUNDLE_EXPORTS
from threatvault.store.base import ObjectStore, matches_filters

from .exporter import collect_companions, make_bundle

logger = logging.getLogger(__name__)


def _is_deprecated_detection(relationship: VersionedObject) -> bool:
    # Data components detecting techniques is a retired pattern
    return (
        relationship.stix.get("relationship_type") == "detects"
        and str(relationship.stix.get("source_ref", "")).startswith(ObjectType.DATA_COMPONENT.value + "--")
    )


class StixBundleExporter:
    """Exports everything the vault holds for one domain."""

    def __init__(self, store: ObjectStore):
        self.store = store

    async def export_domain(
        self,
        domain: str,
        include_deprecated: bool = False,
        include_revoked: bool = False,
        include_notes: bool = False,
        state: Optional[str] = None,
    ) -> Dict[str, Any]:
        filters = dict(include_revoked=include_revoked, include_deprecated=include_deprecated, state=state)

        primary = await self.store.find(
            [t.value for t in DOMAIN_SCOPED_TYPES], domain=domain, **filters
        )
        members: Dict[str, VersionedObject] = {obj.stix_id: obj for obj in primary}

        relationships = [
            rel
            for rel in await self.store.find(ObjectType.RELATIONSHIP.value, **filters)
            if isinstance(rel.stix.get("source_ref"), str)
            and isinstance(rel.stix.get("target_ref"), str)
            and not _is_deprecated_detection(rel)
        ]

        related_prefixes = tuple(t.value + "--" for t in RELATED_TYPES)
        related_ids = set()
        for rel in relationships:
            source, target = rel.stix.get("source_ref"), rel.stix.get("target_ref")
            if source in members and str(target).startswith(related_prefixes):
                related_ids.add(target)
            if target in members and str(source).startswith(related_prefixes):
                related_ids.add(source)

        for related_id in sorted(related_ids - set(members)):
            obj = await self.store.retrieve_latest(related_id)
            if obj is None or not matches_filters(obj, **filters):
                continue
            members[related_id] = obj

        kept_relationships = [
            rel for rel in relationships
            if rel.stix.get("source_ref") in members and rel.stix.get("target_ref") in members
        ]

        objects: List[VersionedObject] = list(members.values()) + kept_relationships
        if include_notes:
            ids = {obj.stix_id for obj in objects}
            for note in await self.store.find(ObjectType.NOTE.value, include_revoked=False, include_deprecated=False):
                if ids.intersection(string_refs(note.stix.get("object_refs"))):
                    objects.append(note)

        companions = await collect_companions(self.store, objects)
        bundle = make_bundle(obj.stix for obj in objects + companions)

        logger.info(f"Exported {len(bundle['objects'])} objects for domain {domain}")
        BUNDLE_EXPORTS.labels(kind="domain").inc()
        return bundle
