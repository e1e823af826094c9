"""Post-commit maintenance of embedded relationships.

Some ATT&CK objects reference others through STIX properties instead of
relationship objects (a data component names its data source, an analytic
names data components, a detection strategy names analytics). After an
import commits, the new revisions record their outbound references and the
referenced objects record the matching inbound references. Application is
idempotent: running the hook twice over the same revisions changes nothing.
"""

import logging
from typing import Any, Dict, List, Sequence

from threatvault.core.models import EmbeddedRelationship, VersionedObject
from threatvault.core.stix import string_refs
from threatvault.core.types import ObjectType, RelationshipDirection
from threatvault.store.base import ObjectStore

logger = logging.getLogger(__name__)


def outbound_refs(stix: Dict[str, Any]) -> List[str]:
    """Return the ids an object references through embedded properties."""
    object_type = ObjectType.from_stix(stix.get("type"))

    if object_type == ObjectType.DATA_COMPONENT:
        ref = stix.get("x_mitre_data_source_ref")
        refs = [ref]
    elif object_type == ObjectType.ANALYTIC:
        refs = [
            source.get("x_mitre_data_component_ref")
            for source in stix.get("x_mitre_log_source_references") or []
            if isinstance(source, dict)
        ]
    elif object_type == ObjectType.DETECTION_STRATEGY:
        refs = string_refs(stix.get("x_mitre_analytic_refs"))
    else:
        refs = []

    # Preserve order, drop repeats and anything that is not an id
    return list(dict.fromkeys(ref for ref in refs if isinstance(ref, str) and ref))


def _has(relationships: Sequence[EmbeddedRelationship], stix_id: str, direction: RelationshipDirection) -> bool:
    return any(r.stix_id == stix_id and r.direction == direction for r in relationships)


class EmbeddedRelationshipHook:
    """Synchronously updates both ends of embedded references after a commit."""

    async def after_commit(self, store: ObjectStore, committed: Sequence[VersionedObject]) -> None:
        for obj in committed:
            await self._apply(store, obj)

    async def _apply(self, store: ObjectStore, obj: VersionedObject) -> None:
        versions = await store.retrieve_versions(obj.stix_id)
        current = next((v for v in versions if v.key == obj.key), None)
        if current is None:
            logger.warning(f"Committed revision {obj.stix_id} ({obj.modified}) not found; skipping")
            return
        previous = next((v for v in versions if v.modified_at < current.modified_at), None)

        workspace = current.workspace
        changed = False

        # Inbound references belong to the logical object, so they carry forward
        if previous is not None:
            for rel in previous.workspace.embedded_relationships:
                if rel.direction == RelationshipDirection.INBOUND and not _has(
                    workspace.embedded_relationships, rel.stix_id, rel.direction
                ):
                    workspace.embedded_relationships.append(rel)
                    changed = True

        refs = outbound_refs(current.stix)
        for ref in refs:
            if _has(workspace.embedded_relationships, ref, RelationshipDirection.OUTBOUND):
                continue
            target = await store.retrieve_latest(ref)
            if target is None:
                logger.info(f"{current.stix_id} references missing object {ref}; skipping")
                continue
            workspace.embedded_relationships.append(
                EmbeddedRelationship(ref, RelationshipDirection.OUTBOUND, target.attack_id)
            )
            changed = True
            await self._link_inbound(store, target, current)

        if previous is not None:
            for dropped in set(outbound_refs(previous.stix)) - set(refs):
                await self._unlink_inbound(store, dropped, current.stix_id)

        if changed:
            await store.update_workspace(current.stix_id, current.modified, workspace)

    async def _link_inbound(self, store: ObjectStore, target: VersionedObject, source: VersionedObject) -> None:
        if _has(target.workspace.embedded_relationships, source.stix_id, RelationshipDirection.INBOUND):
            return
        target.workspace.embedded_relationships.append(
            EmbeddedRelationship(source.stix_id, RelationshipDirection.INBOUND, source.attack_id)
        )
        await store.update_workspace(target.stix_id, target.modified, target.workspace)
        logger.debug(f"Linked inbound {source.stix_id} -> {target.stix_id}")

    async def _unlink_inbound(self, store: ObjectStore, target_id: str, source_id: str) -> None:
        target = await store.retrieve_latest(target_id)
        if target is None:
            return
        kept = [
            r for r in target.workspace.embedded_relationships
            if not (r.stix_id == source_id and r.direction == RelationshipDirection.INBOUND)
        ]
        if len(kept) != len(target.workspace.embedded_relationships):
            target.workspace.embedded_relationships = kept
            await store.update_workspace(target.stix_id, target.modified, target.workspace)
            logger.debug(f"Unlinked inbound {source_id} -> {target_id}")
