"""Diff engine: classify bundle objects against the current store state."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from threatvault.core.models import ImportCategories, VersionedObject
from threatvault.core.stix import make_key_from_object, parse_spec_version, same_content
from threatvault.core.types import ErrorReason, ForceImport, ObjectType
from threatvault.store.base import ObjectStore

from .validator import ObjectFlags

logger = logging.getLogger(__name__)

ADDITION = "addition"
CHANGE = "change"
DUPLICATE = "duplicate"
ERROR = "error"

ClassifiedCallback = Callable[[int, Dict[str, Any], str], Awaitable[None]]


@dataclass
class Classification:
    """Category buckets plus the revisions that would be written."""
    categories: ImportCategories = field(default_factory=ImportCategories)
    accepted: List[VersionedObject] = field(default_factory=list)

    def error_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for entry in self.categories.errors:
            counts[entry.error_type] = counts.get(entry.error_type, 0) + 1
        return counts


class ObjectClassifier:
    """Assigns each non-collection object of a bundle to exactly one category.

    Objects are visited in bundle order. Revisions accepted earlier in the
    same bundle count as known state for later objects, so a bundle may
    carry several revisions of one object.
    """

    def __init__(self, store: ObjectStore):
        self.store = store

    async def classify(
        self,
        objects: List[Dict[str, Any]],
        flags: Optional[Dict[int, ObjectFlags]] = None,
        force_import: FrozenSet[ForceImport] = frozenset(),
        on_classified: Optional[ClassifiedCallback] = None,
    ) -> Classification:
        """Classify bundle objects.

        Args:
            objects: The bundle's objects array; collection objects are skipped
            flags: Validator findings keyed by position in ``objects``
            force_import: Overrides; spec-version violations proceed normally
                when ``attack-spec-version-violations`` is present
            on_classified: Awaited with (position, object, category) after
                each object is classified

        Returns:
            Classification with the four category buckets
        """
        flags = flags or {}
        result = Classification()
        categories = result.categories
        known: Dict[str, List[VersionedObject]] = {}
        seen = set()

        for index, stix in enumerate(objects):
            if stix.get("type") == ObjectType.COLLECTION.value:
                continue

            object_flags = flags.get(index, ObjectFlags())
            key = make_key_from_object(stix)

            if object_flags.duplicate_in_bundle or (key is not None and key in seen):
                categories.add_error(stix, ErrorReason.DUPLICATE_OBJECT_IN_BUNDLE, "Duplicate object in bundle")
                if not object_flags.duplicate_in_bundle:
                    categories.summary.duplicate_object_in_bundle_count += 1
                category = ERROR
            else:
                if key is not None:
                    seen.add(key)
                category = await self._classify_object(stix, key, object_flags, force_import, known, result)

            logger.debug(f"Classified {stix.get('id')} ({stix.get('modified')}) as {category}")
            if on_classified is not None:
                await on_classified(index, stix, category)

        return result

    async def _classify_object(self, stix, key, object_flags, force_import, known, result) -> str:
        categories = result.categories

        if object_flags.invalid_spec_version and ForceImport.ATTACK_SPEC_VERSION_VIOLATIONS not in force_import:
            categories.add_error(
                stix,
                ErrorReason.INVALID_ATTACK_SPEC_VERSION,
                f"Invalid ATT&CK spec version {stix.get('x_mitre_attack_spec_version')}",
            )
            return ERROR

        if ObjectType.from_stix(stix.get("type")) is None:
            categories.add_error(stix, ErrorReason.UNKNOWN_OBJECT_TYPE, f"Unknown object type {stix.get('type')}")
            return ERROR

        if key is None:
            categories.add_error(stix, ErrorReason.MISSING_ID, "Object has no id or version timestamp")
            return ERROR

        stix_id = stix["id"]
        if stix_id not in known:
            known[stix_id] = await self.store.retrieve_versions(stix_id)
        versions = known[stix_id]

        if not versions:
            categories.additions.append(stix_id)
            self._accept(stix, known, result)
            return ADDITION

        existing = next((v for v in versions if v.key == key), None)
        if existing is not None:
            if same_content(existing.stix, stix):
                categories.duplicates.append(stix_id)
                return DUPLICATE
            categories.add_error(
                stix,
                ErrorReason.DUPLICATE_ID,
                "An object with this id and modified timestamp exists with different content",
            )
            return ERROR

        latest = versions[0]
        if key[1] < latest.modified_at:
            categories.add_error(
                stix,
                ErrorReason.OUT_OF_DATE,
                f"Object is older than the latest stored revision ({latest.modified})",
            )
            return ERROR

        categories.changes.append(stix_id)
        if stix.get("revoked") and not latest.is_revoked:
            categories.revocations.append(stix_id)
        elif stix.get("x_mitre_deprecated") and not latest.is_deprecated:
            categories.deprecations.append(stix_id)
        elif _same_object_version(latest.stix, stix):
            categories.minor_changes.append(stix_id)
        self._accept(stix, known, result)
        return CHANGE

    def _accept(self, stix, known, result) -> None:
        obj = VersionedObject.from_stix(stix)
        result.accepted.append(obj)
        known[obj.stix_id] = sorted(known[obj.stix_id] + [obj], key=lambda v: v.modified_at, reverse=True)


def _same_object_version(previous: Dict[str, Any], current: Dict[str, Any]) -> bool:
    """True when both revisions declare the same ``x_mitre_version``."""
    before = parse_spec_version(previous.get("x_mitre_version"))
    after = parse_spec_version(current.get("x_mitre_version"))
    return before is not None and before == after
