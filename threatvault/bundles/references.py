"""Citation references carried by imported objects.

ATT&CK objects cite sources through external references that have a
``source_name`` and a ``description`` but no ``external_id``. An import
collects those citations from the revisions it accepts and saves them in
the vault's reference table alongside the revisions. References naming
one of the object's aliases are not citations and are skipped.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from threatvault.core.models import ImportReferences
from threatvault.core.types import ObjectType
from threatvault.store.base import ObjectStore

logger = logging.getLogger(__name__)

ALIAS_PROPERTIES = {
    ObjectType.GROUP.value: "aliases",
    ObjectType.MALWARE.value: "x_mitre_aliases",
    ObjectType.TOOL.value: "x_mitre_aliases",
}


def is_alias(stix: Dict[str, Any], source_name: str) -> bool:
    """True when ``source_name`` is one of the object's aliases."""
    object_type = stix.get("type")
    prop = ALIAS_PROPERTIES.get(object_type) if isinstance(object_type, str) else None
    aliases = stix.get(prop) if prop else None
    return isinstance(aliases, list) and source_name in aliases


@dataclass
class ReferenceScan:
    """Citations gathered from a set of objects, first occurrence wins."""
    references: Dict[str, Dict[str, Any]]
    unique: int = 0
    repeated: int = 0
    aliases: int = 0


def collect_references(objects: Iterable[Dict[str, Any]]) -> ReferenceScan:
    scan = ReferenceScan(references={})
    for stix in objects:
        external_references = stix.get("external_references")
        if not isinstance(external_references, list):
            continue
        for reference in external_references:
            if not isinstance(reference, dict):
                continue
            source_name = reference.get("source_name")
            description = reference.get("description")
            if not (isinstance(source_name, str) and source_name and isinstance(description, str) and description):
                continue
            if reference.get("external_id"):
                continue
            if is_alias(stix, source_name):
                scan.aliases += 1
                continue
            if source_name in scan.references:
                scan.repeated += 1
                continue
            scan.unique += 1
            scan.references[source_name] = _citation(reference)
    return scan


def _citation(reference: Dict[str, Any]) -> Dict[str, Any]:
    citation = {"source_name": reference["source_name"], "description": reference["description"]}
    if reference.get("url"):
        citation["url"] = reference["url"]
    return citation


async def categorize_references(
    store: ObjectStore,
    references: Dict[str, Dict[str, Any]],
) -> ImportReferences:
    """Sort citations into additions, changes and duplicates against the store."""
    stored = await store.retrieve_references(references.keys())
    result = ImportReferences()
    for source_name, citation in references.items():
        existing = stored.get(source_name)
        if existing is None:
            result.additions.append(source_name)
        elif existing == citation:
            result.duplicates.append(source_name)
        else:
            result.changes.append(source_name)
    return result


def references_to_save(references: Dict[str, Dict[str, Any]], outcome: ImportReferences) -> List[Dict[str, Any]]:
    return [references[name] for name in outcome.additions + outcome.changes]
