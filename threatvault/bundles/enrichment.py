"""Export-time rewriting of bundle objects.

Two passes run over the STIX objects of a collection export before it is
handed out:

* Techniques get ``x_mitre_data_sources`` derived from the data components
  that detect them, as ``"<data source>: <data component>"`` strings.
* ``(LinkById: T1234)`` tags in descriptions are replaced with markdown
  citations ``[name](url)`` of the object carrying that ATT&CK ID.

Both passes mutate the dictionaries they are given; callers pass copies.
"""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from threatvault.core.stix import attack_id_of
from threatvault.core.types import ATTACK_SOURCE_NAMES, ObjectType

logger = logging.getLogger(__name__)

ENTERPRISE_DOMAIN = "enterprise-attack"
ICS_DOMAIN = "ics-attack"

LINK_BY_ID = re.compile(r"\(LinkById: ([A-Z]+[0-9]+(?:\.[0-9]+)?)\)")
MISSING_LINK_NAME = "linked object not found"

AttackObjectLookup = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


# =============================================================================
# Derived data sources
# =============================================================================

def add_derived_data_sources(objects: List[Dict[str, Any]], ics_data_sources: Optional[Sequence[str]] = None) -> None:
    """Rewrite ``x_mitre_data_sources`` on every technique in ``objects``.

    Enterprise techniques list the data components that detect them, as
    found in the same bundle. ICS techniques keep their own values, limited
    to ``ics_data_sources`` when that vocabulary is given. The property is
    only written when something was derived or the technique already
    carries it, so unrelated techniques export unchanged.
    """
    components: Dict[str, Dict[str, Any]] = {}
    sources: Dict[str, Dict[str, Any]] = {}
    detected_by: Dict[str, List[str]] = {}

    for stix in objects:
        object_type, stix_id = stix.get("type"), stix.get("id")
        if object_type == ObjectType.DATA_COMPONENT.value and isinstance(stix_id, str):
            components[stix_id] = stix
        elif object_type == ObjectType.DATA_SOURCE.value and isinstance(stix_id, str):
            sources[stix_id] = stix
        elif object_type == ObjectType.RELATIONSHIP.value and stix.get("relationship_type") == "detects":
            target, source = stix.get("target_ref"), stix.get("source_ref")
            if isinstance(target, str) and isinstance(source, str):
                detected_by.setdefault(target, []).append(source)

    for stix in objects:
        if stix.get("type") != ObjectType.TECHNIQUE.value:
            continue
        domains = stix.get("x_mitre_domains")
        domains = domains if isinstance(domains, list) else []
        enterprise = ENTERPRISE_DOMAIN in domains
        ics = ICS_DOMAIN in domains

        derived: List[str] = []
        if ics:
            derived.extend(_ics_sources(stix, ics_data_sources))
        if enterprise and isinstance(stix.get("id"), str):
            derived.extend(_detecting_sources(stix["id"], detected_by, components, sources))
        if derived or "x_mitre_data_sources" in stix:
            stix["x_mitre_data_sources"] = derived


def _ics_sources(technique: Dict[str, Any], allowed: Optional[Sequence[str]]) -> List[str]:
    current = technique.get("x_mitre_data_sources")
    if not isinstance(current, list):
        return []
    if allowed is None:
        return list(current)
    return [value for value in current if value in allowed]


def _detecting_sources(technique_id, detected_by, components, sources) -> List[str]:
    derived = []
    for component_id in detected_by.get(technique_id, []):
        component = components.get(component_id)
        if component is None:
            logger.warning(f"Referenced data component not found: {component_id}")
            continue
        source_ref = component.get("x_mitre_data_source_ref")
        source = sources.get(source_ref) if isinstance(source_ref, str) else None
        if source is None:
            logger.warning(f"Referenced data source not found: {source_ref}")
            continue
        derived.append(f"{source.get('name')}: {component.get('name')}")
    return derived


# =============================================================================
# LinkById citations
# =============================================================================

def _citation_url(stix: Dict[str, Any]) -> str:
    for reference in stix.get("external_references") or []:
        if isinstance(reference, dict) and reference.get("source_name") in ATTACK_SOURCE_NAMES:
            return reference.get("url") or ""
    return ""


async def convert_link_by_id(text: Any, lookup: AttackObjectLookup) -> Any:
    """Replace every ``(LinkById: <ATT&CK ID>)`` tag in ``text`` with a citation."""
    if not isinstance(text, str) or "(LinkById: " not in text:
        return text

    parts = []
    last = 0
    for match in LINK_BY_ID.finditer(text):
        linked = await lookup(match.group(1))
        if linked is not None:
            citation = f"[{linked.get('name')}]({_citation_url(linked)})"
        else:
            citation = f"[{MISSING_LINK_NAME}]()"
        parts.append(text[last:match.start()])
        parts.append(citation)
        last = match.end()
    parts.append(text[last:])
    return "".join(parts)


async def convert_link_by_id_tags(stix: Dict[str, Any], lookup: AttackObjectLookup) -> None:
    """Convert tags in the description, technique detection text and reference descriptions."""
    if "description" in stix:
        stix["description"] = await convert_link_by_id(stix["description"], lookup)
    if stix.get("type") == ObjectType.TECHNIQUE.value and "x_mitre_detection" in stix:
        stix["x_mitre_detection"] = await convert_link_by_id(stix["x_mitre_detection"], lookup)
    references = stix.get("external_references")
    if isinstance(references, list):
        for reference in references:
            if isinstance(reference, dict) and "description" in reference:
                reference["description"] = await convert_link_by_id(reference["description"], lookup)


def index_by_attack_id(objects: Sequence[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Map ATT&CK IDs to the objects in a bundle that carry them."""
    index = {}
    for stix in objects:
        attack_id = attack_id_of(stix)
        if isinstance(attack_id, str):
            index[attack_id] = stix
    return index
