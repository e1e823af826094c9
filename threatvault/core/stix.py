"""Helpers for working with raw STIX object dictionaries.

Timestamps are compared as instants rather than strings, so
``2020-01-01T00:00:00Z`` and ``2020-01-01T00:00:00.000Z`` identify the same
revision of an object.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from .types import ATTACK_SOURCE_NAMES, ObjectType

logger = logging.getLogger(__name__)

VersionKey = Tuple[str, datetime]

# fromisoformat on Python 3.10 accepts exactly 3 or 6 fractional digits
_FRACTIONAL_SECONDS = re.compile(r"\.(\d+)")

# Top-level properties holding timestamps, normalized before content comparison
TIMESTAMP_PROPERTIES = frozenset({
    "created",
    "modified",
    "first_seen",
    "last_seen",
    "valid_from",
    "valid_until",
    "published",
})


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Returns None when the value is missing or not a valid timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTIONAL_SECONDS.sub(_six_digit_fraction, text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _six_digit_fraction(match: "re.Match") -> str:
    # Sub-microsecond digits are dropped
    return "." + match.group(1)[:6].ljust(6, "0")


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way STIX serializes timestamps (millisecond precision)."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def version_timestamp(stix: Dict[str, Any]) -> Optional[str]:
    """Return the timestamp that versions a STIX object.

    Marking definitions are immutable and carry no ``modified`` property;
    their ``created`` timestamp stands in for it.
    """
    if stix.get("type") == ObjectType.MARKING_DEFINITION.value:
        return stix.get("modified") or stix.get("created")
    return stix.get("modified")


def make_key(stix_id: Optional[str], modified: Any) -> Optional[VersionKey]:
    """Build the (id, modified) identity of a revision, or None if incomplete.

    Only a non-empty string id counts; anything else yields None.
    """
    instant = parse_timestamp(modified)
    if not isinstance(stix_id, str) or not stix_id or instant is None:
        return None
    return stix_id, instant


def make_key_from_object(stix: Dict[str, Any]) -> Optional[VersionKey]:
    return make_key(stix.get("id"), version_timestamp(stix))


def _normalize_timestamp(value: Any) -> Any:
    instant = parse_timestamp(value)
    return instant.isoformat() if instant else value


def _normalize(stix: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for key, value in stix.items():
        if key in TIMESTAMP_PROPERTIES:
            normalized[key] = _normalize_timestamp(value)
        elif key == "x_mitre_contents" and isinstance(value, list):
            normalized[key] = [
                {**entry, "object_modified": _normalize_timestamp(entry.get("object_modified"))}
                if isinstance(entry, dict) else entry
                for entry in value
            ]
        else:
            normalized[key] = value
    return normalized


def canonical_form(stix: Dict[str, Any]) -> str:
    """Serialize an object so that semantically equal objects compare equal.

    Key order and timestamp formatting do not affect the result; any other
    difference in content does.
    """
    return json.dumps(_normalize(stix), sort_keys=True, separators=(",", ":"), default=str)


def same_content(left: Dict[str, Any], right: Dict[str, Any]) -> bool:
    return canonical_form(left) == canonical_form(right)


def attack_id_of(stix: Dict[str, Any]) -> Optional[str]:
    """Return the ATT&CK ID (e.g. T1059) from an object's external references."""
    for reference in stix.get("external_references") or []:
        if not isinstance(reference, dict):
            continue
        if reference.get("source_name") in ATTACK_SOURCE_NAMES and reference.get("external_id"):
            return reference["external_id"]
    return None


def parse_spec_version(value: Any) -> Optional[Version]:
    """Parse an ``x_mitre_attack_spec_version`` value; None if it is not a version."""
    if not isinstance(value, str):
        return None
    try:
        return Version(value)
    except InvalidVersion:
        return None


def is_spec_version_compatible(value: Any, system_version: str) -> bool:
    """True when ``value`` is a valid version no later than the system's."""
    declared = parse_spec_version(value)
    if declared is None:
        return False
    return declared <= Version(system_version)


def string_refs(value: Any) -> List[str]:
    """The string ids in a list-valued reference property; anything else is ignored."""
    if not isinstance(value, list):
        return []
    return [ref for ref in value if isinstance(ref, str) and ref]
