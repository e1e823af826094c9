"""STIX object types and enumerations shared across ThreatVault."""

from enum import Enum
from typing import FrozenSet, Iterable, Optional


class ObjectType(str, Enum):
    """STIX object types managed by the vault."""
    TECHNIQUE = "attack-pattern"
    TACTIC = "x-mitre-tactic"
    GROUP = "intrusion-set"
    CAMPAIGN = "campaign"
    MALWARE = "malware"
    TOOL = "tool"
    MITIGATION = "course-of-action"
    MATRIX = "x-mitre-matrix"
    RELATIONSHIP = "relationship"
    MARKING_DEFINITION = "marking-definition"
    IDENTITY = "identity"
    NOTE = "note"
    DATA_SOURCE = "x-mitre-data-source"
    DATA_COMPONENT = "x-mitre-data-component"
    ASSET = "x-mitre-asset"
    ANALYTIC = "x-mitre-analytic"
    DETECTION_STRATEGY = "x-mitre-detection-strategy"
    LOG_SOURCE = "x-mitre-log-source"
    COLLECTION = "x-mitre-collection"

    @classmethod
    def from_stix(cls, value: Optional[str]) -> Optional["ObjectType"]:
        """Return the member for a STIX ``type`` value, or None if unknown."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ForceImport(str, Enum):
    """Violation classes a caller may override when importing."""
    DUPLICATE_COLLECTION = "duplicate-collection"
    ATTACK_SPEC_VERSION_VIOLATIONS = "attack-spec-version-violations"

    @classmethod
    def parse(cls, values: Optional[Iterable[str]]) -> FrozenSet["ForceImport"]:
        """Parse forceImport values; ``all`` expands to every override.

        Raises:
            ValueError: If a value is not a known override
        """
        parsed = set()
        for value in values or ():
            if isinstance(value, cls):
                parsed.add(value)
            elif value == "all":
                parsed.update(cls)
            else:
                try:
                    parsed.add(cls(value))
                except ValueError:
                    raise ValueError(f"Unknown forceImport value: {value}")
        return frozenset(parsed)


class WorkflowState(str, Enum):
    """Review state of a stored revision."""
    WORK_IN_PROGRESS = "work-in-progress"
    AWAITING_REVIEW = "awaiting-review"
    REVIEWED = "reviewed"


class ErrorReason(str, Enum):
    """Reasons an object lands in the ``errors`` import category."""
    DUPLICATE_OBJECT_IN_BUNDLE = "duplicate-object-in-bundle"
    INVALID_ATTACK_SPEC_VERSION = "invalid-attack-spec-version"
    DUPLICATE_ID = "duplicate-id"
    OUT_OF_DATE = "out-of-date"
    UNKNOWN_OBJECT_TYPE = "unknown-object-type"
    MISSING_ID = "missing-id"


class WarningReason(str, Enum):
    """Conditions reported on an import that do not reject any object."""
    NOT_IN_CONTENTS = "not-in-contents"
    MISSING_OBJECT = "missing-object"
    DUPLICATE_COLLECTION = "duplicate-collection"
    MISSING_ATTACK_SPEC_VERSION = "missing-attack-spec-version"


class RelationshipDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# Types whose objects declare x_mitre_domains and are selected directly by a
# domain-wide export.
DOMAIN_SCOPED_TYPES = (
    ObjectType.TECHNIQUE,
    ObjectType.TACTIC,
    ObjectType.MATRIX,
    ObjectType.MITIGATION,
    ObjectType.MALWARE,
    ObjectType.TOOL,
    ObjectType.DATA_SOURCE,
    ObjectType.DATA_COMPONENT,
    ObjectType.ASSET,
    ObjectType.ANALYTIC,
)

# Types pulled into a domain-wide export only through relationships.
RELATED_TYPES = (
    ObjectType.GROUP,
    ObjectType.CAMPAIGN,
    ObjectType.DETECTION_STRATEGY,
)

ATTACK_SOURCE_NAMES = ("mitre-attack", "mitre-mobile-attack", "mitre-ics-attack")
