"""Data models for versioned STIX objects and import bookkeeping.

A stored revision is a ``VersionedObject``: the STIX payload, tagged by its
``type``, wrapped in an envelope that adds mutable workspace metadata
(workflow state, collection membership, embedded relationships, import and
export records). Workspace data never participates in the revision identity.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from .stix import attack_id_of, make_key, version_timestamp
from .types import ErrorReason, ForceImport, ObjectType, RelationshipDirection, WarningReason, WorkflowState


# =============================================================================
# Workspace
# =============================================================================

@dataclass
class ContentsEntry:
    """One pinned (object_ref, object_modified) pair of a collection."""
    object_ref: str
    object_modified: str

    def to_dict(self) -> Dict[str, Any]:
        return {"object_ref": self.object_ref, "object_modified": self.object_modified}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentsEntry":
        return cls(object_ref=data.get("object_ref"), object_modified=data.get("object_modified"))


@dataclass
class CollectionRef:
    """Membership of a revision in an imported collection."""
    collection_ref: str
    collection_modified: str

    def to_dict(self) -> Dict[str, Any]:
        return {"collection_ref": self.collection_ref, "collection_modified": self.collection_modified}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionRef":
        return cls(collection_ref=data["collection_ref"], collection_modified=data["collection_modified"])


@dataclass
class EmbeddedRelationship:
    """A reference held inside a STIX property rather than a relationship object."""
    stix_id: str
    direction: RelationshipDirection
    attack_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"stix_id": self.stix_id, "attack_id": self.attack_id, "direction": self.direction.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddedRelationship":
        return cls(
            stix_id=data["stix_id"],
            direction=RelationshipDirection(data["direction"]),
            attack_id=data.get("attack_id"),
        )


@dataclass
class ExportRecord:
    export_timestamp: str
    bundle_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"export_timestamp": self.export_timestamp, "bundle_id": self.bundle_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportRecord":
        return cls(export_timestamp=data["export_timestamp"], bundle_id=data["bundle_id"])


@dataclass
class Workflow:
    state: Optional[WorkflowState] = None
    created_by_user_account: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.state is not None:
            data["state"] = self.state.value
        if self.created_by_user_account:
            data["created_by_user_account"] = self.created_by_user_account
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        state = data.get("state")
        return cls(
            state=WorkflowState(state) if state else None,
            created_by_user_account=data.get("created_by_user_account"),
        )


# =============================================================================
# Import bookkeeping
# =============================================================================

@dataclass
class ImportErrorEntry:
    """An object reference annotated with the reason it was rejected or flagged."""
    object_ref: Optional[str]
    object_modified: Optional[str]
    error_type: str
    error_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_ref": self.object_ref,
            "object_modified": self.object_modified,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportErrorEntry":
        return cls(
            object_ref=data.get("object_ref"),
            object_modified=data.get("object_modified"),
            error_type=data["error_type"],
            error_message=data.get("error_message", ""),
        )


@dataclass
class BundleErrors:
    """Bundle-level structural error flags."""
    no_collection: bool = False
    more_than_one_collection: bool = False
    duplicate_collection: bool = False
    badly_formatted_collection: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "noCollection": self.no_collection,
            "moreThanOneCollection": self.more_than_one_collection,
            "duplicateCollection": self.duplicate_collection,
            "badlyFormattedCollection": self.badly_formatted_collection,
        }


@dataclass
class ObjectErrorSummary:
    """Aggregate per-object error counts for one import attempt."""
    duplicate_object_in_bundle_count: int = 0
    invalid_attack_spec_version_count: int = 0
    missing_attack_spec_version_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "duplicateObjectInBundleCount": self.duplicate_object_in_bundle_count,
            "invalidAttackSpecVersionCount": self.invalid_attack_spec_version_count,
            "missingAttackSpecVersionCount": self.missing_attack_spec_version_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectErrorSummary":
        return cls(
            duplicate_object_in_bundle_count=data.get("duplicateObjectInBundleCount", 0),
            invalid_attack_spec_version_count=data.get("invalidAttackSpecVersionCount", 0),
            missing_attack_spec_version_count=data.get("missingAttackSpecVersionCount", 0),
        )


@dataclass
class ImportCategories:
    """Outcome of classifying a bundle against the store.

    ``additions``, ``changes``, ``duplicates`` and ``errors`` partition the
    non-collection objects of the bundle. ``revocations``, ``deprecations``
    and ``minor_changes`` annotate members of ``changes``; ``warnings``
    record conditions that reject nothing.
    """
    additions: List[str] = field(default_factory=list)
    changes: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    errors: List[ImportErrorEntry] = field(default_factory=list)
    warnings: List[ImportErrorEntry] = field(default_factory=list)
    revocations: List[str] = field(default_factory=list)
    deprecations: List[str] = field(default_factory=list)
    minor_changes: List[str] = field(default_factory=list)
    summary: ObjectErrorSummary = field(default_factory=ObjectErrorSummary)

    @property
    def total(self) -> int:
        return len(self.additions) + len(self.changes) + len(self.duplicates) + len(self.errors)

    def add_error(
        self,
        stix: Dict[str, Any],
        reason: ErrorReason,
        message: str = "",
    ) -> ImportErrorEntry:
        entry = ImportErrorEntry(
            object_ref=stix.get("id"),
            object_modified=version_timestamp(stix),
            error_type=reason.value,
            error_message=message,
        )
        self.errors.append(entry)
        return entry

    def add_warning(
        self,
        object_ref: Optional[str],
        object_modified: Optional[str],
        reason: WarningReason,
        message: str = "",
    ) -> ImportErrorEntry:
        entry = ImportErrorEntry(object_ref, object_modified, reason.value, message)
        self.warnings.append(entry)
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "additions": list(self.additions),
            "changes": list(self.changes),
            "duplicates": list(self.duplicates),
            "errors": [entry.to_dict() for entry in self.errors],
            "warnings": [entry.to_dict() for entry in self.warnings],
            "revocations": list(self.revocations),
            "deprecations": list(self.deprecations),
            "minor_changes": list(self.minor_changes),
            "summary": self.summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportCategories":
        return cls(
            additions=list(data.get("additions", [])),
            changes=list(data.get("changes", [])),
            duplicates=list(data.get("duplicates", [])),
            errors=[ImportErrorEntry.from_dict(e) for e in data.get("errors", [])],
            warnings=[ImportErrorEntry.from_dict(e) for e in data.get("warnings", [])],
            revocations=list(data.get("revocations", [])),
            deprecations=list(data.get("deprecations", [])),
            minor_changes=list(data.get("minor_changes", [])),
            summary=ObjectErrorSummary.from_dict(data.get("summary", {})),
        )


@dataclass
class ImportReferences:
    """Outcome of importing the citation references carried by a bundle.

    Each list holds ``source_name`` values: references new to the vault,
    references whose stored text differs, and references already stored
    unchanged.
    """
    additions: List[str] = field(default_factory=list)
    changes: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "additions": list(self.additions),
            "changes": list(self.changes),
            "duplicates": list(self.duplicates),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportReferences":
        return cls(
            additions=list(data.get("additions", [])),
            changes=list(data.get("changes", [])),
            duplicates=list(data.get("duplicates", [])),
        )


@dataclass
class ImportOptions:
    """Caller-selected import mode."""
    check_only: bool = False
    preview_only: bool = False
    force_import: FrozenSet[ForceImport] = frozenset()

    @property
    def dry_run(self) -> bool:
        return self.check_only or self.preview_only

    def forces(self, violation: ForceImport) -> bool:
        return violation in self.force_import


# =============================================================================
# Versioned object envelope
# =============================================================================

@dataclass
class Workspace:
    """Mutable metadata attached to one stored revision."""
    workflow: Workflow = field(default_factory=Workflow)
    attack_id: Optional[str] = None
    collections: List[CollectionRef] = field(default_factory=list)
    embedded_relationships: List[EmbeddedRelationship] = field(default_factory=list)
    # Collection revisions only
    imported: Optional[str] = None
    exported: List[ExportRecord] = field(default_factory=list)
    import_categories: Optional[ImportCategories] = None
    import_references: Optional[ImportReferences] = None
    reimports: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "workflow": self.workflow.to_dict(),
            "attack_id": self.attack_id,
            "collections": [ref.to_dict() for ref in self.collections],
            "embedded_relationships": [rel.to_dict() for rel in self.embedded_relationships],
        }
        if self.imported is not None:
            data["imported"] = self.imported
        if self.exported:
            data["exported"] = [record.to_dict() for record in self.exported]
        if self.import_categories is not None:
            data["import_categories"] = self.import_categories.to_dict()
        if self.import_references is not None:
            data["import_references"] = self.import_references.to_dict()
        if self.reimports:
            data["reimports"] = copy.deepcopy(self.reimports)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Workspace":
        data = data or {}
        categories = data.get("import_categories")
        references = data.get("import_references")
        return cls(
            workflow=Workflow.from_dict(data.get("workflow") or {}),
            attack_id=data.get("attack_id"),
            collections=[CollectionRef.from_dict(c) for c in data.get("collections", [])],
            embedded_relationships=[
                EmbeddedRelationship.from_dict(r) for r in data.get("embedded_relationships", [])
            ],
            imported=data.get("imported"),
            exported=[ExportRecord.from_dict(e) for e in data.get("exported", [])],
            import_categories=ImportCategories.from_dict(categories) if categories else None,
            import_references=ImportReferences.from_dict(references) if references else None,
            reimports=copy.deepcopy(data.get("reimports", [])),
        )


@dataclass
class VersionedObject:
    """One stored revision of a STIX object.

    Attributes:
        stix: The STIX payload; its ``type`` is the discriminator
        workspace: Mutable metadata outside the revision identity
    """
    stix: Dict[str, Any]
    workspace: Workspace = field(default_factory=Workspace)

    @classmethod
    def from_stix(cls, stix: Dict[str, Any], workspace: Optional[Workspace] = None) -> "VersionedObject":
        """Wrap a STIX payload, deriving the ATT&CK ID for the workspace."""
        workspace = workspace or Workspace()
        if workspace.attack_id is None:
            workspace.attack_id = attack_id_of(stix)
        return cls(stix=copy.deepcopy(stix), workspace=workspace)

    @property
    def stix_id(self) -> str:
        return self.stix["id"]

    @property
    def stix_type(self) -> Optional[str]:
        return self.stix.get("type")

    @property
    def object_type(self) -> Optional[ObjectType]:
        return ObjectType.from_stix(self.stix_type)

    @property
    def modified(self) -> str:
        return version_timestamp(self.stix)

    @property
    def key(self):
        return make_key(self.stix.get("id"), self.modified)

    @property
    def modified_at(self) -> datetime:
        return self.key[1]

    @property
    def attack_id(self) -> Optional[str]:
        return self.workspace.attack_id

    @property
    def is_revoked(self) -> bool:
        return bool(self.stix.get("revoked"))

    @property
    def is_deprecated(self) -> bool:
        return bool(self.stix.get("x_mitre_deprecated"))

    @property
    def contents(self) -> List[ContentsEntry]:
        return [
            ContentsEntry.from_dict(entry)
            for entry in self.stix.get("x_mitre_contents") or []
            if isinstance(entry, dict)
        ]

    def copy(self) -> "VersionedObject":
        return VersionedObject(stix=copy.deepcopy(self.stix), workspace=Workspace.from_dict(self.workspace.to_dict()))

    def to_dict(self) -> Dict[str, Any]:
        return {"stix": copy.deepcopy(self.stix), "workspace": self.workspace.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionedObject":
        return cls(stix=copy.deepcopy(data["stix"]), workspace=Workspace.from_dict(data.get("workspace")))


@dataclass
class CollectionResult:
    """Result of one import call.

    ``collection`` is the persisted revision, or the hypothetical one in a
    dry run. ``reimport`` is set when a forced duplicate collection was
    re-imported under its existing identity.
    """
    collection: VersionedObject
    categories: ImportCategories
    committed: bool = False
    reimport: bool = False
    references: ImportReferences = field(default_factory=ImportReferences)

    def to_dict(self) -> Dict[str, Any]:
        return self.collection.to_dict()
