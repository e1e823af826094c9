"""Core domain types for ThreatVault."""

from .exceptions import (
    BundleRejectedError,
    CollectionNotFoundError,
    ConcurrencyConflictError,
    ConfigurationError,
    DuplicateCollectionError,
    DuplicateVersionError,
    MissingParameterError,
    StoreError,
    StoreNotOpenError,
    ThreatVaultError,
)
from .models import (
    BundleErrors,
    CollectionResult,
    ContentsEntry,
    ImportCategories,
    ImportErrorEntry,
    ImportOptions,
    ImportReferences,
    ObjectErrorSummary,
    VersionedObject,
    Workspace,
)
from .types import ErrorReason, ForceImport, ObjectType, WarningReason, WorkflowState

__all__ = [
    "BundleRejectedError",
    "CollectionNotFoundError",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "DuplicateCollectionError",
    "DuplicateVersionError",
    "MissingParameterError",
    "StoreError",
    "StoreNotOpenError",
    "ThreatVaultError",
    "BundleErrors",
    "CollectionResult",
    "ContentsEntry",
    "ImportCategories",
    "ImportErrorEntry",
    "ImportOptions",
    "ImportReferences",
    "ObjectErrorSummary",
    "VersionedObject",
    "Workspace",
    "ErrorReason",
    "ForceImport",
    "ObjectType",
    "WarningReason",
    "WorkflowState",
]
