"""Core exception classes for ThreatVault."""

from typing import Any, Dict, List, Optional

from .models import BundleErrors, ImportErrorEntry, ObjectErrorSummary


class ThreatVaultError(Exception):
    """Base exception for all ThreatVault errors."""
    DEFAULT_CODE = "THREATVAULT_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.DEFAULT_CODE


class ConfigurationError(ThreatVaultError):
    """Error in configuration loading or validation."""
    DEFAULT_CODE = "CONFIG_ERROR"

    def __init__(self, message: str, config_path: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message, error_code or self.DEFAULT_CODE)
        self.config_path = config_path


class StoreError(ThreatVaultError):
    """Error raised by an object store backend."""
    DEFAULT_CODE = "STORE_ERROR"


class StoreNotOpenError(StoreError):
    """Operation attempted on a store that has not been opened."""
    DEFAULT_CODE = "STORE_NOT_OPEN"

    def __init__(self, store_name: str, error_code: Optional[str] = None):
        super().__init__(f"{store_name} is not open", error_code or self.DEFAULT_CODE)
        self.store_name = store_name


class DuplicateVersionError(StoreError):
    """An object revision with the same (id, modified) pair is already stored."""
    DEFAULT_CODE = "DUPLICATE_ID"

    def __init__(self, stix_id: str, modified: str, error_code: Optional[str] = None):
        super().__init__(
            f"Object {stix_id} with modified {modified} already exists",
            error_code or self.DEFAULT_CODE,
        )
        self.stix_id = stix_id
        self.modified = modified


class ConcurrencyConflictError(StoreError):
    """The collection changed between classification and commit."""
    DEFAULT_CODE = "CONCURRENCY_CONFLICT"

    def __init__(
        self,
        stix_id: str,
        expected_modified: Optional[str],
        actual_modified: Optional[str],
        error_code: Optional[str] = None,
    ):
        super().__init__(
            f"Collection {stix_id} changed during import: "
            f"expected latest {expected_modified}, found {actual_modified}",
            error_code or self.DEFAULT_CODE,
        )
        self.stix_id = stix_id
        self.expected_modified = expected_modified
        self.actual_modified = actual_modified


class BundleRejectedError(ThreatVaultError):
    """A collection bundle was rejected before anything was written.

    Carries the bundle-level flags and the per-object error summary so the
    caller can report exactly why the bundle was refused.
    """
    DEFAULT_CODE = "BUNDLE_REJECTED"

    def __init__(
        self,
        message: str,
        bundle_errors: Optional[BundleErrors] = None,
        object_errors: Optional[ObjectErrorSummary] = None,
        errors: Optional[List[ImportErrorEntry]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, error_code or self.DEFAULT_CODE)
        self.bundle_errors = bundle_errors or BundleErrors()
        self.object_errors = object_errors or ObjectErrorSummary()
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "bundleErrors": self.bundle_errors.to_dict(),
            "objectErrors": {
                "summary": self.object_errors.to_dict(),
                "errors": [entry.to_dict() for entry in self.errors],
            },
        }


class DuplicateCollectionError(BundleRejectedError):
    """The collection object of the bundle has already been imported."""
    DEFAULT_CODE = "DUPLICATE_COLLECTION"

    def __init__(self, collection_ref: str, collection_modified: str, error_code: Optional[str] = None):
        super().__init__(
            "Duplicate collection",
            bundle_errors=BundleErrors(duplicate_collection=True),
            error_code=error_code or self.DEFAULT_CODE,
        )
        self.collection_ref = collection_ref
        self.collection_modified = collection_modified


class CollectionNotFoundError(ThreatVaultError):
    """Requested collection (or collection revision) does not exist."""
    DEFAULT_CODE = "NOT_FOUND"

    def __init__(
        self,
        collection_id: str,
        collection_modified: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        message = f"Collection not found: {collection_id}"
        if collection_modified:
            message += f" (modified {collection_modified})"
        super().__init__(message, error_code or self.DEFAULT_CODE)
        self.collection_id = collection_id
        self.collection_modified = collection_modified


class MissingParameterError(ThreatVaultError):
    """A required request parameter was not supplied."""
    DEFAULT_CODE = "MISSING_PARAMETER"

    def __init__(self, message: str, parameter: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message, error_code or self.DEFAULT_CODE)
        self.parameter = parameter
