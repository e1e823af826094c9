"""Structural and object-level validation of incoming collection bundles."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from threatvault.core.exceptions import BundleRejectedError
from threatvault.core.models import BundleErrors, ImportErrorEntry, ObjectErrorSummary
from threatvault.core.stix import is_spec_version_compatible, make_key_from_object, version_timestamp
from threatvault.core.types import ErrorReason, ObjectType, WarningReason

logger = logging.getLogger(__name__)

SPEC_VERSION_EXEMPT_TYPES = frozenset({
    ObjectType.COLLECTION.value,
    ObjectType.MARKING_DEFINITION.value,
})


@dataclass
class ObjectFlags:
    """Validation findings for one object, carried into classification."""
    duplicate_in_bundle: bool = False
    invalid_spec_version: bool = False
    missing_spec_version: bool = False


@dataclass
class ValidationResult:
    """A structurally valid bundle annotated with per-object findings.

    ``flags`` is keyed by the object's position in the bundle's ``objects``.
    """
    collection: Dict[str, Any]
    objects: List[Dict[str, Any]]
    summary: ObjectErrorSummary = field(default_factory=ObjectErrorSummary)
    errors: List[ImportErrorEntry] = field(default_factory=list)
    warnings: List[ImportErrorEntry] = field(default_factory=list)
    flags: Dict[int, ObjectFlags] = field(default_factory=dict)


def _entry(stix: Dict[str, Any], reason, message: str) -> ImportErrorEntry:
    return ImportErrorEntry(stix.get("id"), version_timestamp(stix), reason.value, message)


class BundleValidator:
    """Checks a raw bundle before anything touches the store."""

    def __init__(self, system_spec_version: str = "3.3.0", default_object_spec_version: str = "2.0.0"):
        self.system_spec_version = system_spec_version
        self.default_object_spec_version = default_object_spec_version

    def check_structure(self, bundle: Any) -> Dict[str, Any]:
        """Verify the bundle shape and return its single collection object.

        Raises:
            BundleRejectedError: For an empty or malformed bundle, or a bundle
                without exactly one well-formed collection object
        """
        if not bundle:
            raise BundleRejectedError("Request body is empty")
        if not isinstance(bundle, dict):
            raise BundleRejectedError("Bundle must be a JSON object")
        if bundle.get("type", "bundle") != "bundle":
            raise BundleRejectedError(f"Expected a bundle, got type {bundle.get('type')!r}")

        objects = bundle.get("objects")
        if not isinstance(objects, list):
            raise BundleRejectedError("Bundle is missing the objects array")
        if not all(isinstance(obj, dict) for obj in objects):
            raise BundleRejectedError("Bundle objects must be JSON objects")

        collections = [obj for obj in objects if obj.get("type") == ObjectType.COLLECTION.value]
        if not collections:
            raise BundleRejectedError(
                "Missing x-mitre-collection object",
                bundle_errors=BundleErrors(no_collection=True),
            )
        if len(collections) > 1:
            raise BundleRejectedError(
                "Only one x-mitre-collection object allowed",
                bundle_errors=BundleErrors(more_than_one_collection=True),
            )

        collection = collections[0]
        contents = collection.get("x_mitre_contents")
        if (
            make_key_from_object(collection) is None
            or not isinstance(contents, list)
            or not all(isinstance(entry, dict) for entry in contents)
        ):
            raise BundleRejectedError(
                "Badly formatted collection object",
                bundle_errors=BundleErrors(badly_formatted_collection=True),
            )
        return collection

    def validate(self, bundle: Any) -> ValidationResult:
        """Run the structural check, then collect per-object findings.

        Duplicate identities within the bundle are flagged on every
        occurrence after the first. Spec-version problems are recorded but
        not rejected here, since the caller may override them.
        """
        collection = self.check_structure(bundle)
        objects = bundle["objects"]
        result = ValidationResult(collection=collection, objects=objects)

        seen = set()
        for index, stix in enumerate(objects):
            flags = ObjectFlags()
            key = make_key_from_object(stix)

            if key is not None and key in seen:
                flags.duplicate_in_bundle = True
                result.summary.duplicate_object_in_bundle_count += 1
                result.errors.append(_entry(
                    stix,
                    ErrorReason.DUPLICATE_OBJECT_IN_BUNDLE,
                    "Object appears more than once in the bundle",
                ))
                result.flags[index] = flags
                continue
            if key is not None:
                seen.add(key)

            object_type = stix.get("type")
            if not isinstance(object_type, str) or object_type not in SPEC_VERSION_EXEMPT_TYPES:
                declared = stix.get("x_mitre_attack_spec_version")
                if declared is None:
                    flags.missing_spec_version = True
                    result.summary.missing_attack_spec_version_count += 1
                    result.warnings.append(_entry(
                        stix,
                        WarningReason.MISSING_ATTACK_SPEC_VERSION,
                        f"No ATT&CK spec version; assuming {self.default_object_spec_version}",
                    ))
                elif not is_spec_version_compatible(declared, self.system_spec_version):
                    flags.invalid_spec_version = True
                    result.summary.invalid_attack_spec_version_count += 1
                    result.errors.append(_entry(
                        stix,
                        ErrorReason.INVALID_ATTACK_SPEC_VERSION,
                        f"ATT&CK spec version {declared} is invalid or later than "
                        f"system version {self.system_spec_version}",
                    ))

            result.flags[index] = flags

        logger.debug(
            f"Validated bundle with {len(objects)} objects: "
            f"{result.summary.duplicate_object_in_bundle_count} duplicates, "
            f"{result.summary.invalid_attack_spec_version_count} invalid spec versions, "
            f"{result.summary.missing_attack_spec_version_count} missing spec versions"
        )
        return result
