"""Import transaction coordinator for collection bundles.

Runs validation, classification and, unless the caller asked for a dry run,
one atomic write of every accepted revision together with the collection
revision that records what happened. Nothing is written for a rejected
bundle.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from threatvault.core.exceptions import BundleRejectedError, ConcurrencyConflictError, DuplicateCollectionError
from threatvault.core.models import (
    CollectionRef,
    CollectionResult,
    ImportCategories,
    ImportOptions,
    VersionedObject,
    Workspace,
)
from threatvault.core.stix import make_key, make_key_from_object, utc_now, version_timestamp
from threatvault.core.types import ForceImport, ObjectType, WarningReason
from threatvault.metrics import BUNDLE_IMPORTS, IMPORT_LATENCY, IMPORTED_OBJECTS
from threatvault.store.base import ObjectStore

from .classifier import ObjectClassifier
from .references import categorize_references, collect_references, references_to_save
from .relationships import EmbeddedRelationshipHook
from .validator import BundleValidator, ValidationResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[..., Awaitable[None]]

PHASE_VALIDATING = "validating"
PHASE_CLASSIFYING = "classifying"
PHASE_SAVING = "saving"


class ImportCoordinator:
    """Orchestrates validation, classification and conditional persistence.

    Args:
        store: Opened object store
        validator: Bundle validator (defaults to the current ATT&CK spec version)
        classifier: Object classifier bound to the same store
        hooks: Post-commit hooks, each with ``after_commit(store, committed)``
    """

    def __init__(
        self,
        store: ObjectStore,
        validator: Optional[BundleValidator] = None,
        classifier: Optional[ObjectClassifier] = None,
        hooks: Optional[Sequence[Any]] = None,
    ):
        self.store = store
        self.validator = validator or BundleValidator()
        self.classifier = classifier or ObjectClassifier(store)
        self.hooks = list(hooks) if hooks is not None else [EmbeddedRelationshipHook()]

    async def import_bundle(
        self,
        bundle: Any,
        options: Optional[ImportOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> CollectionResult:
        """Import a collection bundle.

        Args:
            bundle: Raw bundle document
            options: checkOnly / previewOnly / forceImport selection
            progress: Awaited as ``progress(phase, processed, total, **detail)``

        Returns:
            CollectionResult for the persisted (or hypothetical) collection

        Raises:
            BundleRejectedError: Structural problems, duplicates within the
                bundle, unforced spec-version violations
            DuplicateCollectionError: Collection already imported and not forced
            ConcurrencyConflictError: Collection changed during the import
            StoreError: Persistence failed; nothing from this call was written
        """
        options = options or ImportOptions()
        mode = "dry_run" if options.dry_run else "commit"
        started = time.monotonic()

        try:
            result = await self._import(bundle, options, progress)
        except BundleRejectedError as e:
            BUNDLE_IMPORTS.labels(outcome="rejected").inc()
            logger.warning(f"Bundle rejected: {e.message}")
            raise
        except Exception:
            BUNDLE_IMPORTS.labels(outcome="failed").inc()
            raise
        finally:
            IMPORT_LATENCY.labels(mode=mode).observe(time.monotonic() - started)

        BUNDLE_IMPORTS.labels(outcome=mode).inc()
        return result

    async def _import(self, bundle, options: ImportOptions, progress) -> CollectionResult:
        await _report(progress, PHASE_VALIDATING, 0, 0)
        validation = self.validator.validate(bundle)
        self._reject_invalid(validation, options)

        collection = validation.collection
        collection_id = collection["id"]
        collection_modified = version_timestamp(collection)

        existing = await self.store.retrieve_version(collection_id, collection_modified)
        reimport = existing is not None
        if reimport and not options.forces(ForceImport.DUPLICATE_COLLECTION):
            raise DuplicateCollectionError(collection_id, collection_modified)

        baseline = await self.store.retrieve_latest(collection_id)

        total = sum(1 for obj in validation.objects if obj.get("type") != ObjectType.COLLECTION.value)
        processed = 0

        async def on_classified(index, stix, category):
            nonlocal processed
            processed += 1
            await _report(
                progress, PHASE_CLASSIFYING, processed, total,
                object_ref=stix.get("id"), category=category,
            )

        classification = await self.classifier.classify(
            validation.objects,
            flags=validation.flags,
            force_import=options.force_import,
            on_classified=on_classified,
        )
        categories = classification.categories
        categories.summary = validation.summary
        categories.warnings.extend(validation.warnings)
        if reimport:
            categories.add_warning(
                collection_id, collection_modified, WarningReason.DUPLICATE_COLLECTION,
                "Collection already imported; re-imported because forceImport was set",
            )
        self._reconcile_contents(collection, validation.objects, categories)

        scan = collect_references(obj.stix for obj in classification.accepted)
        references = await categorize_references(self.store, scan.references)
        logger.debug(
            f"Found {scan.unique} citations ({scan.repeated} repeated, {scan.aliases} aliases): "
            f"{len(references.additions)} new, {len(references.changes)} changed"
        )

        imported_at = utc_now()
        collection_ref = CollectionRef(collection_id, collection_modified)
        for obj in classification.accepted:
            obj.workspace.collections = [collection_ref]

        if reimport:
            target = existing
            target.workspace.reimports.append({
                "imported": imported_at,
                "import_categories": categories.to_dict(),
                "import_references": references.to_dict(),
            })
        else:
            target = VersionedObject.from_stix(
                collection,
                Workspace(imported=imported_at, import_categories=categories, import_references=references),
            )

        if options.dry_run:
            logger.info(
                f"Checked collection {collection_id} ({collection_modified}): "
                f"{_describe(categories)}"
            )
            return CollectionResult(
                collection=target, categories=categories, committed=False, reimport=reimport, references=references,
            )

        await _report(progress, PHASE_SAVING, 0, len(classification.accepted) + 1)
        await self._commit(
            target, classification.accepted, references_to_save(scan.references, references), baseline, reimport,
        )
        await _report(progress, PHASE_SAVING, len(classification.accepted) + 1, len(classification.accepted) + 1)

        for category, bucket in (
            ("additions", categories.additions),
            ("changes", categories.changes),
            ("duplicates", categories.duplicates),
            ("errors", categories.errors),
        ):
            IMPORTED_OBJECTS.labels(category=category).inc(len(bucket))

        logger.info(
            f"Imported collection {collection_id} ({collection_modified}): {_describe(categories)}"
        )
        return CollectionResult(
            collection=target, categories=categories, committed=True, reimport=reimport, references=references,
        )

    def _reject_invalid(self, validation: ValidationResult, options: ImportOptions) -> None:
        summary = validation.summary
        if summary.duplicate_object_in_bundle_count > 0:
            raise BundleRejectedError(
                "Duplicate objects in bundle",
                object_errors=summary,
                errors=validation.errors,
            )
        if summary.invalid_attack_spec_version_count > 0 and not options.forces(
            ForceImport.ATTACK_SPEC_VERSION_VIOLATIONS
        ):
            raise BundleRejectedError(
                "ATT&CK spec version violations",
                object_errors=summary,
                errors=validation.errors,
            )

    def _reconcile_contents(
        self,
        collection: Dict[str, Any],
        objects: List[Dict[str, Any]],
        categories: ImportCategories,
    ) -> None:
        """Warn about objects outside x_mitre_contents and contents entries absent from the bundle."""
        contents = {}
        for entry in collection.get("x_mitre_contents", []):
            key = make_key(entry.get("object_ref"), entry.get("object_modified"))
            if key is not None:
                contents[key] = entry

        bundle_keys = set()
        for stix in objects:
            if stix.get("type") == ObjectType.COLLECTION.value:
                continue
            key = make_key_from_object(stix)
            if key is None:
                continue
            bundle_keys.add(key)
            if key not in contents:
                categories.add_warning(
                    stix.get("id"), version_timestamp(stix), WarningReason.NOT_IN_CONTENTS,
                    "Object is not listed in the collection contents",
                )

        for key, entry in contents.items():
            if key not in bundle_keys:
                categories.add_warning(
                    entry.get("object_ref"), entry.get("object_modified"), WarningReason.MISSING_OBJECT,
                    "Collection contents reference an object that is not in the bundle",
                )

    async def _commit(
        self,
        target: VersionedObject,
        accepted: List[VersionedObject],
        references: List[Dict[str, Any]],
        baseline: Optional[VersionedObject],
        reimport: bool,
    ) -> None:
        latest = await self.store.retrieve_latest(target.stix_id)
        if (latest.key if latest else None) != (baseline.key if baseline else None):
            raise ConcurrencyConflictError(
                target.stix_id,
                baseline.modified if baseline else None,
                latest.modified if latest else None,
            )

        if reimport:
            await self.store.insert_many(accepted, references=references)
            await self.store.update_workspace(target.stix_id, target.modified, target.workspace)
            committed = list(accepted)
        else:
            committed = list(accepted) + [target]
            await self.store.insert_many(committed, references=references)

        for hook in self.hooks:
            await hook.after_commit(self.store, committed)


async def _report(progress: Optional[ProgressCallback], phase: str, processed: int, total: int, **detail) -> None:
    if progress is not None:
        await progress(phase, processed, total, **detail)


def _describe(categories: ImportCategories) -> str:
    return (
        f"{len(categories.additions)} additions, {len(categories.changes)} changes, "
        f"{len(categories.duplicates)} duplicates, {len(categories.errors)} errors, "
        f"{len(categories.warnings)} warnings"
    )
