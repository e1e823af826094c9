"""Collection bundle import/export pipeline."""

from .classifier import Classification, ObjectClassifier
from .enrichment import add_derived_data_sources, convert_link_by_id
from .exporter import BundleExporter
from .importer import ImportCoordinator
from .references import ReferenceScan, collect_references
from .relationships import EmbeddedRelationshipHook
from .resolver import CollectionContentResolver, ResolvedContentSet
from .stix_export import StixBundleExporter
from .streaming import ImportProgressStreamer, ProgressEvent, to_sse
from .validator import BundleValidator, ObjectFlags, ValidationResult

__all__ = [
    "BundleExporter",
    "BundleValidator",
    "Classification",
    "CollectionContentResolver",
    "EmbeddedRelationshipHook",
    "ImportCoordinator",
    "ImportProgressStreamer",
    "ObjectClassifier",
    "ObjectFlags",
    "ProgressEvent",
    "ReferenceScan",
    "ResolvedContentSet",
    "StixBundleExporter",
    "ValidationResult",
    "add_derived_data_sources",
    "collect_references",
    "convert_link_by_id",
    "to_sse",
]
