"""Prometheus metrics for ThreatVault."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


BUNDLE_IMPORTS = Counter(
    "threatvault_bundle_imports_total",
    "Collection bundle import attempts by outcome",
    ["outcome"],
)

IMPORTED_OBJECTS = Counter(
    "threatvault_imported_objects_total",
    "Objects classified during committed imports, by category",
    ["category"],
)

IMPORT_LATENCY = Histogram(
    "threatvault_import_latency_seconds",
    "Collection bundle import latency in seconds",
    ["mode"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)

BUNDLE_EXPORTS = Counter(
    "threatvault_bundle_exports_total",
    "Bundles exported, by kind",
    ["kind"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
