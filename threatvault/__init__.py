"""ThreatVault: versioned ATT&CK/STIX object vault.

Stores STIX 2.1 objects as append-only revisions and exchanges them with
other parties as collection bundles, classifying every incoming object as
an addition, change, duplicate or error before anything is written.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from threatvault.bundles import BundleExporter, ImportCoordinator, ImportProgressStreamer
from threatvault.config.loader import ConfigurationLoader
from threatvault.store import InMemoryObjectStore, PostgresObjectStore

__all__ = [
    "__version__",
    "__license__",
    "BundleExporter",
    "ImportCoordinator",
    "ImportProgressStreamer",
    "ConfigurationLoader",
    "InMemoryObjectStore",
    "PostgresObjectStore",
]
