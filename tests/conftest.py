"""Global test fixtures for ThreatVault test suite."""

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

import pytest

from threatvault.store.memory import InMemoryObjectStore


# ==========================================
# Pytest Configuration
# ==========================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


# ==========================================
# STIX object factory
# ==========================================

DEFAULT_MODIFIED = "2024-01-01T00:00:00.000Z"
IDENTITY_ID = "identity--c78cb6e5-0c4b-4611-8297-d1b8b55e40b5"
MARKING_ID = "marking-definition--fa42a846-8d90-4e51-bc29-71d5b4802168"


class StixFactory:
    """Builds minimal ATT&CK-flavoured STIX objects and bundles."""

    IDENTITY_ID = IDENTITY_ID
    MARKING_ID = MARKING_ID

    def __init__(self):
        self._counter = 0

    def revise(self, stix: Dict[str, Any], modified: str, **changes) -> Dict[str, Any]:
        """Return a new revision of ``stix`` with a later modified timestamp."""
        revision = copy.deepcopy(stix)
        revision["modified"] = modified
        revision.update(changes)
        return revision

    def _next_attack_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{1000 + self._counter}"

    def _base(self, stix_type: str, name: str, modified: str, stix_id: Optional[str], **extra) -> Dict[str, Any]:
        stix = {
            "type": stix_type,
            "id": stix_id or f"{stix_type}--{uuid.uuid4()}",
            "spec_version": "2.1",
            "created": "2023-01-01T00:00:00.000Z",
            "modified": modified,
            "name": name,
            "created_by_ref": IDENTITY_ID,
            "object_marking_refs": [MARKING_ID],
            "x_mitre_attack_spec_version": "3.2.0",
            "x_mitre_domains": ["enterprise-attack"],
        }
        stix.update(extra)
        return stix

    def technique(self, name="Command Interpreter", modified=DEFAULT_MODIFIED, stix_id=None, **extra):
        attack_id = self._next_attack_id("T")
        return self._base(
            "attack-pattern", name, modified, stix_id,
            external_references=[{"source_name": "mitre-attack", "external_id": attack_id}],
            **extra,
        )

    def group(self, name="APT Example", modified=DEFAULT_MODIFIED, stix_id=None, **extra):
        stix = self._base("intrusion-set", name, modified, stix_id, **extra)
        stix.pop("x_mitre_domains", None)
        return stix

    def data_source(self, name="Process", modified=DEFAULT_MODIFIED, stix_id=None, **extra):
        return self._base("x-mitre-data-source", name, modified, stix_id, **extra)

    def data_component(self, data_source_ref, name="Process Creation", modified=DEFAULT_MODIFIED, stix_id=None, **extra):
        return self._base(
            "x-mitre-data-component", name, modified, stix_id,
            x_mitre_data_source_ref=data_source_ref, **extra,
        )

    def analytic(self, data_component_refs, name="Analytic", modified=DEFAULT_MODIFIED, stix_id=None, **extra):
        return self._base(
            "x-mitre-analytic", name, modified, stix_id,
            x_mitre_log_source_references=[
                {"x_mitre_data_component_ref": ref, "name": "log", "channel": "1"}
                for ref in data_component_refs
            ],
            **extra,
        )

    def detection_strategy(self, analytic_refs, name="Detection", modified=DEFAULT_MODIFIED, stix_id=None, **extra):
        stix = self._base(
            "x-mitre-detection-strategy", name, modified, stix_id,
            x_mitre_analytic_refs=list(analytic_refs), **extra,
        )
        stix.pop("x_mitre_domains", None)
        return stix

    def relationship(self, source_ref, target_ref, relationship_type="uses", modified=DEFAULT_MODIFIED, **extra):
        stix = self._base("relationship", "", modified, None, **extra)
        stix.pop("name")
        stix.pop("x_mitre_domains", None)
        stix.update(source_ref=source_ref, target_ref=target_ref, relationship_type=relationship_type)
        return stix

    def note(self, object_refs, modified=DEFAULT_MODIFIED, **extra):
        stix = self._base("note", "", modified, None, content="Analyst note", object_refs=list(object_refs), **extra)
        stix.pop("name")
        stix.pop("x_mitre_domains", None)
        return stix

    def identity(self, stix_id=IDENTITY_ID, modified=DEFAULT_MODIFIED):
        stix = self._base("identity", "The MITRE Corporation", modified, stix_id, identity_class="organization")
        stix.pop("created_by_ref")
        stix.pop("x_mitre_domains", None)
        return stix

    def marking_definition(self, stix_id=MARKING_ID):
        return {
            "type": "marking-definition",
            "id": stix_id,
            "spec_version": "2.1",
            "created": "2017-06-01T00:00:00.000Z",
            "definition_type": "statement",
            "definition": {"statement": "Copyright MITRE"},
            "created_by_ref": IDENTITY_ID,
        }

    def collection(
        self,
        objects: List[Dict[str, Any]],
        modified=DEFAULT_MODIFIED,
        stix_id=None,
        extra_contents: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        stix = self._base("x-mitre-collection", "Enterprise ATT&CK", modified, stix_id)
        stix.pop("x_mitre_domains", None)
        stix["x_mitre_version"] = "1.0"
        stix["x_mitre_contents"] = [
            {"object_ref": obj["id"], "object_modified": obj.get("modified") or obj.get("created")}
            for obj in objects
        ] + list(extra_contents or [])
        return stix

    def bundle(self, objects: List[Dict[str, Any]], collection: Optional[Dict[str, Any]] = None, **collection_kwargs):
        """Bundle ``objects`` with a collection (built from them unless given)."""
        if collection is None:
            collection = self.collection(objects, **collection_kwargs)
        return {
            "type": "bundle",
            "id": f"bundle--{uuid.uuid4()}",
            "spec_version": "2.1",
            "objects": [collection] + list(objects),
        }


@pytest.fixture
def stix():
    """Provide a STIX object factory."""
    return StixFactory()


# ==========================================
# Stores
# ==========================================

@pytest.fixture
async def store():
    """Provide an opened in-memory object store."""
    object_store = InMemoryObjectStore()
    await object_store.open()
    yield object_store
    await object_store.close()


# ==========================================
# Logging
# ==========================================

@pytest.fixture(autouse=True)
def reset_logging():
    """Restore root logger handlers after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
