"""Integration tests for the PostgreSQL object store.

Requires a running PostgreSQL instance reachable through DATABASE_URL; the
tests are skipped otherwise. The vault.stix_objects table is emptied after
each test, so point DATABASE_URL at a disposable database.
"""

import os

import pytest

# Skip all tests if asyncpg not available
asyncpg = pytest.importorskip("asyncpg")

from threatvault.bundles import BundleExporter, ImportCoordinator
from threatvault.core.exceptions import DuplicateVersionError
from threatvault.core.models import VersionedObject, Workflow, Workspace
from threatvault.core.stix import make_key
from threatvault.core.types import WorkflowState
from threatvault.store.postgres import PostgresObjectStore

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not os.getenv("DATABASE_URL"), reason="DATABASE_URL not set"),
]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
async def pg_store():
    """Create and initialize a store for testing."""
    store = await PostgresObjectStore.create(os.getenv("DATABASE_URL"), min_connections=1, max_connections=4)
    try:
        yield store
    finally:
        async with store._acquire() as conn:
            await conn.execute("DELETE FROM vault.stix_objects WHERE TRUE")
            await conn.execute("DELETE FROM vault.citation_references WHERE TRUE")
        await store.close()


# =============================================================================
# Store Tests
# =============================================================================

class TestPostgresObjectStore:

    @pytest.mark.asyncio
    async def test_insert_and_retrieve(self, pg_store, stix):
        v1 = stix.technique(modified="2024-01-01T00:00:00.000Z")
        v2 = stix.revise(v1, "2024-02-01T00:00:00.000Z", name="Renamed")
        await pg_store.insert_many([VersionedObject.from_stix(v1), VersionedObject.from_stix(v2)])

        versions = await pg_store.retrieve_versions(v1["id"])

        assert [v.stix["name"] for v in versions] == ["Renamed", v1["name"]]
        assert versions[0].attack_id == VersionedObject.from_stix(v1).attack_id

    @pytest.mark.asyncio
    async def test_duplicate_version_rolls_back_batch(self, pg_store, stix):
        existing = stix.technique()
        await pg_store.insert(VersionedObject.from_stix(existing))
        fresh = stix.technique()

        with pytest.raises(DuplicateVersionError):
            await pg_store.insert_many([VersionedObject.from_stix(fresh), VersionedObject.from_stix(existing)])

        assert await pg_store.retrieve_versions(fresh["id"]) == []

    @pytest.mark.asyncio
    async def test_references_commit_with_the_batch(self, pg_store, stix):
        existing = stix.technique()
        await pg_store.insert(VersionedObject.from_stix(existing))
        reference = {"source_name": "Smith 2020", "description": "Smith (2020)."}

        with pytest.raises(DuplicateVersionError):
            await pg_store.insert_many([VersionedObject.from_stix(existing)], references=[reference])
        assert await pg_store.retrieve_references(["Smith 2020"]) == {}

        await pg_store.insert_many([VersionedObject.from_stix(stix.technique())], references=[reference])
        await pg_store.insert_many([], references=[{**reference, "description": "Revised"}])

        stored = await pg_store.retrieve_references(["Smith 2020"])
        assert stored["Smith 2020"]["description"] == "Revised"

    @pytest.mark.asyncio
    async def test_retrieve_by_attack_id(self, pg_store, stix):
        v1 = stix.technique(modified="2024-01-01T00:00:00.000Z")
        v2 = stix.revise(v1, "2024-02-01T00:00:00.000Z", name="Renamed")
        await pg_store.insert_many([VersionedObject.from_stix(v1), VersionedObject.from_stix(v2)])

        found = await pg_store.retrieve_by_attack_id(v1["external_references"][0]["external_id"])

        assert found.stix["name"] == "Renamed"
        assert await pg_store.retrieve_by_attack_id("T9999") is None

    @pytest.mark.asyncio
    async def test_retrieve_version_by_instant(self, pg_store, stix):
        technique = stix.technique(modified="2024-01-01T00:00:00.000Z")
        await pg_store.insert(VersionedObject.from_stix(technique))

        assert await pg_store.retrieve_version(technique["id"], "2024-01-01T00:00:00Z") is not None
        assert await pg_store.retrieve_version(technique["id"], "2024-01-02T00:00:00Z") is None

    @pytest.mark.asyncio
    async def test_bulk_lookup(self, pg_store, stix):
        first, second = stix.technique(), stix.group()
        await pg_store.insert_many([VersionedObject.from_stix(first), VersionedObject.from_stix(second)])

        found = await pg_store.retrieve_versions_bulk([
            (first["id"], first["modified"]),
            ("attack-pattern--missing", "2024-01-01T00:00:00Z"),
        ])

        assert list(found) == [make_key(first["id"], first["modified"])]

    @pytest.mark.asyncio
    async def test_update_workspace(self, pg_store, stix):
        technique = stix.technique()
        await pg_store.insert(VersionedObject.from_stix(technique))

        updated = await pg_store.update_workspace(
            technique["id"], technique["modified"], Workspace(workflow=Workflow(state=WorkflowState.REVIEWED))
        )

        assert updated
        assert (await pg_store.find(state="reviewed"))[0].stix_id == technique["id"]
        assert not await pg_store.update_workspace("attack-pattern--missing", technique["modified"], Workspace())

    @pytest.mark.asyncio
    async def test_find_latest_with_filters(self, pg_store, stix):
        v1 = stix.technique(modified="2024-01-01T00:00:00.000Z")
        v2 = stix.revise(v1, "2024-02-01T00:00:00.000Z", x_mitre_deprecated=True)
        other = stix.technique(x_mitre_domains=["ics-attack"])
        await pg_store.insert_many([VersionedObject.from_stix(o) for o in (v1, v2, other)])

        assert len(await pg_store.find("attack-pattern")) == 2
        assert len(await pg_store.find("attack-pattern", latest_only=False)) == 3
        assert [o.stix_id for o in await pg_store.find("attack-pattern", include_deprecated=False)] == [other["id"]]
        assert [o.stix_id for o in await pg_store.find(domain="ics-attack")] == [other["id"]]


class TestPostgresImportExport:

    @pytest.mark.asyncio
    async def test_import_then_export(self, pg_store, stix):
        source = stix.data_source()
        component = stix.data_component(source["id"])
        bundle = stix.bundle([source, component])
        collection_id = bundle["objects"][0]["id"]

        result = await ImportCoordinator(pg_store).import_bundle(bundle)
        exported = await BundleExporter(pg_store).export_collection(collection_id)

        assert result.categories.additions == [source["id"], component["id"]]
        assert [obj["id"] for obj in exported["objects"]] == [collection_id, source["id"], component["id"]]
        stored_source = await pg_store.retrieve_latest(source["id"])
        assert [r.stix_id for r in stored_source.workspace.embedded_relationships] == [component["id"]]
        stored_collection = await pg_store.retrieve_latest(collection_id)
        assert len(stored_collection.workspace.exported) == 1
