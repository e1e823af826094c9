"""Integration tests for the ThreatVault REST API."""

import json

import pytest
from fastapi.testclient import TestClient

from threatvault.api.main import create_app
from threatvault.config.loader import ThreatVaultConfig
from threatvault.store.memory import InMemoryObjectStore

BUNDLES = "/api/collection-bundles"


@pytest.fixture
def client():
    app = create_app(ThreatVaultConfig(), store=InMemoryObjectStore())
    with TestClient(app) as test_client:
        yield test_client


def _parse_sse(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class TestService:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "ThreatVault API"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["store"] == "healthy"

    def test_metrics(self, client, stix):
        client.post(BUNDLES, json=stix.bundle([stix.technique()]))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "threatvault_bundle_imports_total" in response.text


class TestImportEndpoint:

    def test_import_returns_created_collection(self, client, stix):
        technique = stix.technique()
        bundle = stix.bundle([technique])

        response = client.post(BUNDLES, json=bundle)

        assert response.status_code == 201
        body = response.json()
        assert body["stix"]["id"] == bundle["objects"][0]["id"]
        assert body["workspace"]["import_categories"]["additions"] == [technique["id"]]

    def test_duplicate_collection(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        client.post(BUNDLES, json=bundle)

        response = client.post(BUNDLES, json=bundle)

        assert response.status_code == 400
        body = response.json()
        assert body["bundleErrors"]["duplicateCollection"] is True
        assert body["status_code"] == 400

    def test_forced_duplicate_collection(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        client.post(BUNDLES, json=bundle)

        response = client.post(BUNDLES, params={"forceImport": "duplicate-collection"}, json=bundle)

        assert response.status_code == 201
        assert len(response.json()["workspace"]["reimports"]) == 1

    def test_unknown_force_value(self, client, stix):
        response = client.post(BUNDLES, params={"forceImport": "everything"}, json=stix.bundle([stix.technique()]))

        assert response.status_code == 400
        assert "everything" in response.json()["error"]

    def test_duplicate_objects_in_bundle(self, client, stix):
        technique = stix.technique()

        response = client.post(BUNDLES, json=stix.bundle([technique, technique]))

        assert response.status_code == 400
        assert response.json()["objectErrors"]["summary"]["duplicateObjectInBundleCount"] == 1

    def test_no_collection(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        bundle["objects"] = bundle["objects"][1:]

        response = client.post(BUNDLES, json=bundle)

        assert response.status_code == 400
        assert response.json()["bundleErrors"]["noCollection"] is True

    def test_empty_body(self, client):
        response = client.post(BUNDLES, content=b"")

        assert response.status_code == 400
        assert response.json()["error"] == "Request body is empty"

    def test_invalid_json(self, client):
        response = client.post(BUNDLES, content=b"{nope", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid JSON")

    def test_body_that_is_not_utf8(self, client):
        response = client.post(BUNDLES, content=b'{"objects": "\xff\xfe"}', headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid JSON")

    def test_malformed_object_identity_is_reported(self, client, stix):
        technique = stix.technique()
        malformed = stix.group()
        malformed["type"] = ["intrusion-set"]

        response = client.post(BUNDLES, json=stix.bundle([technique, malformed]))

        assert response.status_code == 201
        categories = response.json()["workspace"]["import_categories"]
        assert categories["additions"] == [technique["id"]]
        assert [e["error_type"] for e in categories["errors"]] == ["unknown-object-type"]

    def test_check_only_writes_nothing(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        collection_id = bundle["objects"][0]["id"]

        first = client.post(BUNDLES, params={"checkOnly": "true"}, json=bundle)
        second = client.post(BUNDLES, params={"checkOnly": "true"}, json=bundle)

        assert first.status_code == 201
        assert first.json()["workspace"]["import_categories"] == second.json()["workspace"]["import_categories"]
        assert client.get(f"/api/collections/{collection_id}").status_code == 404


class TestStreamingImport:

    def test_stream_headers_and_terminal_event(self, client, stix):
        objects = [stix.technique(), stix.group()]

        response = client.post(BUNDLES, params={"stream": "true"}, json=stix.bundle(objects))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = _parse_sse(response.text)
        assert [name for name, _ in events].count("complete") == 1
        assert events[-1][0] == "complete"
        assert len(events[-1][1]["categories"]["additions"]) == 2
        classifying = [data for name, data in events if data.get("phase") == "classifying"]
        assert len(classifying) == 2

    def test_stream_rejection_is_an_error_event(self, client, stix):
        technique = stix.technique()

        response = client.post(BUNDLES, params={"stream": "true"}, json=stix.bundle([technique, technique]))

        assert response.status_code == 200
        events = _parse_sse(response.text)
        name, data = events[-1]
        assert name == "error"
        assert data["status_code"] == 400
        assert data["objectErrors"]["summary"]["duplicateObjectInBundleCount"] == 1

    def test_stream_empty_body(self, client):
        response = client.post(BUNDLES, params={"stream": "true"}, content=b"")

        assert response.status_code == 200
        assert _parse_sse(response.text) == [("error", {"status_code": 400, "error": "Request body is empty"})]

    def test_stream_body_that_is_not_utf8(self, client):
        response = client.post(BUNDLES, params={"stream": "true"}, content=b'{"objects": "\xff\xfe"}')

        assert response.status_code == 200
        [(name, data)] = _parse_sse(response.text)
        assert name == "error"
        assert data["status_code"] == 400
        assert data["error"].startswith("Invalid JSON")

    def test_stream_unknown_force_value(self, client, stix):
        response = client.post(
            BUNDLES, params={"stream": "true", "forceImport": "everything"}, json=stix.bundle([stix.technique()]),
        )

        assert response.status_code == 200
        [(name, data)] = _parse_sse(response.text)
        assert name == "error"
        assert "everything" in data["error"]


class TestExportEndpoint:

    def test_export_collection(self, client, stix):
        technique = stix.technique()
        bundle = stix.bundle([technique])
        collection_id = bundle["objects"][0]["id"]
        client.post(BUNDLES, json=bundle)

        response = client.get(BUNDLES, params={"collectionId": collection_id})

        assert response.status_code == 200
        ids = [obj["id"] for obj in response.json()["objects"]]
        assert ids == [collection_id, technique["id"]]

        stored = client.get(f"/api/collections/{collection_id}").json()[0]
        assert len(stored["workspace"]["exported"]) == 1

    def test_preview_does_not_record(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        collection_id = bundle["objects"][0]["id"]
        client.post(BUNDLES, json=bundle)

        client.get(BUNDLES, params={"collectionId": collection_id, "previewOnly": "true"})

        stored = client.get(f"/api/collections/{collection_id}").json()[0]
        assert "exported" not in stored["workspace"]

    def test_missing_collection_id(self, client):
        response = client.get(BUNDLES)
        assert response.status_code == 400
        assert response.json()["error"] == "collectionId is required"

    def test_modified_without_id(self, client):
        response = client.get(BUNDLES, params={"collectionModified": "2024-01-01T00:00:00.000Z"})
        assert response.status_code == 400
        assert response.json()["error"] == "collectionModified requires collectionId"

    def test_unknown_collection(self, client):
        response = client.get(BUNDLES, params={"collectionId": "x-mitre-collection--unknown"})
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_unknown_collection_revision(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        client.post(BUNDLES, json=bundle)

        response = client.get(BUNDLES, params={
            "collectionId": bundle["objects"][0]["id"],
            "collectionModified": "1999-01-01T00:00:00.000Z",
        })

        assert response.status_code == 404


class TestCollectionsEndpoint:

    def test_latest_and_all_versions(self, client, stix):
        technique = stix.technique()
        first = stix.bundle([technique])
        collection = first["objects"][0]
        client.post(BUNDLES, json=first)
        client.post(BUNDLES, json=stix.bundle([technique], collection=stix.revise(collection, "2024-09-01T00:00:00.000Z")))

        latest = client.get(f"/api/collections/{collection['id']}").json()
        every = client.get(f"/api/collections/{collection['id']}", params={"versions": "all"}).json()

        assert [c["stix"]["modified"] for c in latest] == ["2024-09-01T00:00:00.000Z"]
        assert len(every) == 2
        assert every[0]["workspace"]["import_categories"]["duplicates"] == [technique["id"]]

    def test_specific_revision(self, client, stix):
        bundle = stix.bundle([stix.technique()])
        collection = bundle["objects"][0]
        client.post(BUNDLES, json=bundle)

        response = client.get(f"/api/collections/{collection['id']}/modified/{collection['modified']}")

        assert response.status_code == 200
        assert response.json()["stix"]["id"] == collection["id"]

    def test_unknown_collection(self, client):
        assert client.get("/api/collections/x-mitre-collection--unknown").status_code == 404


class TestStixBundlesEndpoint:

    def test_domain_export(self, client, stix):
        enterprise = stix.technique()
        mobile = stix.technique(x_mitre_domains=["mobile-attack"])
        client.post(BUNDLES, json=stix.bundle([enterprise, mobile]))

        response = client.get("/api/stix-bundles", params={"domain": "enterprise-attack"})

        assert response.status_code == 200
        assert [obj["id"] for obj in response.json()["objects"]] == [enterprise["id"]]

    def test_domain_is_required(self, client):
        assert client.get("/api/stix-bundles").status_code == 422
