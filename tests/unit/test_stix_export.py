"""Unit tests for domain-wide STIX bundle export."""

import pytest

from threatvault.bundles.stix_export import StixBundleExporter
from threatvault.core.models import VersionedObject, Workflow, Workspace
from threatvault.core.types import WorkflowState


@pytest.fixture
def exporter(store):
    return StixBundleExporter(store)


async def _store_all(store, *objects, state=None):
    await store.insert_many([
        VersionedObject.from_stix(obj, Workspace(workflow=Workflow(state=state)))
        for obj in objects
    ])


def _ids(bundle):
    return [obj["id"] for obj in bundle["objects"]]


class TestDomainSelection:

    @pytest.mark.asyncio
    async def test_only_requested_domain(self, store, exporter, stix):
        enterprise = stix.technique()
        mobile = stix.technique(x_mitre_domains=["mobile-attack"])
        await _store_all(store, enterprise, mobile)

        bundle = await exporter.export_domain("enterprise-attack")

        assert _ids(bundle) == [enterprise["id"]]

    @pytest.mark.asyncio
    async def test_latest_revision_only(self, store, exporter, stix):
        v1 = stix.technique(modified="2024-01-01T00:00:00.000Z")
        v2 = stix.revise(v1, "2024-04-01T00:00:00.000Z")
        await _store_all(store, v1, v2)

        bundle = await exporter.export_domain("enterprise-attack")

        assert [obj["modified"] for obj in bundle["objects"]] == [v2["modified"]]

    @pytest.mark.asyncio
    async def test_deprecated_and_revoked_need_flags(self, store, exporter, stix):
        active = stix.technique()
        deprecated = stix.technique(x_mitre_deprecated=True)
        revoked = stix.technique(revoked=True)
        await _store_all(store, active, deprecated, revoked)

        default = await exporter.export_domain("enterprise-attack")
        everything = await exporter.export_domain(
            "enterprise-attack", include_deprecated=True, include_revoked=True
        )

        assert _ids(default) == [active["id"]]
        assert set(_ids(everything)) == {active["id"], deprecated["id"], revoked["id"]}

    @pytest.mark.asyncio
    async def test_workflow_state_filter(self, store, exporter, stix):
        reviewed = stix.technique()
        draft = stix.technique()
        await _store_all(store, reviewed, state=WorkflowState.REVIEWED)
        await _store_all(store, draft, state=WorkflowState.WORK_IN_PROGRESS)

        bundle = await exporter.export_domain("enterprise-attack", state="reviewed")

        assert _ids(bundle) == [reviewed["id"]]


class TestRelatedObjects:

    @pytest.mark.asyncio
    async def test_groups_and_detection_strategies_follow_relationships(self, store, exporter, stix):
        technique = stix.technique()
        group = stix.group()
        unrelated_group = stix.group(name="Unrelated")
        strategy = stix.detection_strategy([])
        uses = stix.relationship(group["id"], technique["id"], "uses")
        detects = stix.relationship(strategy["id"], technique["id"], "detects")
        await _store_all(store, technique, group, unrelated_group, strategy, uses, detects)

        bundle = await exporter.export_domain("enterprise-attack")

        ids = _ids(bundle)
        assert {technique["id"], group["id"], strategy["id"], uses["id"], detects["id"]} == set(ids)
        assert unrelated_group["id"] not in ids

    @pytest.mark.asyncio
    async def test_relationships_need_both_ends(self, store, exporter, stix):
        technique = stix.technique()
        mobile = stix.technique(x_mitre_domains=["mobile-attack"])
        cross_domain = stix.relationship(technique["id"], mobile["id"], "subtechnique-of")
        await _store_all(store, technique, mobile, cross_domain)

        bundle = await exporter.export_domain("enterprise-attack")

        assert _ids(bundle) == [technique["id"]]

    @pytest.mark.asyncio
    async def test_data_component_detections_are_excluded(self, store, exporter, stix):
        technique = stix.technique()
        source = stix.data_source()
        component = stix.data_component(source["id"])
        detects = stix.relationship(component["id"], technique["id"], "detects")
        await _store_all(store, technique, source, component, detects)

        bundle = await exporter.export_domain("enterprise-attack")

        assert detects["id"] not in _ids(bundle)
        assert component["id"] in _ids(bundle)

    @pytest.mark.asyncio
    async def test_revoked_related_group_is_excluded(self, store, exporter, stix):
        technique = stix.technique()
        group = stix.group(revoked=True)
        uses = stix.relationship(group["id"], technique["id"], "uses")
        await _store_all(store, technique, group, uses)

        bundle = await exporter.export_domain("enterprise-attack")

        assert _ids(bundle) == [technique["id"]]

    @pytest.mark.asyncio
    async def test_related_group_in_other_workflow_state_is_excluded(self, store, exporter, stix):
        technique = stix.technique()
        reviewed_group = stix.group(name="Reviewed")
        draft_group = stix.group(name="Draft")
        reviewed_uses = stix.relationship(reviewed_group["id"], technique["id"], "uses")
        draft_uses = stix.relationship(draft_group["id"], technique["id"], "uses")
        await _store_all(store, technique, reviewed_group, reviewed_uses, draft_uses, state=WorkflowState.REVIEWED)
        await _store_all(store, draft_group, state=WorkflowState.WORK_IN_PROGRESS)

        reviewed = await exporter.export_domain("enterprise-attack", state="reviewed")
        unfiltered = await exporter.export_domain("enterprise-attack")

        assert set(_ids(reviewed)) == {technique["id"], reviewed_group["id"], reviewed_uses["id"]}
        assert draft_group["id"] in _ids(unfiltered)

    @pytest.mark.asyncio
    async def test_notes_and_companions(self, store, exporter, stix):
        technique = stix.technique()
        note = stix.note([technique["id"]])
        await _store_all(store, technique, note, stix.identity(), stix.marking_definition())

        without_notes = await exporter.export_domain("enterprise-attack")
        with_notes = await exporter.export_domain("enterprise-attack", include_notes=True)

        assert _ids(without_notes) == [technique["id"], stix.IDENTITY_ID, stix.MARKING_ID]
        assert _ids(with_notes) == [technique["id"], note["id"], stix.IDENTITY_ID, stix.MARKING_ID]
