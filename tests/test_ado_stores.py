"""
Tests for the REST-backed work item and pipeline stores.
"""

from typing import Any
from unittest.mock import MagicMock

import pytest

from ado_to_ado_migrator.ado_client import AzureDevOpsClient
from ado_to_ado_migrator.ado_stores import (
    JSON_PATCH,
    AzureDevOpsPipelineStore,
    AzureDevOpsWorkItemStore,
    relationship_from_api,
    relationship_to_api,
)
from ado_to_ado_migrator.exceptions import MigrationError, StoreRejectedError, UnknownRelationshipKindError
from ado_to_ado_migrator.models import DefinitionVersion, Relationship, WorkItem
from ado_to_ado_migrator.pipeline_models import BuildRun, ServiceConnection, TaskGroup

COLLECTION = "https://dev.azure.com/org"
RELATED = "System.LinkTypes.Related"


def _mock_client() -> MagicMock:
    client = MagicMock()
    client.collection_url = COLLECTION
    client.project = "Project"
    client.url.side_effect = lambda path, **_: f"{COLLECTION}/{path}"
    return client


def _work_item_payload(item_id: int, relations: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {
        "id": item_id,
        "fields": {
            "System.TeamProject": "Project",
            "System.WorkItemType": "Bug",
            "System.Title": f"Item {item_id}",
        },
        "relations": relations or [],
    }


def _hyperlink(url: str) -> dict[str, Any]:
    return {"rel": "Hyperlink", "url": url, "attributes": {}}


def _related(item_id: int) -> dict[str, Any]:
    return {"rel": RELATED, "url": f"{COLLECTION}/_apis/wit/workItems/{item_id}", "attributes": {}}


def _attachment(name: str) -> dict[str, Any]:
    return {"rel": "AttachedFile", "url": f"{COLLECTION}/_apis/wit/attachments/{name}", "attributes": {"name": name}}


@pytest.mark.unit
class TestRelationshipConversion:
    def test_hyperlink_from_api(self) -> None:
        relationship = relationship_from_api(
            {"rel": "Hyperlink", "url": "https://example.com", "attributes": {"comment": "docs"}}
        )
        assert relationship == Relationship(kind="hyperlink", address="https://example.com", comment="docs")

    def test_artifact_from_api(self) -> None:
        relationship = relationship_from_api(
            {"rel": "ArtifactLink", "url": "vstfs:///Git/Commit/abc", "attributes": {"name": "Fixed in Commit"}}
        )
        assert relationship.kind == "external_artifact"
        assert relationship.link_type == "Fixed in Commit"

    def test_work_item_links_from_api(self) -> None:
        related = relationship_from_api(_related(7))
        parent = relationship_from_api(
            {"rel": "System.LinkTypes.Hierarchy-Reverse", "url": f"{COLLECTION}/_apis/wit/workItems/3"}
        )

        assert (related.kind, related.related_id, related.link_type) == ("related", "7", RELATED)
        assert parent.kind == "hierarchy"
        assert parent.is_parent_link

    def test_unknown_relation_keeps_rel(self) -> None:
        relationship = relationship_from_api({"rel": "Custom.Unsupported", "url": "https://example.com/other"})
        assert relationship.kind == "Custom.Unsupported"

    def test_to_api(self) -> None:
        client = AzureDevOpsClient(COLLECTION, "Project", None, session=MagicMock())

        assert relationship_to_api(Relationship(kind="hyperlink", address="https://a", comment="c"), client) == {
            "rel": "Hyperlink",
            "url": "https://a",
            "attributes": {"comment": "c"},
        }
        assert relationship_to_api(
            Relationship(kind="external_artifact", address="vstfs:///Build/Build/1", link_type="Build"), client
        ) == {"rel": "ArtifactLink", "url": "vstfs:///Build/Build/1", "attributes": {"name": "Build"}}
        assert relationship_to_api(Relationship(kind="related", related_id="9", link_type=RELATED), client) == {
            "rel": RELATED,
            "url": f"{COLLECTION}/_apis/wit/workItems/9",
            "attributes": {},
        }

    def test_to_api_unknown_kind(self) -> None:
        client = AzureDevOpsClient(COLLECTION, "Project", None, session=MagicMock())
        with pytest.raises(UnknownRelationshipKindError):
            _ = relationship_to_api(Relationship(kind="Custom.Unsupported", address="https://a"), client)


@pytest.mark.unit
class TestWorkItemStore:
    def test_get_entity(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5, [_hyperlink("https://a")])

        item = AzureDevOpsWorkItemStore(client).get_entity("5")

        assert item is not None
        assert (item.id, item.project, item.work_item_type, item.title) == ("5", "Project", "Bug", "Item 5")
        assert item.relationships == [Relationship(kind="hyperlink", address="https://a")]
        client.get_json.assert_called_once_with("_apis/wit/workitems/5", params={"$expand": "relations"})

    def test_attachments_are_not_relationships(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5, [_attachment("log.txt"), _hyperlink("https://a")])

        item = AzureDevOpsWorkItemStore(client).get_entity("5")

        assert item is not None
        assert item.relationships == [Relationship(kind="hyperlink", address="https://a")]

    def test_get_entity_not_found(self) -> None:
        client = _mock_client()
        client.get_json.side_effect = StoreRejectedError("HTTP 404: gone", status_code=404)

        assert AzureDevOpsWorkItemStore(client).get_entity("5") is None

    def test_get_entity_other_rejection_propagates(self) -> None:
        client = _mock_client()
        client.get_json.side_effect = StoreRejectedError("HTTP 401: denied", status_code=401)

        with pytest.raises(StoreRejectedError):
            _ = AzureDevOpsWorkItemStore(client).get_entity("5")

    def test_save_sends_removals_before_additions(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5, [_hyperlink("https://a"), _related(7)])
        client.send_json.return_value = _work_item_payload(5, [_hyperlink("https://a"), _hyperlink("https://b")])
        store = AzureDevOpsWorkItemStore(client)
        item = store.get_entity("5")
        assert item is not None

        store.add_relationship(item, Relationship(kind="hyperlink", address="https://b"))
        store.remove_relationship(item, Relationship(kind="related", related_id="7", link_type=RELATED))
        store.save_entity(item)

        client.send_json.assert_called_once_with(
            "PATCH",
            "_apis/wit/workitems/5",
            [
                {"op": "remove", "path": "/relations/1"},
                {"op": "add", "path": "/relations/-", "value": _hyperlink("https://b")},
            ],
            content_type=JSON_PATCH,
            params={"$expand": "relations"},
        )
        assert [relationship.address for relationship in item.relationships] == ["https://a", "https://b"]

    def test_removal_index_counts_attachments(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5, [_attachment("log.txt"), _related(7)])
        client.send_json.return_value = _work_item_payload(5, [_attachment("log.txt")])
        store = AzureDevOpsWorkItemStore(client)
        item = store.get_entity("5")
        assert item is not None

        store.remove_relationship(item, Relationship(kind="related", related_id="7", link_type=RELATED))
        store.save_entity(item)

        assert client.send_json.call_args.args[2] == [{"op": "remove", "path": "/relations/1"}]
        assert item.relationships == []

    def test_save_field_change(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5)
        client.send_json.return_value = _work_item_payload(5)
        store = AzureDevOpsWorkItemStore(client)
        item = store.get_entity("5")
        assert item is not None

        store.set_field(item, "Custom.ReflectedWorkItemId", "marker")
        store.save_entity(item)

        patch = client.send_json.call_args.args[2]
        assert patch == [{"op": "add", "path": "/fields/Custom.ReflectedWorkItemId", "value": "marker"}]

    def test_save_without_changes_is_a_no_op(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5)
        store = AzureDevOpsWorkItemStore(client)
        item = store.get_entity("5")
        assert item is not None

        store.save_entity(item)

        client.send_json.assert_not_called()

    def test_added_then_removed_relationship_is_not_sent(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5)
        store = AzureDevOpsWorkItemStore(client)
        item = store.get_entity("5")
        assert item is not None
        relationship = Relationship(kind="hyperlink", address="https://b")

        store.add_relationship(item, relationship)
        store.remove_relationship(item, relationship)
        store.save_entity(item)

        client.send_json.assert_not_called()

    def test_save_creates_new_item(self) -> None:
        client = _mock_client()
        client.send_json.return_value = _work_item_payload(11)
        store = AzureDevOpsWorkItemStore(client)
        item = WorkItem(
            id=None, project="Project", collection_url=COLLECTION, work_item_type="User Story", title="Story"
        )

        store.set_field(item, "Custom.ReflectedWorkItemId", "marker")
        store.save_entity(item)

        args, kwargs = client.send_json.call_args
        assert args[:2] == ("POST", "_apis/wit/workitems/$User%20Story")
        assert args[2] == [
            {"op": "add", "path": "/fields/System.Title", "value": "Story"},
            {"op": "add", "path": "/fields/Custom.ReflectedWorkItemId", "value": "marker"},
        ]
        assert kwargs["content_type"] == JSON_PATCH
        assert item.id == "11"

    def test_reset_restores_persisted_state(self) -> None:
        client = _mock_client()
        client.get_json.return_value = _work_item_payload(5, [_hyperlink("https://a")])
        store = AzureDevOpsWorkItemStore(client)
        item = store.get_entity("5")
        assert item is not None

        store.add_relationship(item, Relationship(kind="hyperlink", address="https://b"))
        store.reset_entity(item)
        store.save_entity(item)

        assert item.relationships == [Relationship(kind="hyperlink", address="https://a")]
        client.send_json.assert_not_called()

    def test_fetch_entities(self) -> None:
        client = _mock_client()
        client.send_json.side_effect = [
            {"workItems": [{"id": 1}, {"id": 2}]},
            {"value": [_work_item_payload(1), _work_item_payload(2)]},
        ]

        items = AzureDevOpsWorkItemStore(client).fetch_entities("work_item")

        assert [item.id for item in items] == ["1", "2"]
        wiql_call, batch_call = client.send_json.call_args_list
        assert wiql_call.args[:2] == ("POST", "_apis/wit/wiql")
        assert "[System.TeamProject] = 'Project'" in wiql_call.args[2]["query"]
        assert batch_call.args[1] == "_apis/wit/workitemsbatch"
        assert batch_call.args[2]["ids"] == [1, 2]

    def test_fetch_entities_with_query(self) -> None:
        client = _mock_client()
        client.send_json.side_effect = [{"workItems": []}]

        assert AzureDevOpsWorkItemStore(client).fetch_entities("work_item", "SELECT [System.Id] FROM WorkItems") == []
        client.send_json.assert_called_once_with("POST", "_apis/wit/wiql", {"query": "SELECT [System.Id] FROM WorkItems"})

    def test_fetch_entities_unsupported_kind(self) -> None:
        with pytest.raises(MigrationError):
            _ = AzureDevOpsWorkItemStore(_mock_client()).fetch_entities("build")

    def test_resolve_by_provenance_marker(self) -> None:
        client = _mock_client()
        client.send_json.return_value = {"workItems": [{"id": 12}]}
        client.get_json.return_value = _work_item_payload(12)

        item = AzureDevOpsWorkItemStore(client).resolve_by_provenance_marker("o'rg/Project/_workitems/edit/3", "Target")

        assert item is not None
        assert item.id == "12"
        query = client.send_json.call_args.args[2]["query"]
        assert "[Custom.ReflectedWorkItemId] = 'o''rg/Project/_workitems/edit/3'" in query
        assert "[System.TeamProject] = 'Target'" in query

    def test_resolve_by_provenance_marker_miss(self) -> None:
        client = _mock_client()
        client.send_json.return_value = {"workItems": []}

        assert AzureDevOpsWorkItemStore(client, reflected_field="Custom.Origin").resolve_by_provenance_marker("m") is None
        query = client.send_json.call_args.args[2]["query"]
        assert "[Custom.Origin] = 'm'" in query
        assert "System.TeamProject" not in query
        client.get_json.assert_not_called()

    def test_link_type_ends_are_cached(self) -> None:
        client = _mock_client()
        client.get_all.return_value = [
            {"referenceName": "System.LinkTypes.Related", "attributes": {"usage": "workItemLink"}},
            {"referenceName": "ArtifactLink", "attributes": {"usage": "resourceLink"}},
        ]
        store = AzureDevOpsWorkItemStore(client)

        assert store.link_type_ends() == {"System.LinkTypes.Related"}
        assert store.link_type_ends() == {"System.LinkTypes.Related"}
        client.get_all.assert_called_once_with("_apis/wit/workitemrelationtypes", project_scoped=False)


@pytest.mark.unit
class TestPipelineStore:
    def test_list_definitions_filters_by_name(self) -> None:
        client = _mock_client()
        client.get_all.return_value = [{"id": 1, "name": "Default"}, {"id": 2, "name": "Other"}]

        queues = AzureDevOpsPipelineStore(client).list_definitions("agent_queue", ["Default"])

        assert [(queue.id, queue.name) for queue in queues] == [("1", "Default")]
        client.get_all.assert_called_once_with(
            "_apis/distributedtask/queues", api_version="7.1-preview.1", project_scoped=True, release=False
        )

    def test_build_definitions_are_fetched_by_name_and_id(self) -> None:
        client = _mock_client()
        client.get_all.return_value = [{"id": 3, "name": "CI"}]
        client.get_json.return_value = {"id": 3, "name": "CI", "revision": 4, "queue": {"id": 8}}

        definitions = AzureDevOpsPipelineStore(client).list_definitions("build_definition", ["CI"])

        assert [(definition.id, definition.revision) for definition in definitions] == [("3", 4)]
        client.get_all.assert_called_once_with(
            "_apis/build/definitions", params={"name": "CI"}, api_version="7.1", project_scoped=True, release=False
        )
        client.get_json.assert_called_once_with(
            "_apis/build/definitions/3", api_version="7.1", project_scoped=True, release=False
        )

    def test_release_definitions_use_release_host(self) -> None:
        client = _mock_client()
        client.get_all.return_value = [{"id": 1, "name": "Deploy"}]
        client.get_json.return_value = {"id": 1, "name": "Deploy", "environments": []}

        _ = AzureDevOpsPipelineStore(client).list_definitions("release_definition", ["Deploy"])

        kwargs = client.get_all.call_args.kwargs
        assert kwargs["params"] == {"searchText": "Deploy", "isExactNameMatch": "true"}
        assert kwargs["release"] is True

    def test_create_service_connection_is_organisation_scoped(self) -> None:
        client = _mock_client()
        client.send_json.return_value = {"id": "sc-9", "name": "Azure"}
        connection = ServiceConnection(id="sc-1", name="Azure", raw={"id": "sc-1", "name": "Azure", "createdBy": {}})

        created = AzureDevOpsPipelineStore(client).create_definition(connection)

        assert created.id == "sc-9"
        args, kwargs = client.send_json.call_args
        assert args[:2] == ("POST", "_apis/serviceendpoint/endpoints")
        assert "id" not in args[2]
        assert "createdBy" not in args[2]
        assert kwargs == {"project_scoped": False, "release": False, "api_version": "7.1-preview.4"}

    def test_update_task_group_unwraps_list_response(self) -> None:
        client = _mock_client()
        client.send_json.return_value = {"count": 1, "value": [{"id": "tg-9", "name": "Group", "version": {"major": 2}}]}
        group = TaskGroup(id="tg-1", name="Group", version=DefinitionVersion(2), raw={"id": "tg-1", "name": "Group"})

        updated = AzureDevOpsPipelineStore(client).update_task_group("tg-9", group)

        assert updated.id == "tg-9"
        assert updated.version == DefinitionVersion(2)
        args = client.send_json.call_args.args
        assert args[:2] == ("PUT", "_apis/distributedtask/taskgroups/tg-9")
        assert args[2]["id"] == "tg-9"

    def test_list_builds_only_successful_ones(self) -> None:
        client = _mock_client()
        client.get_all.return_value = [{"id": 1, "buildNumber": "20240101.1", "definition": {"id": 5, "revision": 2}}]

        builds = AzureDevOpsPipelineStore(client).list_builds("5")

        assert [(build.id, build.name, build.definition_revision) for build in builds] == [("1", "20240101.1", 2)]
        client.get_all.assert_called_once_with(
            "_apis/build/builds",
            params={"definitions": "5", "statusFilter": "completed", "resultFilter": "succeeded"},
        )

    def test_queue_build(self) -> None:
        client = _mock_client()
        client.send_json.return_value = {"id": 77, "buildNumber": "20240101.1", "definition": {"id": 5}}

        queued = AzureDevOpsPipelineStore(client).queue_build(BuildRun(id="1", name="20240101.1", definition_id="5"))

        assert (queued.id, queued.name, queued.definition_id) == ("77", "20240101.1", "5")
        assert client.send_json.call_args.args[1] == "_apis/build/builds"

    def test_unsupported_kind(self) -> None:
        with pytest.raises(MigrationError):
            _ = AzureDevOpsPipelineStore(_mock_client()).list_definitions("wiki")
