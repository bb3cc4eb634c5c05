"""Azure DevOps REST implementations of the store protocols."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

from .ado_client import API_VERSION
from .exceptions import MigrationError, StoreRejectedError, UnknownRelationshipKindError
from .models import DEFAULT_REFLECTED_FIELD, HIERARCHY_FORWARD, HIERARCHY_REVERSE, Relationship, WorkItem
from .pipeline_models import DEFINITION_TYPES, BuildArtifact, BuildRun

if TYPE_CHECKING:
    from .ado_client import AzureDevOpsClient
    from .pipeline_models import Definition, TaskGroup

logger: logging.Logger = logging.getLogger(__name__)

JSON_PATCH: Final[str] = "application/json-patch+json"
WORK_ITEM_URL_SEGMENT: Final[str] = "/_apis/wit/workitems/"
# File attachments share the relations list with links
ATTACHMENT_REL: Final[str] = "AttachedFile"
BATCH_SIZE: Final[int] = 200
HTTP_NOT_FOUND: Final[int] = 404

DEFAULT_QUERY: Final[str] = (
    "SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = '{project}' ORDER BY [System.Id]"
)


def _escape_wiql(value: str) -> str:
    return value.replace("'", "''")


def relationship_from_api(relation: dict[str, Any]) -> Relationship:
    """Convert a work item relation payload into a relationship.

    Relations the replicator does not know keep their ``rel`` as kind.
    """
    rel = relation.get("rel") or ""
    url = relation.get("url") or ""
    attributes = relation.get("attributes") or {}
    comment = attributes.get("comment") or ""

    if rel == "Hyperlink":
        return Relationship(kind="hyperlink", address=url, comment=comment)
    if rel == "ArtifactLink":
        return Relationship(kind="external_artifact", address=url, link_type=attributes.get("name") or "", comment=comment)
    if WORK_ITEM_URL_SEGMENT in url.lower():
        return Relationship(
            kind="hierarchy" if rel in (HIERARCHY_FORWARD, HIERARCHY_REVERSE) else "related",
            related_id=url.rstrip("/").rsplit("/", 1)[-1],
            link_type=rel,
            comment=comment,
        )
    return Relationship(kind=rel or "unknown", address=url, comment=comment)


def relationship_to_api(relationship: Relationship, client: AzureDevOpsClient) -> dict[str, Any]:
    """Convert a relationship into a work item relation payload.

    Raises:
        UnknownRelationshipKindError: If the relationship kind has no relation form
    """
    attributes: dict[str, Any] = {"comment": relationship.comment} if relationship.comment else {}
    if relationship.kind == "hyperlink":
        return {"rel": "Hyperlink", "url": relationship.address, "attributes": attributes}
    if relationship.kind == "external_artifact":
        if relationship.link_type:
            attributes["name"] = relationship.link_type
        return {"rel": "ArtifactLink", "url": relationship.address, "attributes": attributes}
    if relationship.kind in ("related", "hierarchy"):
        return {
            "rel": relationship.link_type,
            "url": client.url(f"_apis/wit/workItems/{relationship.related_id}", project_scoped=False),
            "attributes": attributes,
        }
    msg = f"Relationship kind {relationship.kind!r} can't be written to Azure DevOps"
    raise UnknownRelationshipKindError(msg)


def work_item_from_api(payload: dict[str, Any], collection_url: str) -> WorkItem:
    fields = dict(payload.get("fields") or {})
    return WorkItem(
        id=str(payload["id"]),
        project=fields.get("System.TeamProject", ""),
        collection_url=collection_url,
        work_item_type=fields.get("System.WorkItemType", ""),
        title=fields.get("System.Title", ""),
        fields=fields,
        relationships=[
            relationship_from_api(relation)
            for relation in payload.get("relations") or []
            if relation.get("rel") != ATTACHMENT_REL
        ],
    )


def _same_relation(a: Relationship, b: Relationship) -> bool:
    return (a.kind, a.address, a.related_id, a.link_type) == (b.kind, b.address, b.related_id, b.link_type)


class AzureDevOpsWorkItemStore:
    """Work item store backed by the Azure DevOps work item tracking REST API.

    Staged changes are kept per entity and sent as a single JSON Patch document
    on save. The last persisted state of every work item read or written is
    remembered to reset entities after a failed save, together with its full
    relations list (attachments included) to compute indices for removals.
    """

    _client: AzureDevOpsClient
    reflected_field: str
    _persisted: dict[str, WorkItem]
    _relation_slots: dict[str, list[Relationship]]
    _pending: dict[int, tuple[WorkItem, list[tuple[str, Any]]]]
    _link_type_ends: set[str] | None

    def __init__(self, client: AzureDevOpsClient, *, reflected_field: str = DEFAULT_REFLECTED_FIELD) -> None:
        self._client = client
        self.reflected_field = reflected_field
        self._persisted = {}
        self._relation_slots = {}
        self._pending = {}
        self._link_type_ends = None

    def fetch_entities(self, kind: str, query: str | None = None) -> list[WorkItem]:
        """Return the work items matched by a WIQL query (default: every work item of the project)."""
        if kind != "work_item":
            msg = f"Unsupported work item store entity kind: {kind}"
            raise MigrationError(msg)
        wiql = query or DEFAULT_QUERY.format(project=_escape_wiql(self._client.project))
        return self._get_many(self._query_ids(wiql))

    def get_entity(self, entity_id: str) -> WorkItem | None:
        try:
            payload = self._client.get_json(f"_apis/wit/workitems/{entity_id}", params={"$expand": "relations"})
        except StoreRejectedError as e:
            if e.status_code == HTTP_NOT_FOUND:
                return None
            raise
        return self._remember(payload)

    def get_field(self, entity: WorkItem, field_name: str) -> Any:  # noqa: ANN401
        return entity.fields.get(field_name)

    def set_field(self, entity: WorkItem, field_name: str, value: Any) -> None:  # noqa: ANN401
        entity.fields[field_name] = value
        self._operations(entity).append(("field", (field_name, value)))

    def add_relationship(self, entity: WorkItem, relationship: Relationship) -> None:
        entity.relationships.append(relationship)
        self._operations(entity).append(("add", relationship))

    def remove_relationship(self, entity: WorkItem, relationship: Relationship) -> None:
        if relationship in entity.relationships:
            entity.relationships.remove(relationship)
        operations = self._operations(entity)
        if ("add", relationship) in operations:
            operations.remove(("add", relationship))
        else:
            operations.append(("remove", relationship))

    def save_entity(self, entity: WorkItem) -> None:
        _, operations = self._pending.get(id(entity), (entity, []))
        if entity.id is not None and not operations:
            return

        patch = self._build_patch(entity, operations)
        if entity.id is None:
            path = f"_apis/wit/workitems/${quote(entity.work_item_type)}"
            payload = self._client.send_json("POST", path, patch, content_type=JSON_PATCH)
        else:
            payload = self._client.send_json(
                "PATCH",
                f"_apis/wit/workitems/{entity.id}",
                patch,
                content_type=JSON_PATCH,
                params={"$expand": "relations"},
            )

        saved = self._remember(payload)
        self._pending.pop(id(entity), None)
        entity.id = saved.id
        entity.project = saved.project
        entity.fields = copy.deepcopy(saved.fields)
        entity.relationships = copy.deepcopy(saved.relationships)
        logger.debug(f"Saved work item {saved.id} ({len(patch)} change(s))")

    def reset_entity(self, entity: WorkItem) -> None:
        self._pending.pop(id(entity), None)
        snapshot = self._persisted.get(entity.id) if entity.id is not None else None
        if snapshot is None:
            entity.relationships = []
            return
        entity.title = snapshot.title
        entity.fields = copy.deepcopy(snapshot.fields)
        entity.relationships = copy.deepcopy(snapshot.relationships)

    def resolve_by_provenance_marker(self, marker: str, container_scope: str | None = None) -> WorkItem | None:
        clauses = [f"[{self.reflected_field}] = '{_escape_wiql(marker)}'"]
        if container_scope is not None:
            clauses.append(f"[System.TeamProject] = '{_escape_wiql(container_scope)}'")
        ids = self._query_ids(f"SELECT [System.Id] FROM WorkItems WHERE {' AND '.join(clauses)}")
        if not ids:
            return None
        if len(ids) > 1:
            logger.warning(f"{len(ids)} work items carry the marker {marker}, using {ids[0]}")
        return self.get_entity(ids[0])

    def link_type_ends(self) -> set[str]:
        if self._link_type_ends is None:
            relation_types = self._client.get_all("_apis/wit/workitemrelationtypes", project_scoped=False)
            self._link_type_ends = {
                relation_type["referenceName"]
                for relation_type in relation_types
                if (relation_type.get("attributes") or {}).get("usage") == "workItemLink"
            }
        return set(self._link_type_ends)

    def _operations(self, entity: WorkItem) -> list[tuple[str, Any]]:
        return self._pending.setdefault(id(entity), (entity, []))[1]

    def _remember(self, payload: dict[str, Any]) -> WorkItem:
        item = work_item_from_api(payload, self._client.collection_url)
        self._persisted[str(item.id)] = copy.deepcopy(item)
        self._relation_slots[str(item.id)] = [
            relationship_from_api(relation) for relation in payload.get("relations") or []
        ]
        return item

    def _query_ids(self, wiql: str) -> list[str]:
        payload = self._client.send_json("POST", "_apis/wit/wiql", {"query": wiql}) or {}
        return [str(item["id"]) for item in payload.get("workItems", [])]

    def _get_many(self, ids: list[str]) -> list[WorkItem]:
        items: list[WorkItem] = []
        for start in range(0, len(ids), BATCH_SIZE):
            chunk = [int(item_id) for item_id in ids[start : start + BATCH_SIZE]]
            payload = self._client.send_json(
                "POST", "_apis/wit/workitemsbatch", {"ids": chunk, "$expand": "Relations", "errorPolicy": "omit"}
            ) or {}
            items.extend(self._remember(item) for item in payload.get("value", []) if item)
        return items

    def _build_patch(self, entity: WorkItem, operations: list[tuple[str, Any]]) -> list[dict[str, Any]]:
        patch: list[dict[str, Any]] = []
        if entity.id is None:
            fields = {"System.Title": entity.title, **entity.fields}
            patch.extend({"op": "add", "path": f"/fields/{name}", "value": value} for name, value in fields.items())

        # Relation indices refer to the persisted list, so removals go first, highest index first
        persisted = self._relation_slots.get(entity.id, []) if entity.id is not None else []
        indices = sorted(
            {
                index
                for operation, relationship in operations
                if operation == "remove"
                for index, existing in enumerate(persisted)
                if _same_relation(existing, relationship)
            },
            reverse=True,
        )
        patch.extend({"op": "remove", "path": f"/relations/{index}"} for index in indices)

        for operation, payload in operations:
            if operation == "field" and entity.id is not None:
                name, value = payload
                patch.append({"op": "add", "path": f"/fields/{name}", "value": value})
            elif operation == "add":
                patch.append({"op": "add", "path": "/relations/-", "value": relationship_to_api(payload, self._client)})
        return patch


@dataclass(frozen=True)
class Endpoint:
    """REST location of one pipeline entity kind."""

    path: str
    project_scoped: bool = True
    release: bool = False
    api_version: str = API_VERSION
    # List responses are shallow and every entity must be fetched by id
    detailed: bool = False
    create_project_scoped: bool | None = None


ENDPOINTS: Final[dict[str, Endpoint]] = {
    "task_definition": Endpoint("_apis/distributedtask/tasks", project_scoped=False),
    "project": Endpoint("_apis/projects", project_scoped=False),
    "repository": Endpoint("_apis/git/repositories"),
    "agent_queue": Endpoint("_apis/distributedtask/queues", api_version="7.1-preview.1"),
    "deployment_group": Endpoint("_apis/distributedtask/deploymentgroups", api_version="7.1-preview.1"),
    "agent_pool": Endpoint("_apis/distributedtask/pools", project_scoped=False),
    "service_connection": Endpoint(
        "_apis/serviceendpoint/endpoints", api_version="7.1-preview.4", create_project_scoped=False
    ),
    "variable_group": Endpoint(
        "_apis/distributedtask/variablegroups", api_version="7.1-preview.2", create_project_scoped=False
    ),
    "task_group": Endpoint("_apis/distributedtask/taskgroups", api_version="7.1-preview.1"),
    "build_definition": Endpoint("_apis/build/definitions", detailed=True),
    "release_definition": Endpoint("_apis/release/definitions", release=True, detailed=True),
}


class AzureDevOpsPipelineStore:
    """Pipeline store backed by the build, release and distributed task REST APIs."""

    _client: AzureDevOpsClient

    def __init__(self, client: AzureDevOpsClient) -> None:
        self._client = client

    def list_definitions(self, kind: str, names: list[str] | None = None) -> list[Definition]:
        endpoint = self._endpoint(kind)
        options = {"project_scoped": endpoint.project_scoped, "release": endpoint.release}

        if names and kind == "build_definition":
            items = [
                item
                for name in names
                for item in self._client.get_all(
                    endpoint.path, params={"name": name}, api_version=endpoint.api_version, **options
                )
            ]
        elif names and kind == "release_definition":
            items = [
                item
                for name in names
                for item in self._client.get_all(
                    endpoint.path,
                    params={"searchText": name, "isExactNameMatch": "true"},
                    api_version=endpoint.api_version,
                    **options,
                )
            ]
        else:
            items = self._client.get_all(endpoint.path, api_version=endpoint.api_version, **options)

        if endpoint.detailed:
            items = [
                self._client.get_json(f"{endpoint.path}/{item['id']}", api_version=endpoint.api_version, **options)
                for item in items
            ]

        definition_type = DEFINITION_TYPES[kind]
        definitions = [definition_type.from_api(item) for item in items if item]
        if names:
            definitions = [definition for definition in definitions if definition.name in names]
        logger.debug(f"Fetched {len(definitions)} {kind}(s) from {self._client.collection_url}/{self._client.project}")
        return definitions

    def create_definition(self, definition: Definition) -> Definition:
        endpoint = self._endpoint(definition.kind)
        project_scoped = (
            endpoint.project_scoped if endpoint.create_project_scoped is None else endpoint.create_project_scoped
        )
        payload = self._client.send_json(
            "POST",
            endpoint.path,
            definition.to_api(),
            project_scoped=project_scoped,
            release=endpoint.release,
            api_version=endpoint.api_version,
        )
        return type(definition).from_api(payload)

    def update_task_group(self, target_id: str, task_group: TaskGroup) -> TaskGroup:
        endpoint = self._endpoint(task_group.kind)
        body = task_group.to_api(include_id=True)
        body["id"] = target_id
        payload = self._client.send_json(
            "PUT", f"{endpoint.path}/{target_id}", body, api_version=endpoint.api_version
        )
        # The service answers with a list holding the updated group
        if isinstance(payload, dict) and "value" in payload:
            payload = payload["value"][0]
        return type(task_group).from_api(payload)

    def list_builds(self, definition_id: str) -> list[BuildRun]:
        items = self._client.get_all(
            "_apis/build/builds",
            params={"definitions": definition_id, "statusFilter": "completed", "resultFilter": "succeeded"},
        )
        return [BuildRun.from_api(item) for item in items]

    def list_build_artifacts(self, build_id: str) -> list[BuildArtifact]:
        return [BuildArtifact.from_api(item) for item in self._client.get_all(f"_apis/build/builds/{build_id}/artifacts")]

    def queue_build(self, build: BuildRun) -> BuildRun:
        return BuildRun.from_api(self._client.send_json("POST", "_apis/build/builds", build.to_api()))

    @staticmethod
    def _endpoint(kind: str) -> Endpoint:
        endpoint = ENDPOINTS.get(kind)
        if endpoint is None:
            msg = f"Unsupported pipeline entity kind: {kind}"
            raise MigrationError(msg)
        return endpoint
