"""Protocols defining the contracts for source and target stores.

The migration architecture separates concerns into three components:

1. Stores: read and write entities in one Azure DevOps project (REST API,
   or an in-memory fake in tests)
2. Engine components: identity resolution, mapping tables, relationship
   replication, filtering and reference rewriting
3. Orchestrator: runs the link pass and the dependency-ordered pipeline phases

This separation allows:
- Testing every engine component against in-memory stores
- Keeping transport concerns (HTTP, authentication, paging) out of the engine
- Using the same store type for the source and the target side
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import Relationship, WorkItem
    from .pipeline_models import BuildArtifact, BuildRun, Definition, TaskGroup


class WorkItemStore(Protocol):
    """Protocol for reading and writing work items and their relationships.

    Relationship changes are staged on the entity by ``add_relationship`` and
    ``remove_relationship`` and only reach the store on ``save_entity``.
    ``reset_entity`` discards everything staged since the last save.

    Failure contract for ``save_entity``:
        - StoreRejectedError: the store refused the write. The subclass
          RelationshipValidationError signals a rejected relationship; the flag
          ``resource_type_unsupported`` signals an artifact type the store
          cannot represent.
        - StoreUnavailableError: the store could not be reached.
        - TransientStoreError: an unexpected one-off failure of this write.
    """

    def fetch_entities(self, kind: str, query: str | None = None) -> list[WorkItem]:
        """Return all entities of ``kind`` matching the optional store-specific query."""
        ...

    def get_entity(self, entity_id: str) -> WorkItem | None:
        """Return the entity with the given id, or None if it does not exist."""
        ...

    def get_field(self, entity: WorkItem, field_name: str) -> Any:  # noqa: ANN401 - field bag values are untyped
        """Return the value of a field, or None if the entity does not carry it."""
        ...

    def set_field(self, entity: WorkItem, field_name: str, value: Any) -> None:  # noqa: ANN401
        """Stage a field change on the entity."""
        ...

    def add_relationship(self, entity: WorkItem, relationship: Relationship) -> None:
        """Stage a new relationship on the entity."""
        ...

    def remove_relationship(self, entity: WorkItem, relationship: Relationship) -> None:
        """Stage the removal of an existing relationship from the entity."""
        ...

    def save_entity(self, entity: WorkItem) -> None:
        """Persist all staged changes of the entity (assigning an id if new)."""
        ...

    def reset_entity(self, entity: WorkItem) -> None:
        """Discard staged changes, restoring the last persisted state."""
        ...

    def resolve_by_provenance_marker(self, marker: str, container_scope: str | None = None) -> WorkItem | None:
        """Find the entity whose provenance field equals ``marker``.

        Args:
            marker: Formatted reflected identity
            container_scope: Project to restrict the search to, or None for all
        """
        ...

    def link_type_ends(self) -> set[str]:
        """Return the reference names of all link type ends the store knows."""
        ...


class PipelineStore(Protocol):
    """Protocol for reading and creating pipeline-side entities.

    ``kind`` is one of the keys of ``pipeline_models.DEFINITION_TYPES``.
    """

    def list_definitions(self, kind: str, names: list[str] | None = None) -> list[Definition]:
        """Return all entities of ``kind``, or only those named in ``names``."""
        ...

    def create_definition(self, definition: Definition) -> Definition:
        """Create the entity in this store and return it with its new id.

        Raises:
            StoreRejectedError: If the store refuses the definition
            StoreUnavailableError: If the store cannot be reached
        """
        ...

    def update_task_group(self, target_id: str, task_group: TaskGroup) -> TaskGroup:
        """Push ``task_group`` as a new revision of the existing group ``target_id``."""
        ...

    def list_builds(self, definition_id: str) -> list[BuildRun]:
        """Return the completed, succeeded builds of a build definition."""
        ...

    def list_build_artifacts(self, build_id: str) -> list[BuildArtifact]:
        """Return the published artifacts of a build."""
        ...

    def queue_build(self, build: BuildRun) -> BuildRun:
        """Queue a build run in this store and return it with its new id."""
        ...
