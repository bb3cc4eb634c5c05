"""Filtering and reference rewriting for pipeline-side entities.

Every function here is pure: it takes fetched entities and mapping tables and
returns new lists or rewritten copies, leaving its inputs untouched. The
orchestrator decides what to fetch and persists the results.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, TypeVar

from .guards import existing_mapping_for
from .models import Mapping
from .pipeline_models import Definition, ProjectReference, Reference

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .pipeline_models import (
        AgentPool,
        BuildArtifact,
        BuildDefinition,
        BuildRun,
        GitRepository,
        Phase,
        PipelineStep,
        Project,
        ReleaseDefinition,
        RepositoryRef,
        ServiceConnection,
        TaskDefinition,
        TaskGroup,
        VariableGroup,
    )

logger: logging.Logger = logging.getLogger(__name__)

DefinitionT = TypeVar("DefinitionT", bound=Definition)

AGENT_PHASE: Final[str] = "agentBasedDeployment"
MACHINE_GROUP_PHASE: Final[str] = "machineGroupBasedDeployment"
HOSTED_AGENT_CLOUD_ID: Final[int] = 1


@dataclass(frozen=True)
class RewriteTables:
    """Mapping tables and lookups used to rewrite a definition for the target.

    A table of None means the producing phase was disabled; an empty table
    means it ran and mapped nothing.
    """

    task_groups: Sequence[Mapping] | None = None
    variable_groups: Sequence[Mapping] | None = None
    service_connections: Sequence[Mapping] | None = None
    agent_queues: Sequence[Mapping] = ()
    deployment_groups: Sequence[Mapping] = ()
    source_repositories: Sequence[GitRepository] = ()
    target_repositories: Sequence[GitRepository] = ()
    repository_name_maps: dict[str, str] = field(default_factory=dict)
    target_project: Project | None = None


# Filters


def filter_out_existing(
    sources: Iterable[DefinitionT], targets: Iterable[Definition], *, kind: str = "definition"
) -> list[DefinitionT]:
    """Drop source entities whose name already exists in the target."""
    sources = list(sources)
    target_names = {target.name for target in targets}
    remaining = [source for source in sources if source.name not in target_names]
    logger.info(f"{len(remaining)} of {len(sources)} source {kind}(s) are going to be migrated")
    return remaining


def filter_out_incompatible(
    definitions: Iterable[DefinitionT],
    available_tasks: Iterable[TaskDefinition],
    task_group_table: Iterable[Mapping] | None = None,
    *,
    kind: str = "definition",
) -> list[DefinitionT]:
    """Drop definitions that run a task the target does not have.

    A task is available when the target has a task definition with its id or
    when it is a task group whose source id appears in ``task_group_table``.
    """
    available = {task.id for task in available_tasks}
    mapped = {mapping.source_id for mapping in task_group_table or ()}

    compatible: list[DefinitionT] = []
    for definition in definitions:
        missing = [
            step.display_name or step.task.id
            for step in definition.steps()
            if step.task.id not in available and step.task.id not in mapped
        ]
        if missing:
            logger.warning(
                f'{kind} "{definition.name}" cannot be migrated because the task(s) "{",".join(missing)}" '
                "are not available. This usually happens if the extension for the task is not installed."
            )
            continue
        compatible.append(definition)
    return compatible


def filter_out_missing_dependencies(
    definitions: Iterable[DefinitionT],
    task_group_table: Sequence[Mapping] | None,
    variable_group_table: Sequence[Mapping] | None,
    *,
    kind: str = "definition",
) -> list[DefinitionT]:
    """Drop definitions using task or variable groups when that kind was not migrated."""
    remaining = list(definitions)

    if task_group_table is None and any(definition.has_task_groups() for definition in remaining):
        dropped = [definition.name for definition in remaining if definition.has_task_groups()]
        logger.warning(
            f"Skipping {kind}(s) {', '.join(dropped)}: pipelines that use task groups can't be migrated "
            "unless task groups are migrated"
        )
        remaining = [definition for definition in remaining if not definition.has_task_groups()]

    if variable_group_table is None and any(definition.has_variable_groups() for definition in remaining):
        dropped = [definition.name for definition in remaining if definition.has_variable_groups()]
        logger.warning(
            f"Skipping {kind}(s) {', '.join(dropped)}: pipelines that use variable groups can't be migrated "
            "unless variable groups are migrated"
        )
        remaining = [definition for definition in remaining if not definition.has_variable_groups()]

    return remaining


def exclude_hosted_pools(pools: Iterable[AgentPool]) -> list[AgentPool]:
    """Drop Microsoft-hosted agent pools, which exist in every organisation."""
    kept = []
    for pool in pools:
        if pool.is_hosted or pool.agent_cloud_id == HOSTED_AGENT_CLOUD_ID:
            logger.debug(f"Not migrating hosted agent pool {pool.name}")
            continue
        kept.append(pool)
    return kept


# Task groups


def same_name_task_groups(sources: Iterable[TaskGroup], targets: Iterable[TaskGroup]) -> list[Mapping]:
    """Pair every source task group with each target task group of the same name."""
    targets = list(targets)
    return [
        Mapping(source_id=str(source.id), target_id=str(target.id), name=target.name, version=target.version)
        for source in sources
        if source.id is not None
        for target in targets
        if target.id is not None and target.name == source.name
    ]


def pin_task_group_tasks(group: TaskGroup, same_name: Sequence[Mapping]) -> TaskGroup:
    """Point tasks that reference an already existing task group at its target id and major version."""
    pinned = copy.deepcopy(group)
    for step in pinned.tasks:
        mapping = existing_mapping_for(step.task.id, same_name)
        if mapping is None:
            continue
        step.task.id = mapping.target_id
        if mapping.version is not None and _major(step.task.version_spec) != str(mapping.version.major):
            step.task.version_spec = f"{mapping.version.major}.*"
    return pinned


def split_by_major(groups: Iterable[TaskGroup]) -> tuple[list[TaskGroup], list[TaskGroup]]:
    """Split task groups into first versions (major 1) and later revisions, by ascending major."""
    ordered = sorted(groups, key=lambda group: group.version.major if group.version else 1)
    roots = [group for group in ordered if group.version is None or group.version.major == 1]
    updates = [group for group in ordered if group.version is not None and group.version.major > 1]
    return roots, updates


# Shared entity project references


def retarget_service_connection(connection: ServiceConnection, target_project: Project) -> ServiceConnection:
    """Keep only the first project reference of a service connection, pointed at the target project."""
    retargeted = copy.deepcopy(connection)
    if retargeted.project_references:
        retargeted.project_references = [ProjectReference(name=target_project.name, id=target_project.id)]
    return retargeted


def retarget_variable_group(group: VariableGroup, target_project_name: str) -> VariableGroup:
    """Give a variable group a single project reference naming the target project."""
    retargeted = copy.deepcopy(group)
    retargeted.project_references = [ProjectReference(name=target_project_name)]
    return retargeted


# Definition rewrites


def rewrite_build_definition(definition: BuildDefinition, tables: RewriteTables) -> BuildDefinition:
    """Return a copy of a source build definition whose references point at target entities."""
    rewritten = copy.deepcopy(definition)

    if rewritten.repository is not None:
        _rewrite_repository(rewritten.repository, tables, owner=definition.name)

    if tables.target_project is not None:
        rewritten.project_id = tables.target_project.id
        for trigger in rewritten.triggers:
            if isinstance(trigger.get("definition"), dict):
                trigger["definition"]["project"] = {"id": tables.target_project.id, "name": tables.target_project.name}

    if rewritten.queue_id is not None:
        rewritten.queue_id = _mapped_int(rewritten.queue_id, tables.agent_queues, kind="agent queue")

    for phase in rewritten.phases:
        _rewrite_steps(phase.steps, tables)

    if tables.variable_groups is not None:
        rewritten.variable_group_ids = _rewrite_variable_groups(rewritten.variable_group_ids, tables.variable_groups)

    return rewritten


def rewrite_release_definition(definition: ReleaseDefinition, tables: RewriteTables) -> ReleaseDefinition:
    """Return a copy of a source release definition whose references point at target entities."""
    rewritten = copy.deepcopy(definition)

    for environment in rewritten.environments:
        for phase in environment.deploy_phases:
            _rewrite_phase_queue(phase, tables)
            _rewrite_steps(phase.steps, tables)

    if tables.variable_groups is not None:
        rewritten.variable_group_ids = _rewrite_variable_groups(rewritten.variable_group_ids, tables.variable_groups)
        for environment in rewritten.environments:
            environment.variable_group_ids = _rewrite_variable_groups(
                environment.variable_group_ids, tables.variable_groups
            )

    return rewritten


def artifact_manifest(artifacts: Iterable[BuildArtifact]) -> str:
    """Format artifact download URLs as a YAML-style list, one ``- url`` per line."""
    return "\n".join(f"- {artifact.download_url}" for artifact in artifacts)


def rewrite_build_run(
    build: BuildRun,
    target_definition: BuildDefinition,
    artifacts: Sequence[BuildArtifact],
    tables: RewriteTables,
) -> BuildRun:
    """Return a copy of a source build run, queued against the target definition.

    The run carries the build number and the download URLs of the source
    artifacts as template parameters. Access tokens are never added.
    """
    rewritten = copy.deepcopy(build)
    rewritten.definition_id = target_definition.id
    rewritten.definition_revision = target_definition.revision
    if tables.target_project is not None:
        rewritten.definition_project_id = tables.target_project.id
        rewritten.project_id = tables.target_project.id
    if rewritten.repository is not None:
        rewritten.repository.id = resolve_repository_id(rewritten.repository.id, tables)
    rewritten.template_parameters = {
        "BuildNumber": build.name,
        "DownloadArtifactURL": artifact_manifest(artifacts),
    }
    return rewritten


def resolve_repository_id(source_repository_id: str | None, tables: RewriteTables) -> str:
    """Find the target repository for a source repository by name, honouring configured renames."""
    source_name = next(
        (repository.name for repository in tables.source_repositories if repository.id == source_repository_id), ""
    )
    target_name = tables.repository_name_maps.get(source_name, source_name)
    target_id = next(
        (repository.id for repository in tables.target_repositories if repository.name == target_name), None
    )
    if target_id is None:
        logger.warning(f"Can't find repository {target_name or source_repository_id} in the target project")
        return ""
    return target_id


def _rewrite_repository(repository: RepositoryRef, tables: RewriteTables, *, owner: str) -> None:
    if repository.connected_service_id is not None and tables.service_connections is not None:
        mapping = existing_mapping_for(repository.connected_service_id, tables.service_connections)
        if mapping is None:
            logger.warning(
                f"Can't find service connection {repository.connected_service_id} of {owner} in the target project"
            )
            repository.connected_service_id = ""
        else:
            repository.connected_service_id = mapping.target_id
    repository.id = resolve_repository_id(repository.id, tables)


def _rewrite_steps(steps: list[PipelineStep], tables: RewriteTables) -> None:
    for step in steps:
        if step.task.is_task_group and tables.task_groups is not None:
            _rewrite_task_group_step(step, tables.task_groups)
        if tables.service_connections is not None:
            _rewrite_service_connection_inputs(step, tables.service_connections)


def _rewrite_task_group_step(step: PipelineStep, table: Sequence[Mapping]) -> None:
    mapping = existing_mapping_for(step.task.id, table)
    if mapping is None:
        logger.warning(f"Can't find task group {step.display_name or step.task.id} in the target project")
        return

    step.task.id = mapping.target_id
    if mapping.version is None:
        return
    # Steps pinned to a preview ("1.test*") revision are moved to the released major
    if _major(step.task.version_spec) != str(mapping.version.major) or _minor(step.task.version_spec).startswith(
        "test"
    ):
        step.task.version_spec = f"{mapping.version.major}.*"


def _rewrite_service_connection_inputs(step: PipelineStep, table: Sequence[Mapping]) -> None:
    for name, value in list(step.inputs.items()):
        if not isinstance(value, Reference) or value.kind != "service_connection":
            continue
        mapping = existing_mapping_for(value.id, table)
        if mapping is None:
            logger.warning(
                f"Can't find service connection {value.id} used by input {name} of step "
                f"{step.display_name} in the target project"
            )
            step.inputs[name] = ""
        else:
            step.inputs[name] = Reference(value.kind, mapping.target_id)


def _rewrite_phase_queue(phase: Phase, tables: RewriteTables) -> None:
    if phase.queue_id is None:
        return
    if phase.phase_type == AGENT_PHASE:
        phase.queue_id = _mapped_int(phase.queue_id, tables.agent_queues, kind="agent queue")
    elif phase.phase_type == MACHINE_GROUP_PHASE:
        phase.queue_id = _mapped_int(phase.queue_id, tables.deployment_groups, kind="deployment group")


def _rewrite_variable_groups(group_ids: list[int], table: Sequence[Mapping]) -> list[int]:
    return [_mapped_int(group_id, table, kind="variable group") for group_id in group_ids]


def _mapped_int(source_id: int, table: Iterable[Mapping], *, kind: str) -> int:
    mapping = existing_mapping_for(str(source_id), table)
    if mapping is None:
        logger.warning(f"Can't find {kind} {source_id} in the target project")
        return 0
    return int(mapping.target_id)


def _major(version_spec: str) -> str:
    return version_spec.split(".")[0]


def _minor(version_spec: str) -> str:
    parts = version_spec.split(".")
    return parts[1] if len(parts) > 1 else ""
