"""Migration orchestrators that coordinate the source and target stores.

Two passes are coordinated here:

Link Pass (``LinkMigrator``)
----------------------------
For each source work item (optionally restricted by a store query):
    a. Derive its reflected identity and look up the target work item that
       was created from it
    b. Not found: the item has not been migrated yet, so it is skipped
    c. Replicate its relationships onto the target work item

Pipeline Pass (``PipelineMigrator``)
------------------------------------
Pipeline entities reference each other by id, and ids differ between the
source and the target project. Each phase migrates one kind and publishes a
mapping table (source id -> target id) that later phases use to rewrite
references:

    service_connections ─┐
    variable_groups ─────┤
    task_groups ─────────┼──► build_definitions ──► queued_builds
    agent_pools ─────────┤
                         └──► release_definitions

The phase order is derived from ``PHASE_DEPENDENCIES``. A disabled phase is
SKIPPED and publishes no table; consumers then drop the definitions that need
it. Every phase goes through the same states:

    NOT_STARTED → FETCHED → FILTERED → REWRITTEN → PERSISTED → MAPPING_PUBLISHED

Reads of a phase run concurrently; writes are sequential.

Error Handling
--------------
- A definition the target rejects is recorded in the phase report and the
  phase continues with the next definition
- An unreachable store, or any other store failure, aborts the run; entities
  persisted so far stay in place and a re-run skips them
- In the link pass, recoverable link failures are handled by the replicator;
  a work item whose identity cannot be derived is skipped
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import TYPE_CHECKING, Any, Final

from .exceptions import (
    MalformedIdentityError,
    MigrationError,
    StoreError,
    StoreRejectedError,
    TargetNotPersistedError,
)
from .identity import IdentityResolver
from .mappings import build_mapping_table
from .models import Mapping
from .pipeline_models import Project
from .pipelines import (
    RewriteTables,
    exclude_hosted_pools,
    filter_out_existing,
    filter_out_incompatible,
    filter_out_missing_dependencies,
    pin_task_group_tasks,
    retarget_service_connection,
    retarget_variable_group,
    rewrite_build_definition,
    rewrite_build_run,
    rewrite_release_definition,
    same_name_task_groups,
    split_by_major,
)
from .relationships import RelationshipReplicator, ReplicationResult, ReplicatorOptions

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from .models import MigrationContext
    from .pipeline_models import Definition, TaskGroup
    from .protocols import PipelineStore, WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)

PHASE_DEPENDENCIES: Final[dict[str, tuple[str, ...]]] = {
    "service_connections": (),
    "variable_groups": (),
    "task_groups": (),
    "agent_pools": (),
    "build_definitions": ("task_groups", "variable_groups", "service_connections", "agent_pools"),
    "release_definitions": ("task_groups", "variable_groups", "service_connections", "agent_pools"),
    "queued_builds": ("build_definitions",),
}

MAX_FETCH_WORKERS: Final[int] = 8


class PhaseState(Enum):
    NOT_STARTED = "not_started"
    FETCHED = "fetched"
    FILTERED = "filtered"
    REWRITTEN = "rewritten"
    PERSISTED = "persisted"
    MAPPING_PUBLISHED = "mapping_published"
    SKIPPED = "skipped"


def phase_order(dependencies: dict[str, tuple[str, ...]] = PHASE_DEPENDENCIES) -> list[str]:
    """Return the phases in dependency order, ties broken by declaration order.

    Raises:
        MigrationError: If the dependencies contain a cycle
    """
    declared = list(dependencies)
    sorter = TopologicalSorter(dependencies)
    try:
        sorter.prepare()
    except CycleError as e:
        msg = f"Pipeline phases have a dependency cycle: {e.args[1]}"
        raise MigrationError(msg) from e

    def position(phase: str) -> int:
        return declared.index(phase) if phase in declared else len(declared)

    order: list[str] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready(), key=position)
        order.extend(ready)
        sorter.done(*ready)
    return order


def fetch_concurrently(
    fetches: dict[str, Callable[[], Any]], max_workers: int = MAX_FETCH_WORKERS
) -> dict[str, Any]:
    """Run independent read-only fetches in a thread pool and return their results by name.

    All fetches are joined before returning; the first failure is re-raised.
    """
    if not fetches:
        return {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(fetches))) as executor:
        futures = {name: executor.submit(fetch) for name, fetch in fetches.items()}
        return {name: future.result() for name, future in futures.items()}


@dataclass
class PipelineMigrationOptions:
    """Which pipeline phases run, and for which definitions.

    Empty name lists select every definition. Builds are only queued for the
    build pipelines named in ``queue_build_pipelines``.
    """

    migrate_service_connections: bool = True
    migrate_variable_groups: bool = True
    migrate_task_groups: bool = True
    migrate_agent_pools: bool = True
    migrate_build_pipelines: bool = True
    migrate_release_pipelines: bool = True
    build_pipelines: list[str] = field(default_factory=list)
    release_pipelines: list[str] = field(default_factory=list)
    queue_build_pipelines: list[str] = field(default_factory=list)
    repository_name_maps: dict[str, str] = field(default_factory=dict)

    def is_enabled(self, phase: str) -> bool:
        return {
            "service_connections": self.migrate_service_connections,
            "variable_groups": self.migrate_variable_groups,
            "task_groups": self.migrate_task_groups,
            "agent_pools": self.migrate_agent_pools,
            "build_definitions": self.migrate_build_pipelines,
            "release_definitions": self.migrate_release_pipelines,
            "queued_builds": bool(self.queue_build_pipelines),
        }[phase]


@dataclass
class PhaseReport:
    """What one phase fetched, filtered, created and published."""

    phase: str
    state: PhaseState = PhaseState.NOT_STARTED
    fetched: int = 0
    filtered: list[str] = field(default_factory=list)
    created: list[Mapping] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    table: list[Mapping] | None = None


@dataclass
class PipelineMigrationResult:
    """Result of a pipeline migration run."""

    success: bool
    phases: dict[str, PhaseReport]
    errors: list[str] = field(default_factory=list)

    def statistics(self) -> dict[str, int]:
        return {f"{name}_created": len(report.created) for name, report in self.phases.items()} | {
            "definitions_failed": sum(len(report.failures) for report in self.phases.values()),
        }


class PipelineMigrator:
    """Runs the dependency-ordered pipeline phases from a source to a target project.

    Usage:
        migrator = PipelineMigrator(source_store, target_store, context, PipelineMigrationOptions())
        result = migrator.migrate()
    """

    _source: PipelineStore
    _target: PipelineStore
    _context: MigrationContext
    _options: PipelineMigrationOptions
    _reports: dict[str, PhaseReport]
    _target_project_cache: Project | None

    def __init__(
        self,
        source: PipelineStore,
        target: PipelineStore,
        context: MigrationContext,
        options: PipelineMigrationOptions | None = None,
    ) -> None:
        self._source = source
        self._target = target
        self._context = context
        self._options = options or PipelineMigrationOptions()
        self._reports = {}
        self._target_project_cache = None

    def migrate(self) -> PipelineMigrationResult:
        """Run every enabled phase in dependency order.

        Returns:
            PipelineMigrationResult with one report per phase
        """
        handlers: dict[str, Callable[[PhaseReport], None]] = {
            "service_connections": self._migrate_service_connections,
            "variable_groups": self._migrate_variable_groups,
            "task_groups": self._migrate_task_groups,
            "agent_pools": self._migrate_agent_pools,
            "build_definitions": self._migrate_build_definitions,
            "release_definitions": self._migrate_release_definitions,
            "queued_builds": self._queue_builds,
        }
        self._reports = {phase: PhaseReport(phase) for phase in phase_order()}
        errors: list[str] = []

        for phase, report in self._reports.items():
            if not self._options.is_enabled(phase):
                report.state = PhaseState.SKIPPED
                logger.info(f"Skipping phase {phase}")
                continue

            logger.info(f"Processing {phase.replace('_', ' ')}..")
            self._require_dependencies(phase)
            try:
                handlers[phase](report)
            except MigrationError as e:
                msg = f"Phase {phase} aborted: [{type(e).__name__}] {e}"
                logger.error(msg)
                errors.append(msg)
                break

        return PipelineMigrationResult(success=not errors, phases=self._reports, errors=errors)

    # Phase bookkeeping

    def _require_dependencies(self, phase: str) -> None:
        for dependency in PHASE_DEPENDENCIES[phase]:
            self.mapping_table(dependency)

    def mapping_table(self, phase: str) -> list[Mapping] | None:
        """Return the table published by ``phase``, or None if the phase was skipped.

        Raises:
            MigrationError: If the phase is enabled but has not published its table yet
        """
        report = self._reports.get(phase)
        if report is None or report.state is PhaseState.SKIPPED:
            return None
        if report.state is not PhaseState.MAPPING_PUBLISHED:
            msg = f"Mapping table of phase {phase} read before it was published (state {report.state.value})"
            raise MigrationError(msg)
        return report.table

    @staticmethod
    def _advance(report: PhaseReport, state: PhaseState) -> None:
        logger.debug(f"Phase {report.phase}: {report.state.value} -> {state.value}")
        report.state = state

    def _filtered(self, report: PhaseReport, before: Iterable[Definition], after: Iterable[Definition]) -> None:
        kept = {id(definition) for definition in after}
        report.filtered.extend(definition.name for definition in before if id(definition) not in kept)

    def _publish(
        self,
        report: PhaseReport,
        sources: Sequence[Definition],
        targets: Sequence[Definition],
        created: list[Mapping],
    ) -> None:
        report.table = build_mapping_table(sources, targets, created, kind=report.phase)
        self._advance(report, PhaseState.MAPPING_PUBLISHED)
        logger.info(
            f"Phase {report.phase}: {len(created)} created, {len(report.filtered)} filtered, "
            f"{len(report.failures)} failed, {len(report.table)} mapping(s)"
        )

    def _persist(self, report: PhaseReport, definitions: Iterable[Definition]) -> list[Mapping]:
        """Create definitions one at a time; rejected definitions are recorded and skipped."""
        created: list[Mapping] = []
        for definition in definitions:
            try:
                result = self._target.create_definition(definition)
            except StoreRejectedError as e:
                logger.error(f"Failed to create {definition.kind} {definition.name}: {e.reason}")
                report.failures.append(f"{definition.name}: {e.reason}")
                continue
            logger.info(f"Created {definition.kind} {definition.name} ({definition.id} -> {result.id})")
            created.append(
                Mapping(
                    source_id=str(definition.id), target_id=str(result.id), name=result.name, version=result.version
                )
            )
        report.created.extend(created)
        self._advance(report, PhaseState.PERSISTED)
        return created

    def _target_project(self) -> Project:
        if self._target_project_cache is None:
            wanted = self._context.target_project.strip()
            project = next(
                (
                    p
                    for p in self._target.list_definitions("project")
                    if isinstance(p, Project) and p.name.strip() == wanted
                ),
                None,
            )
            if project is None:
                msg = f"Target project {wanted} not found"
                raise MigrationError(msg)
            self._target_project_cache = project
        return self._target_project_cache

    # Phases

    def _migrate_service_connections(self, report: PhaseReport) -> None:
        fetched = fetch_concurrently(
            {
                "source": lambda: self._source.list_definitions("service_connection"),
                "target": lambda: self._target.list_definitions("service_connection"),
                "project": self._target_project,
            }
        )
        sources, targets, project = fetched["source"], fetched["target"], fetched["project"]
        report.fetched = len(sources)
        self._advance(report, PhaseState.FETCHED)

        pending = filter_out_existing(sources, targets, kind="service connection")
        self._filtered(report, sources, pending)
        self._advance(report, PhaseState.FILTERED)

        rewritten = [retarget_service_connection(connection, project) for connection in pending]
        self._advance(report, PhaseState.REWRITTEN)

        created = self._persist(report, rewritten)
        self._publish(report, sources, targets, created)

    def _migrate_variable_groups(self, report: PhaseReport) -> None:
        fetched = fetch_concurrently(
            {
                "source": lambda: self._source.list_definitions("variable_group"),
                "target": lambda: self._target.list_definitions("variable_group"),
            }
        )
        sources, targets = fetched["source"], fetched["target"]
        report.fetched = len(sources)
        self._advance(report, PhaseState.FETCHED)

        pending = filter_out_existing(sources, targets, kind="variable group")
        self._filtered(report, sources, pending)
        self._advance(report, PhaseState.FILTERED)

        rewritten = [retarget_variable_group(group, self._context.target_project) for group in pending]
        self._advance(report, PhaseState.REWRITTEN)

        created = self._persist(report, rewritten)
        self._publish(report, sources, targets, created)

    def _migrate_agent_pools(self, report: PhaseReport) -> None:
        fetched = fetch_concurrently(
            {
                "source": lambda: self._source.list_definitions("agent_pool"),
                "target": lambda: self._target.list_definitions("agent_pool"),
            }
        )
        all_sources, targets = fetched["source"], fetched["target"]
        report.fetched = len(all_sources)
        self._advance(report, PhaseState.FETCHED)

        sources = exclude_hosted_pools(all_sources)
        pending = filter_out_existing(sources, targets, kind="agent pool")
        self._filtered(report, all_sources, pending)
        self._advance(report, PhaseState.FILTERED)
        self._advance(report, PhaseState.REWRITTEN)

        created = self._persist(report, pending)
        self._publish(report, sources, targets, created)

    def _migrate_task_groups(self, report: PhaseReport) -> None:
        fetched = fetch_concurrently(
            {
                "source": lambda: self._source.list_definitions("task_group"),
                "target": lambda: self._target.list_definitions("task_group"),
                "tasks": lambda: self._target.list_definitions("task_definition"),
            }
        )
        sources, targets, available_tasks = fetched["source"], fetched["target"], fetched["tasks"]
        report.fetched = len(sources)
        self._advance(report, PhaseState.FETCHED)

        same_name = same_name_task_groups(sources, targets)
        pending = filter_out_existing(sources, targets, kind="task group")
        pending = filter_out_incompatible(pending, available_tasks, same_name, kind="task group")
        self._filtered(report, sources, pending)
        self._advance(report, PhaseState.FILTERED)

        pinned = [pin_task_group_tasks(group, same_name) for group in pending]
        roots, revisions = split_by_major(pinned)
        self._advance(report, PhaseState.REWRITTEN)

        created = self._persist(report, roots)
        self._push_revisions(report, revisions)

        # Revisions change versions of target groups, so the table is built from a fresh listing
        refreshed = [group for group in self._target.list_definitions("task_group") if group.name]
        self._publish(report, sources, refreshed, created)

    def _push_revisions(self, report: PhaseReport, revisions: Sequence[TaskGroup]) -> None:
        """Push newer major versions of task groups onto the same-name target group."""
        if not revisions:
            return
        current: dict[str, Any] = {group.name: group for group in self._target.list_definitions("task_group")}
        for revision in revisions:
            existing = current.get(revision.name)
            if existing is None or existing.id is None:
                logger.warning(
                    f"Can't push task group {revision.name} {revision.version}: first version missing in the target"
                )
                report.failures.append(f"{revision.name}: first version missing in target")
                continue
            if (
                existing.version is not None
                and revision.version is not None
                and existing.version.major >= revision.version.major
            ):
                continue
            try:
                current[revision.name] = self._target.update_task_group(existing.id, revision)
            except StoreRejectedError as e:
                logger.error(f"Failed to update task group {revision.name} to version {revision.version}: {e.reason}")
                report.failures.append(f"{revision.name}: {e.reason}")
                continue
            report.updated.append(f"{revision.name} {revision.version}")
            logger.info(f"Updated task group {revision.name} to version {revision.version}")

    def _rewrite_tables(self, fetched: dict[str, Any], *, service_connections: list[Mapping] | None) -> RewriteTables:
        return RewriteTables(
            task_groups=self.mapping_table("task_groups"),
            variable_groups=self.mapping_table("variable_groups"),
            service_connections=service_connections,
            agent_queues=build_mapping_table(
                fetched["source_queues"], fetched["target_queues"], [], kind="agent queue"
            ),
            deployment_groups=build_mapping_table(
                fetched.get("source_deployment_groups", []),
                fetched.get("target_deployment_groups", []),
                [],
                kind="deployment group",
            ),
            source_repositories=fetched.get("source_repositories", []),
            target_repositories=fetched.get("target_repositories", []),
            repository_name_maps=dict(self._options.repository_name_maps),
            target_project=fetched["project"],
        )

    def _service_connection_table(self, fetched: dict[str, Any]) -> list[Mapping]:
        table = self.mapping_table("service_connections")
        if table is not None:
            return table
        # Phase skipped: connections are expected to exist already, matched by name
        return build_mapping_table(
            fetched["source_connections"], fetched["target_connections"], [], kind="service connection"
        )

    def _definition_fetches(self, kind: str, names: list[str]) -> dict[str, Callable[[], Any]]:
        fetches: dict[str, Callable[[], Any]] = {
            "source": lambda: self._source.list_definitions(kind, names or None),
            "target": lambda: self._target.list_definitions(kind, names or None),
            "tasks": lambda: self._target.list_definitions("task_definition"),
            "source_queues": lambda: self._source.list_definitions("agent_queue"),
            "target_queues": lambda: self._target.list_definitions("agent_queue"),
            "project": self._target_project,
        }
        if self.mapping_table("service_connections") is None:
            fetches["source_connections"] = lambda: self._source.list_definitions("service_connection")
            fetches["target_connections"] = lambda: self._target.list_definitions("service_connection")
        return fetches

    def _filter_definitions(self, report: PhaseReport, fetched: dict[str, Any], *, kind: str) -> list[Any]:
        sources = fetched["source"]
        task_groups = self.mapping_table("task_groups")
        pending = filter_out_existing(sources, fetched["target"], kind=kind)
        pending = filter_out_incompatible(pending, fetched["tasks"], task_groups, kind=kind)
        pending = filter_out_missing_dependencies(
            pending, task_groups, self.mapping_table("variable_groups"), kind=kind
        )
        self._filtered(report, sources, pending)
        self._advance(report, PhaseState.FILTERED)
        return pending

    def _migrate_build_definitions(self, report: PhaseReport) -> None:
        fetches = self._definition_fetches("build_definition", self._options.build_pipelines)
        fetches["source_repositories"] = lambda: self._source.list_definitions("repository")
        fetches["target_repositories"] = lambda: self._target.list_definitions("repository")
        fetched = fetch_concurrently(fetches)
        report.fetched = len(fetched["source"])
        self._advance(report, PhaseState.FETCHED)

        pending = self._filter_definitions(report, fetched, kind="build pipeline")

        tables = self._rewrite_tables(fetched, service_connections=self._service_connection_table(fetched))
        rewritten = [rewrite_build_definition(definition, tables) for definition in pending]
        self._advance(report, PhaseState.REWRITTEN)

        created = self._persist(report, rewritten)
        self._publish(report, fetched["source"], fetched["target"], created)

    def _migrate_release_definitions(self, report: PhaseReport) -> None:
        fetches = self._definition_fetches("release_definition", self._options.release_pipelines)
        fetches["source_deployment_groups"] = lambda: self._source.list_definitions("deployment_group")
        fetches["target_deployment_groups"] = lambda: self._target.list_definitions("deployment_group")
        fetched = fetch_concurrently(fetches)
        report.fetched = len(fetched["source"])
        self._advance(report, PhaseState.FETCHED)

        pending = self._filter_definitions(report, fetched, kind="release pipeline")

        tables = self._rewrite_tables(fetched, service_connections=self._service_connection_table(fetched))
        rewritten = [rewrite_release_definition(definition, tables) for definition in pending]
        self._advance(report, PhaseState.REWRITTEN)

        created = self._persist(report, rewritten)
        self._publish(report, fetched["source"], fetched["target"], created)

    def _queue_builds(self, report: PhaseReport) -> None:
        names = self._options.queue_build_pipelines
        fetched = fetch_concurrently(
            {
                "source": lambda: self._source.list_definitions("build_definition", names),
                "target": lambda: self._target.list_definitions("build_definition", names),
                "source_repositories": lambda: self._source.list_definitions("repository"),
                "target_repositories": lambda: self._target.list_definitions("repository"),
                "project": self._target_project,
            }
        )
        tables = RewriteTables(
            source_repositories=fetched["source_repositories"],
            target_repositories=fetched["target_repositories"],
            repository_name_maps=dict(self._options.repository_name_maps),
            target_project=fetched["project"],
        )
        targets = {definition.name: definition for definition in fetched["target"]}

        pending: list[tuple[Any, Any]] = []
        for definition in fetched["source"]:
            target_definition = targets.get(definition.name)
            if target_definition is None:
                logger.warning(f"Can't find build pipeline {definition.name} in the target project")
                report.filtered.append(definition.name)
                continue
            builds = fetch_concurrently(
                {
                    "source": lambda d=definition: self._source.list_builds(d.id),
                    "target": lambda d=target_definition: self._target.list_builds(d.id),
                }
            )
            report.fetched += len(builds["source"])
            missing = filter_out_existing(builds["source"], builds["target"], kind="build")
            report.filtered.extend(build.name for build in builds["source"] if build not in missing)
            pending.extend((build, target_definition) for build in sorted(missing, key=lambda b: b.start_time or ""))
        self._advance(report, PhaseState.FETCHED)
        self._advance(report, PhaseState.FILTERED)

        rewritten = [
            (build, rewrite_build_run(build, target_definition, self._source.list_build_artifacts(build.id), tables))
            for build, target_definition in pending
        ]
        self._advance(report, PhaseState.REWRITTEN)

        for build, queued_build in rewritten:
            try:
                queued = self._target.queue_build(queued_build)
            except StoreRejectedError as e:
                logger.error(f"Failed to queue build {build.name}: {e.reason}")
                report.failures.append(f"{build.name}: {e.reason}")
                continue
            logger.info(f"Queued build {build.name} of {queued_build.definition_id} as {queued.id}")
            report.created.append(Mapping(source_id=str(build.id), target_id=str(queued.id), name=build.name))
        self._advance(report, PhaseState.PERSISTED)

        report.table = list(report.created)
        self._advance(report, PhaseState.MAPPING_PUBLISHED)


@dataclass
class LinkMigrationResult:
    """Result of a work item link pass."""

    success: bool
    results: list[ReplicationResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def statistics(self) -> dict[str, int]:
        return {
            "work_items_processed": len(self.results),
            "work_items_skipped": len(self.skipped),
            "links_created": sum(result.created for result in self.results),
            "links_skipped": sum(result.skipped for result in self.results),
            "links_failed": sum(result.failed for result in self.results),
        }


class LinkMigrator:
    """Replicates the relationships of every migrated source work item onto its target."""

    _source: WorkItemStore
    _target: WorkItemStore
    _resolver: IdentityResolver
    _replicator: RelationshipReplicator

    def __init__(
        self,
        source: WorkItemStore,
        target: WorkItemStore,
        context: MigrationContext,
        options: ReplicatorOptions | None = None,
    ) -> None:
        self._source = source
        self._target = target
        self._resolver = IdentityResolver(target, context)
        self._replicator = RelationshipReplicator(source, target, self._resolver, context, options)

    def migrate(self, query: str | None = None) -> LinkMigrationResult:
        """Run the link pass over the source work items selected by ``query``.

        Args:
            query: Store-specific work item query, or None for all work items

        Returns:
            LinkMigrationResult with one replication result per processed work item
        """
        result = LinkMigrationResult(success=True)
        sources = self._source.fetch_entities("work_item", query)
        logger.info(f"Replicating links of {len(sources)} source work item(s)")

        for source in sources:
            try:
                target = self._resolver.find_for(source)
                if target is None:
                    logger.warning(f"Work item {source.id} has not been migrated yet, skipping its links")
                    result.skipped.append(f"{source.id}: not migrated")
                    continue
                # The resolver cache may hold a copy taken before earlier items linked to it
                current = self._target.get_entity(target.id) if target.id is not None else None
                result.results.append(self._replicator.replicate(source, current or target))
            except (MalformedIdentityError, TargetNotPersistedError) as e:
                logger.warning(f"Skipping links of work item {source.id}: {e}")
                result.skipped.append(f"{source.id}: {e}")
            except StoreError as e:
                msg = f"Link pass aborted at work item {source.id}: [{type(e).__name__}] {e}"
                logger.error(msg)
                result.errors.append(msg)
                result.success = False
                break

        return result
