"""Pipeline entity models (definitions, groups, connections, pools, builds).

Each model parses the subset of the Azure DevOps REST payload the migration
engine reads or rewrites, and keeps the full payload in ``raw`` so that
``to_api()`` reproduces every field it does not understand.

Step inputs are modelled as ``dict[str, InputValue]``: plain scalars stay as
they are, while inputs that hold a service connection id are parsed into a
``Reference`` so that rewriting them is a typed map transform.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, ClassVar, Final

from .models import DefinitionVersion

# Step input names (lowercase) whose value is a service connection id
SERVICE_CONNECTION_INPUTS: Final[frozenset[str]] = frozenset(
    {"subscription", "azuresubscription", "connectedservicename", "connectedservicenamearm"}
)

TASK_GROUP_DEFINITION_TYPE: Final[str] = "metatask"


@dataclass(frozen=True)
class Reference:
    """A reference from a step input to another entity (e.g. a service connection)."""

    kind: str
    id: str


InputValue = str | int | float | bool | Reference


def parse_inputs(raw: dict[str, Any] | None) -> dict[str, InputValue]:
    inputs: dict[str, InputValue] = {}
    for key, value in (raw or {}).items():
        if key.lower() in SERVICE_CONNECTION_INPUTS and isinstance(value, str) and value:
            inputs[key] = Reference("service_connection", value)
        elif isinstance(value, (str, int, float, bool)):
            inputs[key] = value
        else:
            inputs[key] = "" if value is None else str(value)
    return inputs


def serialize_inputs(inputs: dict[str, InputValue]) -> dict[str, Any]:
    return {key: value.id if isinstance(value, Reference) else value for key, value in inputs.items()}


def _str_id(value: Any) -> str | None:  # noqa: ANN401 - ids arrive as int or str
    if value is None or value == "":
        return None
    return str(value)


def _int_id(value: Any) -> int | None:  # noqa: ANN401
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class ProjectReference:
    """Reference from a shared entity to the project it belongs to."""

    name: str
    id: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any] | None) -> ProjectReference:
        payload = payload or {}
        return cls(name=payload.get("name", ""), id=payload.get("id"))

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {"name": self.name}
        if self.id is not None:
            body["id"] = self.id
        return body


@dataclass
class TaskReference:
    """The task (or task group) a pipeline step runs."""

    id: str
    version_spec: str = "1.*"
    definition_type: str = "task"

    @property
    def is_task_group(self) -> bool:
        return self.definition_type.lower() == TASK_GROUP_DEFINITION_TYPE


@dataclass
class PipelineStep:
    """A single step of a build phase, release deploy phase, or task group."""

    task: TaskReference
    display_name: str = ""
    inputs: dict[str, InputValue] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_build_api(cls, payload: dict[str, Any]) -> PipelineStep:
        task = payload.get("task") or {}
        return cls(
            task=TaskReference(
                id=str(task.get("id", "")),
                version_spec=task.get("versionSpec", "1.*"),
                definition_type=task.get("definitionType") or "task",
            ),
            display_name=payload.get("displayName", ""),
            inputs=parse_inputs(payload.get("inputs")),
            raw=payload,
        )

    def to_build_api(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["displayName"] = self.display_name
        body["task"] = {
            **body.get("task", {}),
            "id": self.task.id,
            "versionSpec": self.task.version_spec,
            "definitionType": self.task.definition_type,
        }
        body["inputs"] = serialize_inputs(self.inputs)
        return body

    @classmethod
    def from_release_api(cls, payload: dict[str, Any]) -> PipelineStep:
        return cls(
            task=TaskReference(
                id=str(payload.get("taskId", "")),
                version_spec=payload.get("version", "1.*"),
                definition_type=payload.get("definitionType") or "task",
            ),
            display_name=payload.get("name", ""),
            inputs=parse_inputs(payload.get("inputs")),
            raw=payload,
        )

    def to_release_api(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["name"] = self.display_name
        body["taskId"] = self.task.id
        body["version"] = self.task.version_spec
        body["definitionType"] = self.task.definition_type
        body["inputs"] = serialize_inputs(self.inputs)
        return body


@dataclass
class Phase:
    """A build phase or a release deploy phase.

    ``phase_type`` and ``queue_id`` are only meaningful for release deploy phases
    (``agentBasedDeployment`` uses an agent queue, ``machineGroupBasedDeployment``
    a deployment group).
    """

    name: str = ""
    steps: list[PipelineStep] = field(default_factory=list)
    phase_type: str = ""
    queue_id: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class RepositoryRef:
    """Repository referenced by a build definition or build run."""

    id: str | None
    name: str = ""
    type: str = "TfsGit"
    connected_service_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, payload: dict[str, Any] | None) -> RepositoryRef | None:
        if not payload:
            return None
        properties = payload.get("properties") or {}
        return cls(
            id=_str_id(payload.get("id")),
            name=payload.get("name", ""),
            type=payload.get("type", "TfsGit"),
            connected_service_id=properties.get("connectedServiceId"),
            raw=payload,
        )

    def to_api(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["id"] = self.id
        body["name"] = self.name
        body["type"] = self.type
        if "properties" in body or self.connected_service_id is not None:
            body.setdefault("properties", {})["connectedServiceId"] = self.connected_service_id
        return body


@dataclass
class Definition:
    """Base class for every pipeline-side entity fetched from a store."""

    kind: ClassVar[str] = "definition"
    # Payload keys dropped before the entity is created in another project
    reset_keys: ClassVar[tuple[str, ...]] = ()

    id: str | None
    name: str
    revision: int | None = None
    version: DefinitionVersion | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Definition:
        return cls(**cls._base_kwargs(payload))

    @staticmethod
    def _base_kwargs(payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": _str_id(payload.get("id")),
            "name": payload.get("name") or "",
            "revision": payload.get("revision"),
            "version": DefinitionVersion.from_api(payload.get("version")),
            "raw": payload,
        }

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["name"] = self.name
        if include_id and self.id is not None:
            body["id"] = self.id
        else:
            body.pop("id", None)
            for key in self.reset_keys:
                body.pop(key, None)
        if self.version is not None and "version" in body:
            body["version"] = self.version.to_api()
        return body

    def steps(self) -> Iterator[PipelineStep]:
        """Yield every task step this entity runs."""
        yield from ()

    def has_task_groups(self) -> bool:
        return any(step.task.is_task_group for step in self.steps())

    def has_variable_groups(self) -> bool:
        return False


@dataclass
class TaskDefinition(Definition):
    kind: ClassVar[str] = "task_definition"


@dataclass
class Project(Definition):
    kind: ClassVar[str] = "project"


@dataclass
class GitRepository(Definition):
    kind: ClassVar[str] = "repository"


@dataclass
class AgentQueue(Definition):
    kind: ClassVar[str] = "agent_queue"


@dataclass
class DeploymentGroup(Definition):
    kind: ClassVar[str] = "deployment_group"


@dataclass
class AgentPool(Definition):
    kind: ClassVar[str] = "agent_pool"
    reset_keys: ClassVar[tuple[str, ...]] = ("createdBy", "owner", "createdOn")

    agent_cloud_id: int | None = None
    is_hosted: bool = False

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> AgentPool:
        return cls(
            **cls._base_kwargs(payload),
            agent_cloud_id=_int_id(payload.get("agentCloudId")),
            is_hosted=bool(payload.get("isHosted", False)),
        )


@dataclass
class ServiceConnection(Definition):
    kind: ClassVar[str] = "service_connection"
    reset_keys: ClassVar[tuple[str, ...]] = ("createdBy",)

    project_references: list[ProjectReference] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ServiceConnection:
        references = [
            ProjectReference.from_api(ref.get("projectReference"))
            for ref in payload.get("serviceEndpointProjectReferences") or []
        ]
        return cls(**cls._base_kwargs(payload), project_references=references)

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = super().to_api(include_id=include_id)
        body["serviceEndpointProjectReferences"] = [
            {"name": self.name, "projectReference": reference.to_api()} for reference in self.project_references
        ]
        return body


@dataclass
class VariableGroup(Definition):
    kind: ClassVar[str] = "variable_group"
    reset_keys: ClassVar[tuple[str, ...]] = ("createdBy", "modifiedBy", "createdOn", "modifiedOn")

    project_references: list[ProjectReference] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> VariableGroup:
        references = [
            ProjectReference.from_api(ref.get("projectReference"))
            for ref in payload.get("variableGroupProjectReferences") or []
        ]
        return cls(**cls._base_kwargs(payload), project_references=references)

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = super().to_api(include_id=include_id)
        body["variableGroupProjectReferences"] = [
            {"name": self.name, "projectReference": reference.to_api()} for reference in self.project_references
        ]
        return body


@dataclass
class TaskGroup(Definition):
    kind: ClassVar[str] = "task_group"
    reset_keys: ClassVar[tuple[str, ...]] = ("createdBy", "modifiedBy", "createdOn", "modifiedOn", "parentDefinitionId")

    tasks: list[PipelineStep] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> TaskGroup:
        tasks = [PipelineStep.from_build_api(task) for task in payload.get("tasks") or []]
        return cls(**cls._base_kwargs(payload), tasks=tasks)

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = super().to_api(include_id=include_id)
        body["tasks"] = [task.to_build_api() for task in self.tasks]
        if self.version is not None:
            body["version"] = self.version.to_api()
        return body

    def steps(self) -> Iterator[PipelineStep]:
        yield from self.tasks


@dataclass
class BuildDefinition(Definition):
    kind: ClassVar[str] = "build_definition"
    reset_keys: ClassVar[tuple[str, ...]] = ("authoredBy", "createdDate", "_links", "url", "uri")

    phases: list[Phase] = field(default_factory=list)
    variable_group_ids: list[int] = field(default_factory=list)
    repository: RepositoryRef | None = None
    queue_id: int | None = None
    project_id: str | None = None
    triggers: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> BuildDefinition:
        process = payload.get("process") or {}
        phases = [
            Phase(
                name=phase.get("name", ""),
                steps=[PipelineStep.from_build_api(step) for step in phase.get("steps") or []],
                raw=phase,
            )
            for phase in process.get("phases") or []
        ]
        variable_groups = [
            group_id
            for group in payload.get("variableGroups") or []
            if group and (group_id := _int_id(group.get("id"))) is not None
        ]
        return cls(
            **cls._base_kwargs(payload),
            phases=phases,
            variable_group_ids=variable_groups,
            repository=RepositoryRef.from_api(payload.get("repository")),
            queue_id=_int_id((payload.get("queue") or {}).get("id")),
            project_id=_str_id((payload.get("project") or {}).get("id")),
            triggers=copy.deepcopy(payload.get("triggers") or []),
        )

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = super().to_api(include_id=include_id)
        if self.phases:
            process = body.setdefault("process", {})
            raw_phases = [copy.deepcopy(phase.raw) for phase in self.phases]
            for raw_phase, phase in zip(raw_phases, self.phases, strict=True):
                raw_phase["name"] = phase.name
                raw_phase["steps"] = [step.to_build_api() for step in phase.steps]
            process["phases"] = raw_phases
        if self.variable_group_ids or "variableGroups" in body:
            body["variableGroups"] = [{"id": group_id} for group_id in self.variable_group_ids]
        if self.repository is not None:
            body["repository"] = self.repository.to_api()
        if self.queue_id is not None:
            body["queue"] = {**body.get("queue", {}), "id": self.queue_id}
            body["queue"].pop("_links", None)
        if self.project_id is not None:
            body["project"] = {"id": self.project_id}
        if self.triggers:
            body["triggers"] = copy.deepcopy(self.triggers)
        return body

    def steps(self) -> Iterator[PipelineStep]:
        for phase in self.phases:
            yield from phase.steps

    def has_variable_groups(self) -> bool:
        return bool(self.variable_group_ids)


@dataclass
class ReleaseEnvironment:
    """A stage of a release definition."""

    name: str
    variable_group_ids: list[int] = field(default_factory=list)
    deploy_phases: list[Phase] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ReleaseEnvironment:
        phases = [
            Phase(
                name=phase.get("name", ""),
                steps=[PipelineStep.from_release_api(task) for task in phase.get("workflowTasks") or []],
                phase_type=phase.get("phaseType", ""),
                queue_id=_int_id((phase.get("deploymentInput") or {}).get("queueId")),
                raw=phase,
            )
            for phase in payload.get("deployPhases") or []
        ]
        return cls(
            name=payload.get("name", ""),
            variable_group_ids=[int(group_id) for group_id in payload.get("variableGroups") or []],
            deploy_phases=phases,
            raw=payload,
        )

    def to_api(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["name"] = self.name
        body["variableGroups"] = list(self.variable_group_ids)
        raw_phases = []
        for phase in self.deploy_phases:
            raw_phase = copy.deepcopy(phase.raw)
            raw_phase["name"] = phase.name
            raw_phase["phaseType"] = phase.phase_type
            raw_phase["workflowTasks"] = [step.to_release_api() for step in phase.steps]
            if phase.queue_id is not None:
                raw_phase.setdefault("deploymentInput", {})["queueId"] = phase.queue_id
            raw_phases.append(raw_phase)
        body["deployPhases"] = raw_phases
        return body


@dataclass
class ReleaseDefinition(Definition):
    kind: ClassVar[str] = "release_definition"
    reset_keys: ClassVar[tuple[str, ...]] = ("createdBy", "modifiedBy", "createdOn", "modifiedOn", "_links", "url")

    environments: list[ReleaseEnvironment] = field(default_factory=list)
    variable_group_ids: list[int] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ReleaseDefinition:
        return cls(
            **cls._base_kwargs(payload),
            environments=[ReleaseEnvironment.from_api(env) for env in payload.get("environments") or []],
            variable_group_ids=[int(group_id) for group_id in payload.get("variableGroups") or []],
        )

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = super().to_api(include_id=include_id)
        body["environments"] = [environment.to_api() for environment in self.environments]
        body["variableGroups"] = list(self.variable_group_ids)
        return body

    def steps(self) -> Iterator[PipelineStep]:
        for environment in self.environments:
            for phase in environment.deploy_phases:
                yield from phase.steps

    def has_variable_groups(self) -> bool:
        return bool(self.variable_group_ids) or any(env.variable_group_ids for env in self.environments)


@dataclass
class BuildRun(Definition):
    """A completed build of a build definition; its ``name`` is the build number."""

    kind: ClassVar[str] = "build_run"
    reset_keys: ClassVar[tuple[str, ...]] = (
        "requestedBy",
        "requestedFor",
        "queue",
        "orchestrationPlan",
        "plans",
        "_links",
        "url",
        "uri",
    )

    definition_id: str | None = None
    definition_revision: int | None = None
    definition_project_id: str | None = None
    project_id: str | None = None
    repository: RepositoryRef | None = None
    start_time: str | None = None
    template_parameters: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> BuildRun:
        definition = payload.get("definition") or {}
        kwargs = cls._base_kwargs(payload)
        kwargs["name"] = payload.get("buildNumber") or ""
        return cls(
            **kwargs,
            definition_id=_str_id(definition.get("id")),
            definition_revision=definition.get("revision"),
            definition_project_id=_str_id((definition.get("project") or {}).get("id")),
            project_id=_str_id((payload.get("project") or {}).get("id")),
            repository=RepositoryRef.from_api(payload.get("repository")),
            start_time=payload.get("startTime"),
            template_parameters=dict(payload.get("templateParameters") or {}),
        )

    def to_api(self, *, include_id: bool = False) -> dict[str, Any]:
        body = super().to_api(include_id=include_id)
        body.pop("name", None)
        body["buildNumber"] = self.name
        definition = body.setdefault("definition", {})
        definition["id"] = self.definition_id
        definition["revision"] = self.definition_revision
        definition["project"] = {"id": self.definition_project_id}
        body["project"] = {"id": self.project_id}
        if self.repository is not None:
            body["repository"] = self.repository.to_api()
        body["templateParameters"] = dict(self.template_parameters)
        return body


@dataclass
class BuildArtifact(Definition):
    kind: ClassVar[str] = "build_artifact"

    download_url: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> BuildArtifact:
        return cls(**cls._base_kwargs(payload), download_url=(payload.get("resource") or {}).get("downloadUrl", ""))


DEFINITION_TYPES: Final[dict[str, type[Definition]]] = {
    definition_type.kind: definition_type
    for definition_type in (
        TaskDefinition,
        Project,
        GitRepository,
        AgentQueue,
        DeploymentGroup,
        AgentPool,
        ServiceConnection,
        VariableGroup,
        TaskGroup,
        BuildDefinition,
        ReleaseDefinition,
        BuildRun,
        BuildArtifact,
    )
}
