"""Data models for work item migration between source and target projects.

These models represent the normalized data exchanged between the stores, the
identity resolver, the relationship replicator and the orchestrator. They are
intentionally simple and store-agnostic.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Final, Literal

RelationshipKind = Literal["hyperlink", "external_artifact", "related", "hierarchy"]

RELATIONSHIP_KINDS: Final[frozenset[str]] = frozenset({"hyperlink", "external_artifact", "related", "hierarchy"})

HIERARCHY_FORWARD: Final[str] = "System.LinkTypes.Hierarchy-Forward"
HIERARCHY_REVERSE: Final[str] = "System.LinkTypes.Hierarchy-Reverse"
SHARED_STEPS_LINK: Final[str] = "Microsoft.VSTS.TestCase.SharedStepReferencedBy-Forward"

DEFAULT_REFLECTED_FIELD: Final[str] = "Custom.ReflectedWorkItemId"


@dataclass
class Relationship:
    """A directed, typed edge owned by the work item that holds it.

    Relationship kinds:
    - hyperlink: work item -> external URL (``address``)
    - external_artifact: work item -> artifact URI (``address``); ``link_type`` holds
      the artifact link name, e.g. "Fixed in Commit"
    - related: work item -> work item (``related_id`` + ``link_type``)
    - hierarchy: a related link whose ``link_type`` is one of the hierarchy ends;
      a work item holds at most one ``Hierarchy-Reverse`` (parent) link
    """

    kind: str
    address: str = ""
    related_id: str | None = None
    link_type: str = ""
    comment: str = ""

    @property
    def is_parent_link(self) -> bool:
        return self.kind == "hierarchy" and self.link_type == HIERARCHY_REVERSE

    def describe(self) -> str:
        if self.kind in ("hyperlink", "external_artifact"):
            return f"{self.kind} {self.address}"
        return f"{self.kind} {self.link_type} -> {self.related_id}"


@dataclass
class WorkItem:
    """A work item in the source or target system.

    ``id`` is None until the store has persisted the item. ``collection_url``
    and ``project`` are the coordinates used to derive its reflected identity.
    """

    id: str | None
    project: str
    collection_url: str
    work_item_type: str = ""
    title: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    relationships: list[Relationship] = field(default_factory=list)

    kind: Literal["work_item"] = "work_item"

    @property
    def name(self) -> str:
        return self.title


@dataclass(frozen=True)
class DefinitionVersion:
    """Version of a definition; task groups carry a meaningful major version."""

    major: int
    minor: int = 0
    patch: int = 0
    is_test: bool = False

    @classmethod
    def from_api(cls, value: dict[str, Any] | str | None) -> DefinitionVersion | None:
        if value is None:
            return None
        if isinstance(value, str):
            match = re.match(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?", value)
            if not match:
                return None
            major, minor, patch = (int(part) if part else 0 for part in match.groups())
            return cls(major, minor, patch)
        return cls(
            major=int(value.get("major", 0)),
            minor=int(value.get("minor", 0)),
            patch=int(value.get("patch", 0)),
            is_test=bool(value.get("isTest", False)),
        )

    def to_api(self) -> dict[str, Any]:
        return {"major": self.major, "minor": self.minor, "patch": self.patch, "isTest": self.is_test}

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class Mapping:
    """Source entity ``source_id`` became target entity ``target_id`` (at ``version``)."""

    source_id: str
    target_id: str
    name: str
    version: DefinitionVersion | None = None


@dataclass(frozen=True)
class MigrationContext:
    """Coordinates of the source and target projects for one migration run.

    Passed explicitly to every component instead of being looked up globally.
    """

    source_collection_url: str
    source_project: str
    target_collection_url: str
    target_project: str
    reflected_field: str = DEFAULT_REFLECTED_FIELD
    allow_cross_project_links: bool = False
