"""Work item relationship replication from a source item onto its target counterpart."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, Literal

from .exceptions import (
    MalformedRelationshipError,
    RelationshipValidationError,
    StoreRejectedError,
    TargetNotPersistedError,
    TransientStoreError,
    UnknownRelationshipKindError,
)
from .guards import (
    already_has_equivalent_relationship,
    is_build_artifact,
    normalize_hyperlink,
    parent_conflicts,
    should_skip_due_to_count_heuristic,
)
from .identity import ReflectedIdentity, same_container
from .models import HIERARCHY_FORWARD, HIERARCHY_REVERSE, SHARED_STEPS_LINK, Relationship

if TYPE_CHECKING:
    from .identity import IdentityResolver
    from .models import MigrationContext, WorkItem
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)

TEST_CASE_TYPE: Final[str] = "Test Case"
STEPS_FIELD: Final[str] = "Microsoft.VSTS.TCM.Steps"
SHARED_STEP_REF: Final[re.Pattern[str]] = re.compile(r'ref="(\d+)"')

# Failures of a single relationship write that must not stop the remaining links
RECOVERABLE_LINK_ERRORS: Final = (RelationshipValidationError, MalformedRelationshipError, TransientStoreError)

LinkStatus = Literal["created", "skipped", "failed"]


@dataclass
class LinkOutcome:
    """What happened to one source relationship."""

    relationship: Relationship
    status: LinkStatus
    reason: str = ""
    target_right_id: str | None = None


@dataclass
class ReplicationResult:
    """Outcome of replicating all relationships of one source work item."""

    source_id: str
    target_id: str
    outcomes: list[LinkOutcome] = field(default_factory=list)
    skipped_entirely: bool = False
    shared_steps_updated: bool = False

    def _count(self, status: LinkStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def created(self) -> int:
        return self._count("created")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")


@dataclass(frozen=True)
class ReplicatorOptions:
    """Options for relationship replication.

    ``skip_when_counts_match`` enables the relationship-count shortcut, which
    skips an item whose target already holds as many relationships as its
    source. It can miss new source relationships, so it is off by default.
    """

    skip_when_counts_match: bool = False


class RelationshipReplicator:
    """Replays the relationships of a migrated source work item onto its target.

    Replication is append-only and idempotent: relationships the target already
    holds are skipped. The only removals are of parent links that would give a
    work item a second parent.
    """

    _source: WorkItemStore
    _target: WorkItemStore
    _resolver: IdentityResolver
    _context: MigrationContext
    _options: ReplicatorOptions
    _link_type_ends: set[str] | None

    def __init__(
        self,
        source_store: WorkItemStore,
        target_store: WorkItemStore,
        resolver: IdentityResolver,
        context: MigrationContext,
        options: ReplicatorOptions | None = None,
    ) -> None:
        self._source = source_store
        self._target = target_store
        self._resolver = resolver
        self._context = context
        self._options = options or ReplicatorOptions()
        self._link_type_ends = None

    def replicate(self, source_left: WorkItem, target_left: WorkItem) -> ReplicationResult:
        """Replicate every relationship of ``source_left`` onto ``target_left``.

        Raises:
            TargetNotPersistedError: If ``target_left`` has not been saved yet
            StoreRejectedError: If the target rejects a write for a non-recoverable reason
            StoreUnavailableError: If the target cannot be reached
        """
        if target_left.id is None:
            msg = f"Target of source work item {source_left.id} must be saved before links can be added"
            raise TargetNotPersistedError(msg)

        result = ReplicationResult(source_id=str(source_left.id), target_id=target_left.id)

        if self._options.skip_when_counts_match and should_skip_due_to_count_heuristic(source_left, target_left):
            logger.info(
                f"Source {source_left.id} and target {target_left.id} have the same number of links, skipping"
            )
            result.skipped_entirely = True
        else:
            for relationship in list(source_left.relationships):
                result.outcomes.append(self._replicate_isolated(source_left, relationship, target_left))

        if source_left.work_item_type == TEST_CASE_TYPE:
            result.shared_steps_updated = self._migrate_shared_steps(source_left, target_left)

        logger.info(
            f"Links of work item {source_left.id} -> {target_left.id}: {result.created} created, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    def _replicate_isolated(
        self, source_left: WorkItem, relationship: Relationship, target_left: WorkItem
    ) -> LinkOutcome:
        """Replicate one relationship, turning recoverable failures into a failed outcome."""
        touched: list[WorkItem] = [target_left]
        logger.debug(f"Migrating {relationship.describe()} of work item {source_left.id}")
        try:
            return self._replicate_one(source_left, relationship, target_left, touched)
        except UnknownRelationshipKindError as e:
            logger.error(f"Work item {source_left.id}: {e}")
            return LinkOutcome(relationship, "failed", str(e))
        except RECOVERABLE_LINK_ERRORS as e:
            for entity in touched:
                self._target.reset_entity(entity)
            logger.error(
                f"Adding {relationship.describe()} failed for source {source_left.id} / target {target_left.id}: "
                f"[{type(e).__name__}] {e}"
            )
            return LinkOutcome(relationship, "failed", f"{type(e).__name__}: {e}")

    def _replicate_one(
        self,
        source_left: WorkItem,
        relationship: Relationship,
        target_left: WorkItem,
        touched: list[WorkItem],
    ) -> LinkOutcome:
        if relationship.kind == "hyperlink":
            return self._create_hyperlink(relationship, target_left)
        if relationship.kind == "external_artifact":
            return self._create_external_link(relationship, target_left)
        if relationship.kind in ("related", "hierarchy"):
            return self._create_related_link(source_left, relationship, target_left, touched)

        msg = f"Unable to migrate relationship of unknown kind {relationship.kind!r}"
        raise UnknownRelationshipKindError(msg)

    def _create_hyperlink(self, relationship: Relationship, target: WorkItem) -> LinkOutcome:
        address = normalize_hyperlink(relationship.address)
        if address is None:
            logger.warning(f"Unable to create a hyperlink to [{relationship.address}] on {target.id}")
            return LinkOutcome(relationship, "skipped", "address is not an absolute URI")

        candidate = Relationship(kind="hyperlink", address=address, comment=relationship.comment)
        if already_has_equivalent_relationship(target, candidate):
            return LinkOutcome(relationship, "skipped", "hyperlink already exists")

        self._target.add_relationship(target, candidate)
        self._target.save_entity(target)
        return LinkOutcome(relationship, "created")

    def _create_external_link(self, relationship: Relationship, target: WorkItem) -> LinkOutcome:
        if is_build_artifact(relationship.address):
            logger.debug(f"Not migrating build artifact link {relationship.address}")
            return LinkOutcome(relationship, "skipped", "build result links are not migrated")

        candidate = Relationship(
            kind="external_artifact",
            address=relationship.address,
            link_type=relationship.link_type,
            comment=relationship.comment,
        )
        if already_has_equivalent_relationship(target, candidate):
            logger.info(f"Artifact link {relationship.address} on {target.id} already exists")
            return LinkOutcome(relationship, "skipped", "artifact link already exists")

        logger.info(f"Creating new artifact link {relationship.address} on {target.id}")
        self._target.add_relationship(target, candidate)
        try:
            self._target.save_entity(target)
        except StoreRejectedError as e:
            if not e.resource_type_unsupported:
                raise
            # Drop the link so later saves of this item don't fail on it again
            logger.error(f"Failed to save artifact link {relationship.address} on {target.id}: {e.reason}")
            self._target.remove_relationship(target, candidate)
            return LinkOutcome(relationship, "failed", f"resource type not supported: {e.reason}")
        return LinkOutcome(relationship, "created")

    def _create_related_link(
        self,
        source_left: WorkItem,
        relationship: Relationship,
        target_left: WorkItem,
        touched: list[WorkItem],
    ) -> LinkOutcome:
        if not relationship.related_id or not relationship.link_type:
            msg = f"Related link on work item {source_left.id} has no right-hand id or link type"
            raise MalformedRelationshipError(msg)

        target_right_id = self._resolve_right_hand_id(relationship.related_id, target_left)
        if target_right_id is None:
            logger.warning(
                f"Target not found for {relationship.link_type} link: source {source_left.id} -> "
                f"{relationship.related_id}, target {target_left.id}"
            )
            return LinkOutcome(relationship, "skipped", "right-hand work item not migrated yet")

        candidate = Relationship(
            kind=relationship.kind,
            related_id=target_right_id,
            link_type=relationship.link_type,
            comment=relationship.comment,
        )
        if already_has_equivalent_relationship(target_left, candidate):
            logger.info(
                f"A {relationship.link_type} link already exists: target {target_left.id} -> {target_right_id}"
            )
            return LinkOutcome(relationship, "skipped", "link already exists", target_right_id)

        if relationship.link_type not in self._known_link_types():
            logger.error(
                f"Unable to migrate link because type {relationship.link_type} does not exist in the target project"
            )
            return LinkOutcome(relationship, "skipped", "link type unknown to target", target_right_id)

        logger.info(
            f"Adding {relationship.link_type} link: source {source_left.id} -> {relationship.related_id}, "
            f"target {target_left.id} -> {target_right_id}"
        )
        if relationship.link_type == HIERARCHY_FORWARD:
            return self._create_child_link(relationship, target_left, target_right_id, touched)

        removed: list[Relationship] = []
        if relationship.link_type == HIERARCHY_REVERSE:
            removed = self._detach_parent(target_left, new_parent_id=target_right_id)

        self._target.add_relationship(target_left, candidate)
        return self._save_link(relationship, target_left, target_right_id, removed)

    def _create_child_link(
        self,
        relationship: Relationship,
        target_left: WorkItem,
        target_right_id: str,
        touched: list[WorkItem],
    ) -> LinkOutcome:
        """Make ``target_right_id`` a child of ``target_left`` by giving it a parent link.

        The child's current parent link, if any, is removed first, since a work
        item can have only one parent.
        """
        child = self._target.get_entity(target_right_id)
        if child is None:
            logger.warning(f"Child work item {target_right_id} of {target_left.id} not found in target")
            return LinkOutcome(relationship, "skipped", "child work item not found", target_right_id)
        touched.append(child)

        back_link = Relationship(
            kind="hierarchy",
            related_id=target_left.id,
            link_type=HIERARCHY_REVERSE,
            comment=relationship.comment,
        )
        if already_has_equivalent_relationship(child, back_link):
            return LinkOutcome(relationship, "skipped", "link already exists", target_right_id)

        removed = self._detach_parent(child, new_parent_id=target_left.id)
        self._target.add_relationship(child, back_link)
        return self._save_link(relationship, child, target_right_id, removed)

    def _save_link(
        self,
        relationship: Relationship,
        owner: WorkItem,
        target_right_id: str,
        removed_parents: list[Relationship],
    ) -> LinkOutcome:
        try:
            self._target.save_entity(owner)
        except RECOVERABLE_LINK_ERRORS:
            if removed_parents:
                lost = ", ".join(str(link.related_id) for link in removed_parents)
                logger.error(f"Work item {owner.id} lost its parent link(s) to {lost}; the replacement link failed")
            raise
        return LinkOutcome(relationship, "created", target_right_id=target_right_id)

    def _detach_parent(self, entity: WorkItem, new_parent_id: str | None) -> list[Relationship]:
        """Remove and persist the removal of parent links conflicting with ``new_parent_id``."""
        conflicts = parent_conflicts(entity, new_parent_id)
        if not conflicts:
            return []

        for conflict in conflicts:
            self._target.remove_relationship(entity, conflict)
        self._target.save_entity(entity)
        logger.info(
            f"Removed parent link(s) of {entity.id} to "
            f"{', '.join(str(link.related_id) for link in conflicts)} to make room for {new_parent_id}"
        )
        return conflicts

    def _resolve_right_hand_id(self, source_right_id: str, target_left: WorkItem) -> str | None:
        """Return the target id of the right-hand side of a source relationship.

        Within a single project (source and target are the same) the id is
        unchanged; otherwise the reflected identity of the source item is
        looked up in the target.
        """
        if same_container(
            self._context.source_collection_url,
            self._context.source_project,
            target_left.collection_url,
            target_left.project,
        ):
            return source_right_id

        identity = ReflectedIdentity(
            self._context.source_collection_url,
            self._context.source_project,
            source_right_id,
        )
        found = self._resolver.find(identity)
        return found.id if found is not None else None

    def _known_link_types(self) -> set[str]:
        if self._link_type_ends is None:
            self._link_type_ends = self._target.link_type_ends()
        return self._link_type_ends

    def _migrate_shared_steps(self, source_left: WorkItem, target_left: WorkItem) -> bool:
        """Point shared-step references in the target's steps field at migrated shared steps.

        Returns:
            True if the steps field was changed and saved
        """
        old_steps = str(self._target.get_field(target_left, STEPS_FIELD) or "")
        migrated_ids: dict[str, str] = {}

        for link in source_left.relationships:
            if link.link_type != SHARED_STEPS_LINK or not link.related_id:
                continue
            shared_step = self._source.get_entity(link.related_id)
            if shared_step is None:
                logger.warning(f"Shared step {link.related_id} of test case {source_left.id} not found in source")
                continue
            counterpart = self._resolver.find_for(shared_step)
            if counterpart is None or counterpart.id is None:
                logger.warning(f"Shared step {shared_step.id} of test case {source_left.id} has not been migrated")
                continue
            migrated_ids[str(shared_step.id)] = str(counterpart.id)

        # Each ref is rewritten at most once
        new_steps = SHARED_STEP_REF.sub(lambda match: f'ref="{migrated_ids.get(match[1], match[1])}"', old_steps)

        if new_steps == old_steps:
            return False

        self._target.set_field(target_left, STEPS_FIELD, new_steps)
        try:
            self._target.save_entity(target_left)
        except RECOVERABLE_LINK_ERRORS as e:
            self._target.reset_entity(target_left)
            logger.error(f"Updating shared step references of {target_left.id} failed: {e}")
            return False
        logger.info(f"Updated shared step references of test case {target_left.id}")
        return True
