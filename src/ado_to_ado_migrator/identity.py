"""Reflected identities: provenance markers linking target entities to their source.

A target work item created by the migration carries, in a designated field,
the coordinates of the source work item it was created from::

    https://dev.azure.com/source-org/SourceProject/_entities/edit/42

Every later run derives the same marker from the source item and looks it up
in the target to decide whether the item was already migrated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from .exceptions import MalformedIdentityError

if TYPE_CHECKING:
    from .models import MigrationContext, WorkItem
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)

MARKER_SEGMENT: Final[str] = "_entities/edit"

_MARKER_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?P<root>[\S ]+)/(?P<container>[^/]+)/_entities/edit/(?P<local_id>[^/\s]+)$"
)


@dataclass(frozen=True)
class ReflectedIdentity:
    """Coordinates of a source entity: collection URL, project, and local id.

    Trailing separators on the root and the container are stripped on
    construction, so two identities are equal when their components match
    after normalisation.
    """

    system_root: str
    container: str
    local_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "system_root", self.system_root.rstrip("/"))
        object.__setattr__(self, "container", self.container.strip("/"))
        object.__setattr__(self, "local_id", str(self.local_id))
        if not self.system_root or not self.container or not self.local_id:
            msg = f"Incomplete reflected identity: {self.system_root!r}, {self.container!r}, {self.local_id!r}"
            raise MalformedIdentityError(msg)

    def __str__(self) -> str:
        return format_identity(self)


def derive(entity: WorkItem) -> ReflectedIdentity:
    """Build the reflected identity of an entity from its own coordinates.

    Raises:
        MalformedIdentityError: If the entity has no id, project or collection URL
    """
    if not entity.id or not entity.project or not entity.collection_url:
        msg = (
            f"Cannot derive identity for work item (id={entity.id!r}, project={entity.project!r}, "
            f"collection={entity.collection_url!r})"
        )
        raise MalformedIdentityError(msg)
    return ReflectedIdentity(entity.collection_url, entity.project, entity.id)


def parse(marker: str) -> ReflectedIdentity:
    """Parse a provenance marker back into a reflected identity.

    Raises:
        MalformedIdentityError: If the marker does not have the canonical format
    """
    match = _MARKER_PATTERN.match(marker.strip()) if marker else None
    if not match:
        logger.error(f"Unable to parse reflected identity from marker {marker!r}")
        msg = f"Unable to parse reflected identity: {marker!r}"
        raise MalformedIdentityError(msg)
    return ReflectedIdentity(match.group("root"), match.group("container"), match.group("local_id"))


def format_identity(identity: ReflectedIdentity) -> str:
    """Format a reflected identity as the marker stored in the target entity."""
    return f"{identity.system_root}/{identity.container}/{MARKER_SEGMENT}/{identity.local_id}"


def same_container(collection_a: str, project_a: str, collection_b: str, project_b: str) -> bool:
    """Check whether two (collection, project) coordinates point at the same project."""
    return project_a == project_b and _normalize_root(collection_a) == _normalize_root(collection_b)


def _normalize_root(url: str) -> str:
    return url.replace("/", "").lower()


class IdentityResolver:
    """Looks up target entities by the reflected identity of their source.

    Successful lookups are cached for the lifetime of the resolver, which is
    one migration run. Misses are never cached, so a later lookup re-queries.
    """

    _store: WorkItemStore
    _context: MigrationContext
    _cache: dict[str, WorkItem]

    def __init__(self, store: WorkItemStore, context: MigrationContext) -> None:
        self._store = store
        self._context = context
        self._cache = {}

    def find(self, identity: ReflectedIdentity) -> WorkItem | None:
        """Return the target entity created from ``identity``, or None."""
        marker = format_identity(identity)
        cached = self._cache.get(marker)
        if cached is not None:
            return cached

        scope = None if self._context.allow_cross_project_links else self._context.target_project
        found = self._store.resolve_by_provenance_marker(marker, container_scope=scope)
        if found is not None:
            self._cache[marker] = found
            logger.debug(f"Resolved {marker} to target work item {found.id}")
        return found

    def find_for(self, source: WorkItem) -> WorkItem | None:
        """Return the target counterpart of a source entity, or None."""
        return self.find(derive(source))
