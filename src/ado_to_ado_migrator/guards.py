"""Predicates shared by relationship replication and pipeline migration.

All functions here are pure: they inspect entities and tables and never
touch a store.
"""

from __future__ import annotations

import logging
from pathlib import PureWindowsPath
from typing import TYPE_CHECKING, Final
from urllib.parse import urlsplit

from .models import HIERARCHY_REVERSE

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .models import Mapping, Relationship, WorkItem

logger: logging.Logger = logging.getLogger(__name__)

BUILD_ARTIFACT_PREFIX: Final[str] = "vstfs:///Build/Build/"


def normalize_hyperlink(address: str) -> str | None:
    """Return the absolute URI form of a hyperlink address, or None if it has none.

    Surrounding quotes are removed and UNC paths (``\\\\server\\share``) become
    ``file://server/share``.
    """
    location = address.strip().strip('"').strip()
    if not location:
        return None

    if location.startswith("\\\\"):
        try:
            return PureWindowsPath(location).as_uri()
        except ValueError:
            logger.error(f"Unable to get absolute URI of [{address}]")
            return None

    parts = urlsplit(location)
    if not parts.scheme or (parts.scheme in ("http", "https") and not parts.netloc):
        logger.error(f"Unable to get absolute URI of [{address}]")
        return None
    if " " in location:
        location = location.replace(" ", "%20")
    return location


def is_build_artifact(uri: str | None) -> bool:
    """Check whether an artifact URI points at a build result of the source system."""
    return uri is not None and uri.lower().startswith(BUILD_ARTIFACT_PREFIX.lower())


def already_has_equivalent_relationship(target: WorkItem, candidate: Relationship) -> bool:
    """Check whether ``target`` already holds a relationship equivalent to ``candidate``.

    - hyperlinks match on their normalised address, case-insensitively
    - artifact links match on the exact URI
    - related and hierarchy links match on right-hand id and link type
    """
    if candidate.kind == "hyperlink":
        wanted = normalize_hyperlink(candidate.address)
        if wanted is None:
            return False
        return any(
            (existing_address := normalize_hyperlink(existing.address)) is not None
            and existing_address.lower() == wanted.lower()
            for existing in target.relationships
            if existing.kind == "hyperlink"
        )
    if candidate.kind == "external_artifact":
        return any(
            existing.kind == "external_artifact" and existing.address == candidate.address
            for existing in target.relationships
        )
    return any(
        existing.kind in ("related", "hierarchy")
        and existing.related_id == candidate.related_id
        and existing.link_type == candidate.link_type
        for existing in target.relationships
    )


def parent_conflicts(entity: WorkItem, new_parent_id: str | None = None) -> list[Relationship]:
    """Return the parent links a new incoming hierarchy edge would conflict with.

    A link to ``new_parent_id`` itself is not a conflict.
    """
    return [
        existing
        for existing in entity.relationships
        if existing.link_type == HIERARCHY_REVERSE and existing.related_id != new_parent_id
    ]


def existing_mapping_for(source_id: str, table: Iterable[Mapping] | None) -> Mapping | None:
    """Return the first mapping of ``source_id`` in ``table``, or None."""
    if table is None:
        return None
    return next((mapping for mapping in table if mapping.source_id == source_id), None)


def should_skip_due_to_count_heuristic(source: WorkItem, target: WorkItem) -> bool:
    """Assume replication already happened when both sides hold as many relationships.

    This is a coarse shortcut: it misses newly added source relationships when
    the counts coincide. Callers use it only when explicitly enabled.
    """
    return len(target.relationships) == len(source.relationships)
