"""Mapping tables: source id -> target id correspondences for one entity kind."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from .models import DefinitionVersion, Mapping

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger: logging.Logger = logging.getLogger(__name__)


class NamedEntity(Protocol):
    """Anything with an id, a name and an optional version (definitions, pools, ...)."""

    @property
    def id(self) -> str | None: ...

    @property
    def name(self) -> str: ...

    @property
    def version(self) -> DefinitionVersion | None: ...


def find_existing_mappings(
    sources: Iterable[NamedEntity],
    targets: Iterable[NamedEntity],
    newly_migrated: Sequence[Mapping],
    *,
    kind: str = "entity",
) -> list[Mapping]:
    """Map target entities that were not created in this run to their source by name.

    Name equality is the only correspondence key here, which is not safe when
    the target holds an unrelated entity with the same name. A name that matches
    several source entities yields one mapping per source entity.

    Args:
        sources: Source entities of one kind
        targets: Target entities of the same kind
        newly_migrated: Mappings for entities created in the current run
        kind: Entity kind, for logging

    Returns:
        Mappings for the pre-existing target entities, without duplicates
    """
    accounted_for = {mapping.target_id for mapping in newly_migrated}
    sources = list(sources)

    existing: list[Mapping] = []
    seen: set[tuple[str, str, str]] = set()
    for target in targets:
        if target.id is None or not target.name or target.id in accounted_for:
            continue

        matches = [source for source in sources if source.name == target.name and source.id is not None]
        if not matches:
            logger.info(f"The {kind} {target.name}({target.id}) doesn't exist in the source project")
            continue

        for source in matches:
            key = (target.name.strip(), str(source.id), str(target.id))
            if key in seen:
                continue
            seen.add(key)
            existing.append(
                Mapping(source_id=str(source.id), target_id=str(target.id), name=target.name, version=target.version)
            )

    return existing


def build_mapping_table(
    sources: Iterable[NamedEntity],
    targets: Iterable[NamedEntity],
    newly_migrated: Sequence[Mapping],
    *,
    kind: str = "entity",
) -> list[Mapping]:
    """Return the authoritative mapping table of a kind for the rest of the run.

    The table is ``newly_migrated`` followed by the name-matched mappings of
    all target entities not created in this run.
    """
    table = list(newly_migrated) + find_existing_mappings(sources, targets, newly_migrated, kind=kind)
    logger.debug(f"Mapping table for {kind}: {len(newly_migrated)} new, {len(table) - len(newly_migrated)} existing")
    return table
