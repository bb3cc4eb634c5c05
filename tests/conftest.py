"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings (skipped links and missing mappings are logged as warnings)

It also provides in-memory source and target projects shared by the tests.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest
from typing_extensions import override

from ado_to_ado_migrator.identity import derive, format_identity
from ado_to_ado_migrator.models import DEFAULT_REFLECTED_FIELD, MigrationContext
from fakes import InMemoryWorkItemStore

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

    from ado_to_ado_migrator.models import WorkItem

SOURCE_URL = "https://dev.azure.com/source-org"
TARGET_URL = "https://dev.azure.com/target-org"
SOURCE_PROJECT = "SourceProject"
TARGET_PROJECT = "TargetProject"


@pytest.fixture
def context() -> MigrationContext:
    return MigrationContext(
        source_collection_url=SOURCE_URL,
        source_project=SOURCE_PROJECT,
        target_collection_url=TARGET_URL,
        target_project=TARGET_PROJECT,
    )


@pytest.fixture
def source_store() -> InMemoryWorkItemStore:
    return InMemoryWorkItemStore(SOURCE_URL, SOURCE_PROJECT)


@pytest.fixture
def target_store() -> InMemoryWorkItemStore:
    # Distinct id range so that source and target ids are never confused
    return InMemoryWorkItemStore(TARGET_URL, TARGET_PROJECT, first_id=500)


@pytest.fixture
def migrated(target_store: InMemoryWorkItemStore) -> Callable[[WorkItem], WorkItem]:
    """Create the target counterpart of a source work item, stamped with its reflected identity."""

    def create_counterpart(source: WorkItem) -> WorkItem:
        return target_store.create(
            source.work_item_type,
            source.title,
            fields={DEFAULT_REFLECTED_FIELD: format_identity(derive(source))},
        )

    return create_counterpart


class WarningCollector(logging.Handler):
    """Collect WARNING and above records emitted while a test runs."""

    def __init__(self) -> None:
        super().__init__(level=logging.WARNING)
        self.records: list[logging.LogRecord] = []

    @override
    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(request: pytest.FixtureRequest) -> Generator[None]:
    """Fail integration tests that make the migration engine log a warning or an error."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    collector = WarningCollector()
    root_logger = logging.getLogger()
    root_logger.addHandler(collector)
    try:
        yield
    finally:
        root_logger.removeHandler(collector)

    if collector.records:
        pytest.fail(
            f"{len(collector.records)} warning(s) logged:\n"
            + "\n".join(f"  - {r.levelname}: {r.getMessage()} (in {r.name}:{r.lineno})" for r in collector.records)
        )
