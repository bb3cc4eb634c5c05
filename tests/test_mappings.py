"""
Tests for mapping table construction.
"""

import pytest

from ado_to_ado_migrator.mappings import build_mapping_table, find_existing_mappings
from ado_to_ado_migrator.models import DefinitionVersion, Mapping
from ado_to_ado_migrator.pipeline_models import AgentQueue, TaskGroup


@pytest.mark.unit
class TestFindExistingMappings:
    def test_maps_by_name(self) -> None:
        sources = [AgentQueue("1", "Default"), AgentQueue("2", "Linux")]
        targets = [AgentQueue("10", "Default"), AgentQueue("11", "Windows")]

        mappings = find_existing_mappings(sources, targets, [])

        assert mappings == [Mapping(source_id="1", target_id="10", name="Default")]

    def test_skips_entities_created_in_this_run(self) -> None:
        sources = [AgentQueue("1", "Default")]
        targets = [AgentQueue("10", "Default")]

        assert find_existing_mappings(sources, targets, [Mapping("1", "10", "Default")]) == []

    def test_duplicate_source_names_fan_out(self) -> None:
        sources = [AgentQueue("1", "Default"), AgentQueue("2", "Default")]
        targets = [AgentQueue("10", "Default")]

        mappings = find_existing_mappings(sources, targets, [])

        assert [(m.source_id, m.target_id) for m in mappings] == [("1", "10"), ("2", "10")]

    def test_no_duplicates(self) -> None:
        sources = [AgentQueue("1", "Default")]
        targets = [AgentQueue("10", "Default"), AgentQueue("10", "Default")]

        assert len(find_existing_mappings(sources, targets, [])) == 1

    def test_carries_target_version(self) -> None:
        sources = [TaskGroup("tg-1", "Deploy", version=DefinitionVersion(1))]
        targets = [TaskGroup("tg-9", "Deploy", version=DefinitionVersion(3))]

        [mapping] = find_existing_mappings(sources, targets, [])

        assert mapping.version == DefinitionVersion(3)

    def test_ignores_unnamed_and_unpersisted_targets(self) -> None:
        sources = [AgentQueue("1", "Default"), AgentQueue("2", "")]
        targets = [AgentQueue(None, "Default"), AgentQueue("11", "")]

        assert find_existing_mappings(sources, targets, []) == []


@pytest.mark.unit
class TestBuildMappingTable:
    def test_new_mappings_come_first(self) -> None:
        sources = [AgentQueue("1", "Default"), AgentQueue("3", "New")]
        targets = [AgentQueue("10", "Default"), AgentQueue("12", "New")]
        created = [Mapping("3", "12", "New")]

        table = build_mapping_table(sources, targets, created, kind="agent queue")

        assert table == [Mapping("3", "12", "New"), Mapping("1", "10", "Default")]

    def test_empty_when_nothing_corresponds(self) -> None:
        assert build_mapping_table([AgentQueue("1", "A")], [AgentQueue("2", "B")], []) == []
