"""Tests for YAML loading, workflow discovery and the registry."""

from pathlib import Path

import pytest

from conftest import REVIEWER, SUBJECT
from stepflow.engine import (
    DefinitionInvalid,
    ExecutionStatus,
    GraphBuilder,
    LoadResult,
    TransitionEngine,
    WorkflowGraph,
    WorkflowRegistry,
    discover_workflows,
    load_workflow_from_file,
    load_workflow_from_yaml,
)
from stepflow.engine.registry import TEMPLATES_DIR

VALID_YAML = """
name: leave-request
description: Ask for time off
tags: [hr]
steps:
  - name: requested
    actions:
      - {name: approve, to: granted, condition: "days <= 10"}
      - {name: deny, to: denied}
  - name: granted
  - name: denied
"""

BROKEN_GRAPH_YAML = """
name: broken-request
steps:
  - name: requested
    actions:
      - {name: approve, to: nowhere}
  - name: orphan
"""


def _write(directory: Path, name: str, content: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(content, encoding="utf-8")
    return path


class TestLoader:
    def test_load_valid_yaml(self) -> None:
        result = load_workflow_from_yaml(VALID_YAML)

        assert result.is_success
        graph = result.unwrap()
        assert graph.name == "leave-request"
        assert graph.tags == ["hr"]
        assert graph.final_steps == ["granted", "denied"]
        assert graph.get_step("requested").get_action("approve").condition.expression == "days <= 10"

    def test_definition_issues_are_all_reported(self) -> None:
        result = load_workflow_from_yaml(BROKEN_GRAPH_YAML, source="broken.yaml")

        assert result.is_failure
        assert "broken.yaml" in result.error
        assert "2 definition issue(s)" in result.error
        assert result.issue_codes == ["unknown_target", "unreachable_step"]
        assert result.workflow_name == "broken-request"
        assert result.source == "broken.yaml"
        assert result.value is None

    def test_unwrap_invalid_definition_raises_with_issues(self) -> None:
        result = load_workflow_from_yaml(BROKEN_GRAPH_YAML)

        with pytest.raises(DefinitionInvalid) as exc_info:
            result.unwrap()
        assert exc_info.value.workflow_name == "broken-request"
        assert len(exc_info.value.issues) == 2

    def test_invalid_yaml_syntax(self) -> None:
        result = load_workflow_from_yaml("name: [unclosed")
        assert result.is_failure
        assert not result
        assert result.issue_codes == []
        assert "Invalid YAML syntax" in result.error
        with pytest.raises(ValueError, match="Cannot unwrap failed result"):
            result.unwrap()

    def test_non_mapping_document(self) -> None:
        result = load_workflow_from_yaml("- just\n- a list\n")
        assert result.is_failure
        assert "must be a YAML dictionary" in result.error

    def test_model_errors_name_the_field(self) -> None:
        result = load_workflow_from_yaml("name: Bad Name\nsteps: []\n")
        assert result.is_failure
        assert "name" in result.error

    def test_unsafe_condition_is_a_load_failure(self) -> None:
        content = VALID_YAML.replace("days <= 10", "__import__('os').getcwd()")
        result = load_workflow_from_yaml(content)
        assert result.is_failure

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "leave.yaml", VALID_YAML)
        assert load_workflow_from_file(path).unwrap().name == "leave-request"

    def test_missing_file(self, tmp_path: Path) -> None:
        result = load_workflow_from_file(tmp_path / "absent.yaml")
        assert result.is_failure
        assert "not found" in result.error

    def test_directory_is_not_a_file(self, tmp_path: Path) -> None:
        assert load_workflow_from_file(tmp_path).is_failure

    def test_discover_workflows(self, tmp_path: Path) -> None:
        _write(tmp_path, "a-leave.yaml", VALID_YAML)
        _write(tmp_path, "b-broken.yml", BROKEN_GRAPH_YAML)
        _write(tmp_path / "nested", "c-leave.yaml", VALID_YAML)

        result = discover_workflows(tmp_path)

        assert result.is_success
        assert [g.name for g in result.unwrap()] == ["leave-request"]
        assert len(result.skipped) == 1
        assert result.skipped[0].startswith("b-broken.yml")

    def test_discover_missing_directory(self, tmp_path: Path) -> None:
        assert discover_workflows(tmp_path / "absent").is_failure


class TestLoadResult:
    def test_needs_exactly_one_of_value_or_error(self) -> None:
        with pytest.raises(ValueError):
            LoadResult()
        with pytest.raises(ValueError):
            LoadResult(value=1, error="boom")

    def test_falsy_values_still_count_as_loaded(self) -> None:
        result = LoadResult.loaded(0, skipped=["a.yaml: bad"])
        assert result
        assert result.unwrap() == 0
        assert result.skipped == ["a.yaml: bad"]


class TestRegistry:
    def test_register_and_get(self, approval_graph: WorkflowGraph) -> None:
        registry = WorkflowRegistry()
        registry.register(approval_graph)

        assert registry.get("approval") is approval_graph
        assert "approval" in registry
        assert registry.exists("approval")
        assert len(registry) == 1
        assert repr(registry) == "WorkflowRegistry(workflows=1)"

    def test_duplicate_requires_replace(self, approval_graph: WorkflowGraph) -> None:
        registry = WorkflowRegistry()
        registry.register(approval_graph)

        with pytest.raises(ValueError, match="already registered"):
            registry.register(approval_graph)
        registry.register(approval_graph, replace=True)
        assert len(registry) == 1

    def test_invalid_graph_is_refused(self) -> None:
        graph = GraphBuilder("dangling").step("a").action("go", to="b").build()
        with pytest.raises(DefinitionInvalid):
            WorkflowRegistry().register(graph)

    def test_unknown_workflow(self, registry: WorkflowRegistry) -> None:
        with pytest.raises(KeyError, match="Available workflows"):
            registry.get("missing")
        with pytest.raises(KeyError):
            registry.unregister("missing")

    def test_unregister(self, registry: WorkflowRegistry) -> None:
        registry.unregister("approval")
        assert registry.list_names() == ["scored-review"]

    def test_list_names_by_tags(self, registry: WorkflowRegistry) -> None:
        assert registry.list_names() == ["approval", "scored-review"]
        assert registry.list_names(tags=["approval"]) == ["approval"]
        assert registry.list_names(tags=["approval", "missing"]) == []

    def test_metadata(self, registry: WorkflowRegistry) -> None:
        metadata = registry.get_workflow_metadata("approval")
        assert metadata["name"] == "approval"
        assert metadata["source"] is None

    def test_load_from_directory(self, tmp_path: Path) -> None:
        _write(tmp_path, "leave.yaml", VALID_YAML)
        _write(tmp_path / "nested", "broken.yaml", BROKEN_GRAPH_YAML)
        _write(tmp_path / "copies", "leave-copy.yml", VALID_YAML)

        registry = WorkflowRegistry()
        result = registry.load_from_directory(tmp_path)

        assert result.unwrap() == 1
        assert len(result.skipped) == 2
        assert registry.get_workflow_source("leave-request") == tmp_path

    def test_load_from_missing_directory(self, tmp_path: Path) -> None:
        result = WorkflowRegistry().load_from_directory(tmp_path / "absent")
        assert result.is_failure
        assert "Directory not found" in result.error

    def test_clear(self, registry: WorkflowRegistry) -> None:
        registry.clear()
        assert len(registry) == 0

    def test_create_execution(self, registry: WorkflowRegistry) -> None:
        execution = registry.create_execution(
            "approval",
            SUBJECT,
            initial_context={"title": "Q3"},
            assigned_to=REVIEWER,
            execution_id="exec-1",
        )
        assert execution.id == "exec-1"
        assert execution.workflow == "approval"
        assert execution.current_step == "draft"
        assert execution.context == {"title": "Q3"}
        assert str(execution.assigned_to) == "User:7"
        assert execution.status == ExecutionStatus.ACTIVE
        assert execution.version == 0

    def test_create_execution_for_unknown_workflow(self, registry: WorkflowRegistry) -> None:
        with pytest.raises(KeyError):
            registry.create_execution("missing", SUBJECT)


class TestTemplates:
    def test_bundled_templates_load(self) -> None:
        registry = WorkflowRegistry()
        result = registry.load_templates()

        assert result.unwrap() == 2
        assert result.skipped == []
        assert registry.list_names() == ["document-approval", "simple-approval"]
        assert registry.get_workflow_source("simple-approval") == TEMPLATES_DIR

    def test_document_approval_walkthrough(self) -> None:
        registry = WorkflowRegistry()
        registry.load_templates()
        engine = TransitionEngine(registry)
        execution = registry.create_execution("document-approval", SUBJECT)

        assert not engine.perform(execution, "submit_for_review")
        assert engine.perform(
            execution, "submit_for_review", extra_context={"title": "Q3", "content": "..."}
        )
        assert not engine.perform(execution, "approve", extra_context={"score": 5})
        assert engine.perform(execution, "approve", extra_context={"score": 9})
        assert engine.available_actions(execution) == ["publish"]
        assert engine.perform(execution, "publish")
        assert engine.perform(execution, "archive")

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.action for r in execution.history] == [
            "submit_for_review",
            "approve",
            "publish",
            "archive",
        ]

    def test_escalation_requires_escalated_to(self) -> None:
        registry = WorkflowRegistry()
        registry.load_templates()
        engine = TransitionEngine(registry)
        execution = registry.create_execution(
            "document-approval", SUBJECT, initial_context={"title": "T", "content": "C"}
        )
        engine.perform(execution, "submit_for_review")
        engine.perform(execution, "escalate", extra_context={"escalated_to": None})

        result = engine.perform(execution, "senior_approve")
        assert result.is_rejected
        assert result.error.scope == "step"
        assert engine.perform(execution, "senior_approve", extra_context={"escalated_to": "cto"})
