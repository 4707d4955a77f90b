"""Tests for workflow graph models and static definition validation."""

import pytest
from pydantic import ValidationError

from stepflow.engine import (
    Condition,
    DefinitionInvalid,
    GraphBuilder,
    IssueCode,
    WorkflowGraph,
    create_execution,
    ensure_valid,
    validate_graph,
)
from stepflow.engine.validation import reachable_from


def _codes(graph: WorkflowGraph) -> list[IssueCode]:
    return [issue.code for issue in validate_graph(graph)]


class TestGraphModel:
    def test_initial_and_final_steps(self, approval_graph: WorkflowGraph) -> None:
        assert approval_graph.initial_step == "draft"
        assert approval_graph.final_steps == ["approved"]
        assert approval_graph.step_names == ["draft", "review", "approved"]

    def test_step_lookup_and_actions(self, approval_graph: WorkflowGraph) -> None:
        review = approval_graph.get_step("review")
        assert review is not None
        assert review.action_names == ["approve", "reject"]
        assert review.get_action("approve").to == "approved"
        assert review.get_action("missing") is None
        assert approval_graph.get_step("nope") is None

    def test_terminal_detection(self, approval_graph: WorkflowGraph) -> None:
        assert approval_graph.is_terminal("approved")
        assert not approval_graph.is_terminal("draft")
        assert not approval_graph.is_terminal("unknown")

    def test_can_transition(self, approval_graph: WorkflowGraph) -> None:
        assert approval_graph.can_transition("review", "reject", "draft")
        assert not approval_graph.can_transition("review", "reject", "approved")
        assert not approval_graph.can_transition("ghost", "reject", "draft")

    def test_form_fields_preserved_verbatim(self, approval_graph: WorkflowGraph) -> None:
        review = approval_graph.get_step("review")
        assert review.form_fields == [{"name": "comments", "as": "textarea"}]

    def test_graph_is_frozen(self, approval_graph: WorkflowGraph) -> None:
        with pytest.raises(ValidationError):
            approval_graph.name = "renamed"

    def test_mapping_shorthand_for_steps_and_actions(self) -> None:
        graph = WorkflowGraph.model_validate(
            {
                "name": "shorthand",
                "steps": {
                    "open": {"actions": {"close": "closed", "hold": {"to": "open"}}},
                    "closed": None,
                },
            }
        )
        assert graph.step_names == ["open", "closed"]
        assert graph.get_step("open").action_names == ["close", "hold"]
        assert graph.is_valid

    def test_string_conditions_are_coerced(self) -> None:
        graph = (
            GraphBuilder("coerce")
            .step("a", conditions=["ready == true"])
            .action("go", to="b", condition="x > 1")
            .step("b")
            .build()
        )
        step = graph.get_step("a")
        assert step.conditions == [Condition(expression="ready == true")]
        assert step.get_action("go").condition.expression == "x > 1"

    def test_callable_conditions_are_coerced(self) -> None:
        def has_owner(ctx):
            return "owner" in ctx

        graph = GraphBuilder("callables").step("a").action("go", to="b", condition=has_owner)
        built = graph.step("b").build()
        condition = built.get_step("a").get_action("go").condition
        assert condition.predicate is has_owner
        assert condition.label == "has_owner"

    def test_unsafe_condition_rejected_at_construction(self) -> None:
        with pytest.raises(ValidationError, match="Unsupported expression type"):
            GraphBuilder("unsafe").step("a").action(
                "go", to="b", condition="__import__('os').system('ls')"
            ).step("b").build()

    def test_invalid_names_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GraphBuilder("Not Kebab").step("a").build()
        with pytest.raises(ValidationError):
            GraphBuilder("ok").step("has space").build()

    def test_describe_is_json_friendly(self, approval_graph: WorkflowGraph) -> None:
        description = approval_graph.describe()
        assert description["initial_step"] == "draft"
        assert description["steps"][1]["actions"][0]["name"] == "approve"
        assert description["steps"][2]["terminal"] is True


class TestDefinitionValidator:
    def test_valid_graph_has_no_issues(self, approval_graph: WorkflowGraph) -> None:
        assert validate_graph(approval_graph) == []
        assert approval_graph.validate_definition() == []
        assert approval_graph.is_valid

    def test_no_steps(self) -> None:
        graph = WorkflowGraph(name="empty")
        assert _codes(graph) == [IssueCode.NO_STEPS]

    def test_duplicate_step_and_action(self) -> None:
        graph = (
            GraphBuilder("dupes")
            .step("a")
            .action("go", to="b")
            .action("go", to="b")
            .step("b")
            .step("b")
            .build()
        )
        codes = _codes(graph)
        assert IssueCode.DUPLICATE_STEP in codes
        assert IssueCode.DUPLICATE_ACTION in codes

    def test_unknown_target(self) -> None:
        graph = GraphBuilder("dangling").step("a").action("go", to="nowhere").build()
        issues = validate_graph(graph)
        assert [i.code for i in issues] == [IssueCode.UNKNOWN_TARGET]
        assert issues[0].step == "a"
        assert issues[0].action == "go"
        assert "nowhere" in issues[0].message

    def test_unreachable_step(self) -> None:
        graph = (
            GraphBuilder("island")
            .step("a")
            .action("go", to="b")
            .step("b")
            .step("island")
            .action("back", to="a")
            .build()
        )
        issues = validate_graph(graph)
        assert [i.code for i in issues] == [IssueCode.UNREACHABLE_STEP]
        assert issues[0].step == "island"

    def test_reachability_ignores_conditions(self) -> None:
        graph = (
            GraphBuilder("gated")
            .step("a")
            .action("go", to="b", condition="false")
            .step("b")
            .build()
        )
        assert validate_graph(graph) == []

    def test_all_issues_reported_in_one_pass(self) -> None:
        graph = (
            GraphBuilder("broken")
            .step("a")
            .action("go", to="missing")
            .action("go", to="a")
            .step("orphan")
            .build()
        )
        codes = set(_codes(graph))
        assert codes == {
            IssueCode.DUPLICATE_ACTION,
            IssueCode.UNKNOWN_TARGET,
            IssueCode.UNREACHABLE_STEP,
        }

    def test_ensure_valid_raises_with_every_issue(self) -> None:
        graph = GraphBuilder("bad").step("a").action("go", to="x").step("b").build()
        with pytest.raises(DefinitionInvalid) as exc_info:
            ensure_valid(graph)
        assert len(exc_info.value.issues) == 2
        assert exc_info.value.workflow_name == "bad"
        assert exc_info.value.to_dict()["details"]["issues"][0]["code"] == "unknown_target"

    def test_invalid_graph_cannot_create_executions(self) -> None:
        graph = GraphBuilder("bad").step("a").action("go", to="x").build()
        with pytest.raises(DefinitionInvalid):
            create_execution(graph, {"type": "Doc", "id": 1})

    def test_reachable_from_is_breadth_first(self, approval_graph: WorkflowGraph) -> None:
        assert reachable_from(approval_graph, "draft") == ["draft", "review", "approved"]
        assert reachable_from(approval_graph, "approved") == ["approved"]
        assert reachable_from(approval_graph, "ghost") == []
