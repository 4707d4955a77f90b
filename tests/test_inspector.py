"""Tests for the Inspector: traces, simulation, graph analysis and reports."""

import json
from datetime import timedelta

import pytest
import yaml

from conftest import REVIEWER, SUBJECT, T0, Clock
from stepflow.engine import (
    ExecutionState,
    ExecutionStatus,
    GraphBuilder,
    Inspector,
    TransitionEngine,
    TransitionRecord,
    WorkflowGraph,
    WorkflowRegistry,
    create_execution,
    format_duration,
)
from stepflow.engine.inspector import find_cycles
from stepflow.settings import EngineSettings


@pytest.fixture
def walked(engine: TransitionEngine, execution: ExecutionState, clock: Clock) -> ExecutionState:
    """Approval execution walked through submit, reject, submit at known times."""
    clock.advance(30)
    engine.perform(execution, "submit", REVIEWER)
    clock.advance(90)
    engine.perform(execution, "reject", REVIEWER)
    clock.advance(7200)
    engine.perform(execution, "submit", REVIEWER)
    return execution


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (None, "N/A"),
        (12.5, "12.5s"),
        (90.0, "1.5m"),
        (5400.0, "1.5h"),
    ],
)
def test_format_duration(seconds: float | None, expected: str) -> None:
    assert format_duration(seconds) == expected


class TestTrace:
    def test_durations_measure_time_in_from_step(
        self, inspector: Inspector, walked: ExecutionState
    ) -> None:
        trace = inspector.trace(walked)

        assert [e.step_number for e in trace] == [1, 2, 3]
        assert [e.duration_seconds for e in trace] == [30.0, 90.0, 7200.0]
        assert [e.duration for e in trace] == ["30.0s", "1.5m", "2.0h"]
        assert trace[0].from_step == "draft"
        assert trace[0].actor == "User:7"
        assert trace[2].timestamp == (T0 + timedelta(seconds=7320)).isoformat()

    def test_empty_history(self, inspector: Inspector, execution: ExecutionState) -> None:
        assert inspector.trace(execution) == []

    def test_out_of_order_timestamps(
        self, inspector: Inspector, execution: ExecutionState
    ) -> None:
        execution.history = [
            TransitionRecord(
                from_step="draft",
                to_step="review",
                action="submit",
                timestamp=T0 - timedelta(minutes=5),
            )
        ]
        entry = inspector.trace(execution)[0]
        assert entry.duration_seconds is None
        assert entry.duration == "N/A"


class TestActions:
    def test_suggest_actions(self, inspector: Inspector, registry: WorkflowRegistry) -> None:
        execution = registry.create_execution(
            "scored-review", SUBJECT, initial_context={"score": 3}
        )
        suggestions = {s.action: s for s in inspector.suggest_actions(execution)}

        assert suggestions["grade"].has_condition
        assert not suggestions["grade"].condition_met
        assert suggestions["grade"].target_step == "passed"
        assert suggestions["retry"].condition_met
        assert suggestions["retry"].reason is None

    def test_simulate_warnings(
        self, inspector: Inspector, engine: TransitionEngine, execution: ExecutionState
    ) -> None:
        engine.perform(execution, "submit", extra_context={"comments": "draft 1"})

        result = inspector.simulate(execution, "approve", {"comments": "looks good"})

        assert result.would_succeed
        assert result.target_step == "approved"
        assert result.error_type is None
        assert "Test context overrides existing keys: comments" in result.warnings
        assert "Execution would complete at step 'approved'" in result.warnings
        assert execution.current_step == "review"
        assert execution.context == {"comments": "draft 1"}

    def test_simulate_rejection(self, inspector: Inspector, registry: WorkflowRegistry) -> None:
        execution = registry.create_execution("scored-review", SUBJECT)
        result = inspector.simulate(execution, "grade", {"score": 2})

        assert not result.would_succeed
        assert result.error_type == "ConditionsNotSatisfied"
        assert result.failed_condition == 'ctx["score"] >= 7'
        assert result.validation_details[0].startswith("[action]")

    def test_simulate_confirmation_warning(self) -> None:
        graph = (
            GraphBuilder("confirm")
            .step("open")
            .action("purge", to="closed", confirmation_required=True)
            .step("closed")
            .build()
        )
        inspector = Inspector(TransitionEngine(graph))
        execution = create_execution(graph, SUBJECT)
        result = inspector.simulate(execution, "purge")
        assert "Action 'purge' requires confirmation" in result.warnings

    def test_simulate_rejects_non_json_context(
        self, inspector: Inspector, execution: ExecutionState
    ) -> None:
        with pytest.raises(TypeError):
            inspector.simulate(execution, "submit", {"when": object()})


class TestGraphAnalysis:
    def test_approval_graph(self, inspector: Inspector, approval_graph: WorkflowGraph) -> None:
        analysis = inspector.analyze_graph(approval_graph)

        assert analysis.start_step == "draft"
        assert analysis.reachable_steps == ["draft", "review", "approved"]
        assert analysis.unreachable_steps == []
        assert analysis.cycles == [["draft", "review"]]
        assert analysis.potential_deadlocks == []
        assert analysis.final_steps == ["approved"]

    def test_from_current_step(self, inspector: Inspector, approval_graph: WorkflowGraph) -> None:
        analysis = inspector.analyze_graph(approval_graph, current_step="approved")
        assert analysis.reachable_steps == ["approved"]
        assert analysis.unreachable_steps == ["draft", "review"]

    def test_deadlocks(self, inspector: Inspector) -> None:
        graph = (
            GraphBuilder("trap")
            .step("start")
            .action("finish", to="end")
            .action("stray", to="spin")
            .action("lost", to="limbo")
            .step("spin")
            .action("again", to="spin")
            .step("limbo")
            .action("vanish", to="nowhere")
            .step("end")
            .build()
        )
        analysis = inspector.analyze_graph(graph)

        assert analysis.potential_deadlocks == ["spin", "limbo"]
        assert analysis.cycles == [["spin"]]

    def test_self_loop_is_a_cycle(self, scored_graph: WorkflowGraph) -> None:
        assert find_cycles(scored_graph) == [["draft"]]

    def test_cycles_reported_once(self) -> None:
        graph = (
            GraphBuilder("triangle")
            .step("a")
            .action("next", to="b")
            .action("skip", to="c")
            .step("b")
            .action("next", to="c")
            .action("back", to="a")
            .step("c")
            .action("next", to="a")
            .build()
        )
        assert find_cycles(graph) == [["a", "b", "c"], ["a", "b"], ["a", "c"]]


class TestMetrics:
    def test_history_metrics(self, inspector: Inspector, walked: ExecutionState) -> None:
        metrics = inspector.metrics(walked)

        assert metrics.history_length == 3
        assert metrics.total_elapsed_seconds == 7320.0
        assert metrics.total_elapsed == "2.0h"
        assert metrics.step_durations == {"draft": 7230.0, "review": 90.0}
        assert metrics.average_step_seconds == pytest.approx(2440.0)
        assert metrics.time_in_current_step_seconds is not None
        assert metrics.warnings == []

    def test_context_metrics(self, inspector: Inspector, registry: WorkflowRegistry) -> None:
        execution = registry.create_execution(
            "approval",
            SUBJECT,
            initial_context={
                "title": "Q3",
                "pages": 3,
                "tags": [],
                "meta": {"owner": None, "labels": ["x"]},
            },
        )
        metrics = inspector.metrics(execution)

        assert metrics.context_keys == 4
        assert metrics.nesting_depth == 3
        assert metrics.data_types == {"str": 2, "int": 1, "null": 1}
        assert metrics.null_values == 1
        assert metrics.empty_collections == 1
        assert metrics.total_elapsed == "N/A"
        assert metrics.average_step_seconds is None

    def test_large_context_warning(
        self, engine: TransitionEngine, registry: WorkflowRegistry
    ) -> None:
        inspector = Inspector(engine, EngineSettings(max_context_bytes=16))
        execution = registry.create_execution(
            "approval", SUBJECT, initial_context={"body": "x" * 64}
        )
        assert any("unusually large" in w for w in inspector.metrics(execution).warnings)

    def test_finished_execution_has_no_current_step_time(
        self, inspector: Inspector, engine: TransitionEngine, execution: ExecutionState
    ) -> None:
        engine.perform(execution, "submit")
        engine.perform(execution, "approve")
        assert inspector.metrics(execution).time_in_current_step_seconds is None


class TestReports:
    def test_history_analysis(self, inspector: Inspector, walked: ExecutionState) -> None:
        analysis = inspector.history_analysis(walked)

        assert analysis["total_transitions"] == 3
        assert analysis["unique_actors"] == 1
        assert analysis["step_frequency"] == {"review": 2, "draft": 1}
        assert analysis["action_frequency"] == {"submit": 2, "reject": 1}
        assert analysis["backtracking_instances"] == 1

    def test_potential_issues(
        self, inspector: Inspector, engine: TransitionEngine, execution: ExecutionState
    ) -> None:
        for _ in range(3):
            engine.perform(execution, "submit")
            engine.perform(execution, "reject")

        issues = inspector.potential_issues(execution)

        assert any("hasn't been updated in over 24 hours" in i for i in issues)
        assert any("Potential loop: 'submit' (draft -> review) performed 3 times" in i for i in issues)
        assert any("Potential loop: 'reject'" in i for i in issues)

    def test_failed_and_unknown_step(
        self, inspector: Inspector, engine: TransitionEngine, execution: ExecutionState
    ) -> None:
        execution.current_step = "vanished"
        engine.perform(execution, "submit")

        issues = inspector.potential_issues(execution)
        assert "Current step 'vanished' not defined in workflow" in issues
        assert any(i.startswith("Execution failed: Current step 'vanished'") for i in issues)

    def test_debug_report(self, inspector: Inspector, execution: ExecutionState) -> None:
        report = inspector.debug_report(execution)

        assert report["execution_summary"]["subject"] == "Document:42"
        assert report["execution_summary"]["status"] == ExecutionStatus.ACTIVE.value
        assert report["current_state"]["description"] == "Author is writing"
        assert report["current_state"]["available_actions"] == 1
        assert report["current_state"]["is_final_step"] is False
        assert report["available_actions"][0]["action"] == "submit"
        assert report["performance_metrics"]["execution_time"] == "N/A"
        json.dumps(report)

    def test_export_json(self, inspector: Inspector, walked: ExecutionState) -> None:
        data = json.loads(inspector.export(walked))

        assert data["execution"]["id"] == walked.id
        assert len(data["trace"]) == 3
        assert data["graph_analysis"]["start_step"] == "review"
        assert data["metrics"]["history_length"] == 3

    def test_export_yaml(self, inspector: Inspector, execution: ExecutionState) -> None:
        data = yaml.safe_load(inspector.export(execution, "yaml"))
        assert data["execution"]["current_step"] == "draft"

    def test_export_unknown_format(self, inspector: Inspector, execution: ExecutionState) -> None:
        with pytest.raises(ValueError, match="Unsupported export format"):
            inspector.export(execution, "csv")

    def test_reports_never_mutate(self, inspector: Inspector, walked: ExecutionState) -> None:
        before = walked.model_dump_json()
        inspector.debug_report(walked)
        inspector.export(walked, "yaml")
        inspector.potential_issues(walked)
        assert walked.model_dump_json() == before
