"""
Inspector: read-only debugging and introspection of executions and graphs.

Nothing here mutates an execution. Action verdicts come from
TransitionEngine.evaluate(), the same function perform() runs before it
writes anything, so a simulation and a real call never disagree.

Durations are best effort. A trace entry's duration is the time the
execution spent in ``from_step`` before the transition: the gap to the
previous record, or to ``created_at`` for the first record. A negative gap
(clock skew, edited history) yields ``None``/"N/A" plus a warning in
metrics(); it is never an error.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime
from typing import Any

import yaml
from pydantic import BaseModel, Field

from ..settings import EngineSettings
from .execution import ExecutionState, utcnow
from .graph import WorkflowGraph
from .transition import TransitionEngine
from .validation import reachable_from

logger = logging.getLogger(__name__)

REPEATED_TRANSITION_THRESHOLD = 3


class TraceEntry(BaseModel):
    """One history record enriched with its position and duration."""

    step_number: int
    from_step: str
    to_step: str
    action: str
    actor: str | None = None
    timestamp: str
    duration_seconds: float | None = None
    duration: str = "N/A"


class ActionSuggestion(BaseModel):
    action: str
    target_step: str
    description: str | None = None
    requires_confirmation: bool = False
    has_condition: bool = False
    condition_met: bool
    reason: str | None = None


class SimulationResult(BaseModel):
    """
    Dry-run verdict of an action.

    Attributes:
        action: Simulated action
        target_step: Step the action leads to (None if unknown)
        would_succeed: True if perform() would apply the transition
        validation_details: One line per evaluated condition
        error_type: Error class perform() would return (None on success)
        failed_condition: Label of the first failing condition
        warnings: Notable effects (completion, overridden context keys, ...)
    """

    action: str
    target_step: str | None = None
    would_succeed: bool
    validation_details: list[str] = Field(default_factory=list)
    error_type: str | None = None
    failed_condition: str | None = None
    warnings: list[str] = Field(default_factory=list)


class GraphAnalysis(BaseModel):
    """
    Structural analysis of a workflow graph.

    ``potential_deadlocks`` lists steps that have outgoing actions but from
    which no terminal step can be reached (including steps whose actions all
    point at undefined steps). Terminal steps are never deadlocks.
    """

    start_step: str | None
    reachable_steps: list[str] = Field(default_factory=list)
    unreachable_steps: list[str] = Field(default_factory=list)
    cycles: list[list[str]] = Field(default_factory=list)
    potential_deadlocks: list[str] = Field(default_factory=list)
    final_steps: list[str] = Field(default_factory=list)


class ExecutionMetrics(BaseModel):
    context_size: int
    context_keys: int
    nesting_depth: int
    data_types: dict[str, int] = Field(default_factory=dict)
    null_values: int = 0
    empty_collections: int = 0
    history_length: int
    history_size: int
    total_elapsed_seconds: float | None = None
    total_elapsed: str = "N/A"
    average_step_seconds: float | None = None
    step_durations: dict[str, float] = Field(default_factory=dict)
    time_in_current_step_seconds: float | None = None
    warnings: list[str] = Field(default_factory=list)


def format_duration(seconds: float | None) -> str:
    """Render seconds as "12.5s", "3.2m" or "1.5h" ("N/A" when unknown)."""
    if seconds is None:
        return "N/A"
    if seconds < 60:
        return f"{round(seconds, 1)}s"
    if seconds < 3600:
        return f"{round(seconds / 60, 1)}m"
    return f"{round(seconds / 3600, 1)}h"


class Inspector:
    """
    Read-only analysis of executions.

    Args:
        engine: Engine used for graph resolution and dry-run evaluation
        settings: Thresholds for size and staleness warnings
    """

    def __init__(self, engine: TransitionEngine, settings: EngineSettings | None = None):
        self.engine = engine
        self.settings = settings or EngineSettings()

    # Trace

    def trace(self, execution: ExecutionState) -> list[TraceEntry]:
        entries = []
        durations = self._durations(execution)
        for index, record in enumerate(execution.history):
            entries.append(
                TraceEntry(
                    step_number=index + 1,
                    from_step=record.from_step,
                    to_step=record.to_step,
                    action=record.action,
                    actor=str(record.actor) if record.actor else None,
                    timestamp=record.timestamp.isoformat(),
                    duration_seconds=durations[index],
                    duration=format_duration(durations[index]),
                )
            )
        return entries

    @staticmethod
    def _durations(execution: ExecutionState) -> list[float | None]:
        durations: list[float | None] = []
        previous: datetime = execution.created_at
        for record in execution.history:
            seconds = (record.timestamp - previous).total_seconds()
            durations.append(seconds if seconds >= 0 else None)
            previous = record.timestamp
        return durations

    # Actions

    def suggest_actions(self, execution: ExecutionState) -> list[ActionSuggestion]:
        """Every action at the current step with its live verdict."""
        graph = self.engine.graph_for(execution)
        step = graph.get_step(execution.current_step) if graph else None
        if step is None:
            return []

        suggestions = []
        for action in step.actions:
            evaluation = self.engine.evaluate(execution, action.name)
            suggestions.append(
                ActionSuggestion(
                    action=action.name,
                    target_step=action.to,
                    description=action.description,
                    requires_confirmation=action.confirmation_required,
                    has_condition=action.condition is not None or bool(step.conditions),
                    condition_met=evaluation.allowed,
                    reason=evaluation.error.message if evaluation.error else None,
                )
            )
        return suggestions

    def simulate(
        self,
        execution: ExecutionState,
        action_name: str,
        test_context: dict[str, Any] | None = None,
    ) -> SimulationResult:
        """
        Predict the verdict of ``perform(execution, action_name, extra_context=test_context)``.

        Raises:
            TypeError: If test_context is not JSON-compatible (perform raises too)
        """
        evaluation = self.engine.evaluate(execution, action_name, test_context)
        error = evaluation.error

        warnings = []
        overridden = sorted(set(test_context or {}) & set(execution.context))
        if overridden:
            warnings.append(f"Test context overrides existing keys: {', '.join(overridden)}")
        if evaluation.action_def is not None:
            if evaluation.action_def.confirmation_required:
                warnings.append(f"Action '{action_name}' requires confirmation")
            graph = self.engine.graph_for(execution)
            if evaluation.allowed and graph is not None and graph.is_terminal(
                evaluation.action_def.to
            ):
                warnings.append(f"Execution would complete at step '{evaluation.action_def.to}'")

        return SimulationResult(
            action=action_name,
            target_step=evaluation.target_step,
            would_succeed=evaluation.allowed,
            validation_details=evaluation.details,
            error_type=error.code if error else None,
            failed_condition=getattr(error, "failed_condition", None),
            warnings=warnings,
        )

    # Graph

    def analyze_graph(
        self, graph: WorkflowGraph, current_step: str | None = None
    ) -> GraphAnalysis:
        """
        Reachability, cycles and deadlocks of a graph.

        Args:
            graph: Graph to analyze
            current_step: Start of the reachability search (initial step if None)
        """
        start = current_step or graph.initial_step
        reachable = reachable_from(graph, start) if start else []
        reachable_set = set(reachable)
        final_steps = graph.final_steps

        return GraphAnalysis(
            start_step=start,
            reachable_steps=reachable,
            unreachable_steps=[s for s in graph.step_names if s not in reachable_set],
            cycles=find_cycles(graph),
            potential_deadlocks=[
                name
                for name in graph.step_names
                if not graph.is_terminal(name)
                and not any(s in final_steps for s in reachable_from(graph, name))
            ],
            final_steps=final_steps,
        )

    # Metrics

    def metrics(self, execution: ExecutionState) -> ExecutionMetrics:
        context = execution.context
        context_size = len(json.dumps(context, ensure_ascii=False).encode("utf-8"))
        history_json = [r.model_dump(mode="json") for r in execution.history]
        history_size = len(json.dumps(history_json, ensure_ascii=False).encode("utf-8"))

        warnings = []
        durations = self._durations(execution)
        step_durations: dict[str, float] = {}
        for record, seconds in zip(execution.history, durations):
            if seconds is None:
                continue
            step_durations[record.from_step] = step_durations.get(record.from_step, 0.0) + seconds
        unknown = sum(1 for d in durations if d is None)
        if unknown:
            warnings.append(
                f"{unknown} transition duration(s) unknown: history timestamps are out of order"
            )

        total_elapsed = None
        last = execution.last_transition
        if last is not None:
            elapsed = (last.timestamp - execution.created_at).total_seconds()
            total_elapsed = elapsed if elapsed >= 0 else None

        known = [d for d in durations if d is not None]
        in_current = None
        if not execution.is_finished:
            since = last.timestamp if last is not None else execution.created_at
            seconds = (utcnow() - since).total_seconds()
            in_current = seconds if seconds >= 0 else None

        if context_size > self.settings.max_context_bytes:
            warnings.append(f"Context data is unusually large ({context_size} bytes)")

        return ExecutionMetrics(
            context_size=context_size,
            context_keys=len(context),
            nesting_depth=_nesting_depth(context),
            data_types=dict(_data_types(context)),
            null_values=_count_nulls(context),
            empty_collections=_count_empty(context),
            history_length=len(execution.history),
            history_size=history_size,
            total_elapsed_seconds=total_elapsed,
            total_elapsed=format_duration(total_elapsed),
            average_step_seconds=sum(known) / len(known) if known else None,
            step_durations=step_durations,
            time_in_current_step_seconds=in_current,
            warnings=warnings,
        )

    def history_analysis(self, execution: ExecutionState) -> dict[str, Any]:
        history = execution.history
        visited: set[str] = set()
        backtracking = 0
        for record in history:
            if record.to_step in visited:
                backtracking += 1
            visited.add(record.to_step)

        return {
            "total_transitions": len(history),
            "unique_actors": len({str(r.actor) for r in history if r.actor is not None}),
            "step_frequency": dict(Counter(r.to_step for r in history)),
            "action_frequency": dict(Counter(r.action for r in history)),
            "backtracking_instances": backtracking,
        }

    def potential_issues(self, execution: ExecutionState) -> list[str]:
        issues = []
        graph = self.engine.graph_for(execution)
        if graph is None:
            issues.append(f"Workflow '{execution.workflow}' is not known")
        elif not graph.has_step(execution.current_step):
            issues.append(f"Current step '{execution.current_step}' not defined in workflow")

        if not execution.is_finished:
            idle = (utcnow() - execution.updated_at).total_seconds()
            if idle > self.settings.stale_after_hours * 3600:
                issues.append(
                    f"Workflow execution hasn't been updated in over "
                    f"{self.settings.stale_after_hours:g} hours"
                )

        if execution.status.is_failed():
            message = (execution.last_error or {}).get("message")
            issues.append(f"Execution failed: {message}" if message else "Execution failed")

        context_size = len(json.dumps(execution.context, ensure_ascii=False).encode("utf-8"))
        if context_size > self.settings.max_context_bytes:
            issues.append(f"Context data is unusually large ({context_size} bytes)")

        repeated = Counter((r.from_step, r.action, r.to_step) for r in execution.history)
        for (from_step, action, to_step), count in repeated.items():
            if count >= REPEATED_TRANSITION_THRESHOLD:
                issues.append(
                    f"Potential loop: '{action}' ({from_step} -> {to_step}) performed {count} times"
                )

        if any(d is None for d in self._durations(execution)):
            issues.append("History timestamps are out of order")
        return issues

    # Reports

    def debug_report(self, execution: ExecutionState) -> dict[str, Any]:
        """Aggregate JSON-compatible report for operators."""
        graph = self.engine.graph_for(execution)
        step = graph.get_step(execution.current_step) if graph else None
        metrics = self.metrics(execution)
        available = self.engine.available_actions(execution)
        issues = self.potential_issues(execution)

        return {
            "execution_summary": {
                "id": execution.id,
                "workflow": execution.workflow,
                "workflow_version": execution.workflow_version,
                "subject": str(execution.subject),
                "current_step": execution.current_step,
                "status": execution.status.value,
                "assigned_to": str(execution.assigned_to) if execution.assigned_to else None,
                "started_at": execution.created_at.isoformat(),
                "last_updated": execution.updated_at.isoformat(),
                "total_steps": len(execution.history),
            },
            "current_state": {
                "step_name": execution.current_step,
                "description": step.description if step else None,
                "requirements": list(step.requirements) if step else [],
                "available_actions": len(available),
                "is_final_step": bool(step and step.is_terminal),
            },
            "available_actions": [
                s.model_dump(mode="json") for s in self.suggest_actions(execution)
            ],
            "context_analysis": {
                "total_keys": metrics.context_keys,
                "nested_levels": metrics.nesting_depth,
                "data_types": metrics.data_types,
                "size_estimate": metrics.context_size,
                "null_values": metrics.null_values,
                "empty_collections": metrics.empty_collections,
            },
            "history_analysis": self.history_analysis(execution),
            "performance_metrics": {
                "execution_time": metrics.total_elapsed,
                "average_step_duration": format_duration(metrics.average_step_seconds),
                "context_size": metrics.context_size,
                "history_size": metrics.history_size,
            },
            "potential_issues": issues,
            "generated_at": utcnow().isoformat(),
        }

    def export(self, execution: ExecutionState, fmt: str = "json") -> str:
        """
        Export execution data, report, trace and graph analysis.

        Raises:
            ValueError: Unsupported format (use "json" or "yaml")
        """
        if fmt not in ("json", "yaml"):
            raise ValueError(f"Unsupported export format: {fmt}")

        graph = self.engine.graph_for(execution)
        data = {
            "execution": execution.to_json(),
            "debug_report": self.debug_report(execution),
            "trace": [entry.model_dump(mode="json") for entry in self.trace(execution)],
            "graph_analysis": (
                self.analyze_graph(graph, execution.current_step).model_dump(mode="json")
                if graph is not None
                else None
            ),
            "metrics": self.metrics(execution).model_dump(mode="json"),
            "exported_at": utcnow().isoformat(),
        }
        logger.debug(f"[Execution:{execution.id}] Exported debug data as {fmt}")
        if fmt == "yaml":
            return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        return json.dumps(data, indent=2, ensure_ascii=False)


def find_cycles(graph: WorkflowGraph) -> list[list[str]]:
    """
    Enumerate simple cycles of the action graph.

    Each cycle is reported once, rotated to start at its earliest-declared
    step, e.g. ``["draft", "review"]`` for draft -> review -> draft.
    """
    order = {name: index for index, name in enumerate(graph.step_names)}
    adjacency = {
        name: [t for t in dict.fromkeys(targets) if t in order]
        for name, targets in graph.transitions().items()
    }
    cycles: list[list[str]] = []

    for start in graph.step_names:
        floor = order[start]
        # only visit steps declared at or after start; rotations are then unique
        stack = [(start, iter(adjacency[start]))]
        path = [start]
        on_path = {start}
        while stack:
            node, targets = stack[-1]
            target = next(targets, None)
            if target is None:
                stack.pop()
                path.pop()
                on_path.discard(node)
                continue
            if target == start:
                cycles.append(list(path))
            elif order[target] > floor and target not in on_path:
                stack.append((target, iter(adjacency[target])))
                path.append(target)
                on_path.add(target)
    return cycles


def _nesting_depth(obj: Any, depth: int = 0) -> int:
    if isinstance(obj, dict):
        return max((_nesting_depth(v, depth + 1) for v in obj.values()), default=depth)
    if isinstance(obj, list):
        return max((_nesting_depth(v, depth + 1) for v in obj), default=depth)
    return depth


def _data_types(obj: Any) -> Counter[str]:
    counts: Counter[str] = Counter()
    if isinstance(obj, dict):
        for value in obj.values():
            counts.update(_data_types(value))
    elif isinstance(obj, list):
        for item in obj:
            counts.update(_data_types(item))
    else:
        counts["null" if obj is None else type(obj).__name__] += 1
    return counts


def _count_nulls(obj: Any) -> int:
    values = obj.values() if isinstance(obj, dict) else obj if isinstance(obj, list) else []
    return sum(1 if v is None else _count_nulls(v) for v in values)


def _count_empty(obj: Any) -> int:
    values = obj.values() if isinstance(obj, dict) else obj if isinstance(obj, list) else []
    return sum(
        1 if isinstance(v, (dict, list)) and not v else _count_empty(v) for v in values
    )


__all__ = [
    "ActionSuggestion",
    "ExecutionMetrics",
    "GraphAnalysis",
    "Inspector",
    "SimulationResult",
    "TraceEntry",
    "find_cycles",
    "format_duration",
]
