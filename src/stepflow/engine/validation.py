"""
Static validation of workflow graphs.

Checks (every issue is collected; validation never raises):
1. At least one step is declared
2. No duplicate step names, no duplicate action names within a step
3. Every action target names an existing step
4. Every step other than the initial step is reachable from it

Reachability is structural: action conditions are ignored, edges are
followed breadth-first from the initial step.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from enum import Enum

from pydantic import BaseModel

from .exceptions import DefinitionInvalid
from .graph import WorkflowGraph

logger = logging.getLogger(__name__)


class IssueCode(str, Enum):
    NO_STEPS = "no_steps"
    DUPLICATE_STEP = "duplicate_step"
    DUPLICATE_ACTION = "duplicate_action"
    UNKNOWN_TARGET = "unknown_target"
    UNREACHABLE_STEP = "unreachable_step"


class ValidationIssue(BaseModel):
    """
    A single problem found in a workflow definition.

    Attributes:
        code: Machine-readable issue code
        message: Human-readable description
        step: Step the issue is attached to (if any)
        action: Action the issue is attached to (if any)
    """

    model_config = {"frozen": True}

    code: IssueCode
    message: str
    step: str | None = None
    action: str | None = None

    def __str__(self) -> str:
        return self.message


def reachable_from(graph: WorkflowGraph, start: str) -> list[str]:
    """
    Breadth-first traversal of action edges.

    Returns:
        Reachable step names in visit order (``start`` first). Targets that do
        not name a step are not visited.
    """
    if not graph.has_step(start):
        return []

    adjacency = graph.transitions()
    visited = {start}
    order = [start]
    queue = deque([start])

    while queue:
        current = queue.popleft()
        for target in adjacency.get(current, []):
            if target in visited or not graph.has_step(target):
                continue
            visited.add(target)
            order.append(target)
            queue.append(target)

    return order


def validate_graph(graph: WorkflowGraph) -> list[ValidationIssue]:
    """
    Validate a workflow graph.

    Args:
        graph: Graph to analyse

    Returns:
        All issues found; empty when the graph can be used to create executions
    """
    issues: list[ValidationIssue] = []

    if not graph.steps:
        issues.append(
            ValidationIssue(
                code=IssueCode.NO_STEPS,
                message=f"Workflow '{graph.name}' must define at least one step",
            )
        )
        return issues

    step_counts = Counter(step.name for step in graph.steps)
    for name, count in step_counts.items():
        if count > 1:
            issues.append(
                ValidationIssue(
                    code=IssueCode.DUPLICATE_STEP,
                    message=f"Step '{name}' is defined {count} times",
                    step=name,
                )
            )

    for step in graph.steps:
        action_counts = Counter(action.name for action in step.actions)
        for action_name, count in action_counts.items():
            if count > 1:
                issues.append(
                    ValidationIssue(
                        code=IssueCode.DUPLICATE_ACTION,
                        message=(
                            f"Action '{action_name}' is defined {count} times "
                            f"for step '{step.name}'"
                        ),
                        step=step.name,
                        action=action_name,
                    )
                )

        for action in step.actions:
            if not graph.has_step(action.to):
                issues.append(
                    ValidationIssue(
                        code=IssueCode.UNKNOWN_TARGET,
                        message=(
                            f"Step '{step.name}' action '{action.name}' targets "
                            f"non-existent step '{action.to}'"
                        ),
                        step=step.name,
                        action=action.name,
                    )
                )

    initial = graph.initial_step
    assert initial is not None
    reachable = set(reachable_from(graph, initial))
    for name in graph.step_names:
        if name not in reachable:
            issues.append(
                ValidationIssue(
                    code=IssueCode.UNREACHABLE_STEP,
                    message=f"Step '{name}' is unreachable from initial step '{initial}'",
                    step=name,
                )
            )

    if issues:
        logger.debug(f"Workflow '{graph.name}' has {len(issues)} validation issue(s)")
    return issues


def ensure_valid(graph: WorkflowGraph) -> WorkflowGraph:
    """
    Raise DefinitionInvalid carrying every issue if the graph is not usable.

    Returns:
        The same graph, for chaining
    """
    issues = validate_graph(graph)
    if issues:
        raise DefinitionInvalid(graph.name, issues)
    return graph


__all__ = [
    "IssueCode",
    "ValidationIssue",
    "ensure_valid",
    "reachable_from",
    "validate_graph",
]
