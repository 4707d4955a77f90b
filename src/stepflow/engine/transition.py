"""
Transition engine: performs one action against an execution.

perform() pipeline (all-or-nothing on the execution):
1. Resolve the current step definition      -> CorruptState if missing
2. Look up the action on that step          -> ActionNotAvailable if missing
3. Evaluate step conditions, then the action condition, against
   ``execution.context | extra_context``    -> ConditionsNotSatisfied
4. Build the post-transition state on a copy, persist it through the store
   (optimistic version check), then commit it onto the execution
5. Mark the execution completed when the new step is terminal
6. On any failure in 4, keep the pre-transition values, set status=failed
   and return TransitionFailed with the cause and latest checkpoint id

Steps 1-3 are exposed as evaluate(); the Inspector's simulate() uses the
same function, so dry runs and real runs always agree.

The engine does not lock. Callers must serialise perform()/rollback() per
execution id; stores with version checks turn a lost race into a stale
TransitionFailed that the caller resolves by reloading and retrying.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .conditions import ConditionOutcome, check_condition
from .exceptions import (
    ActionNotAvailable,
    ConditionsNotSatisfied,
    CorruptState,
    TransitionError,
    TransitionFailed,
)
from .execution import ActorRef, ExecutionState, TransitionRecord, to_json_value, utcnow
from .execution_status import ExecutionStatus
from .graph import ActionDefinition, StepDefinition, WorkflowGraph
from .hooks import TransitionHooks

if TYPE_CHECKING:
    from .checkpoint_store import CheckpointStore
    from .registry import WorkflowRegistry
    from .store import ExecutionStore

logger = logging.getLogger(__name__)


class TransitionStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class TransitionResult:
    """
    Outcome of TransitionEngine.perform().

    - SUCCESS: the transition was applied; ``record`` is the new history entry
    - REJECTED: ActionNotAvailable / ConditionsNotSatisfied; execution untouched
    - FAILED: CorruptState / TransitionFailed; execution status is ``failed``

    Usage:
        result = engine.perform(execution, "approve", actor)
        if not result:
            show_error(result.error.message)
    """

    status: TransitionStatus
    action: str
    execution_id: str
    from_step: str
    to_step: str | None = None
    record: TransitionRecord | None = None
    error: TransitionError | None = None
    hook_errors: list[str] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.status == TransitionStatus.SUCCESS

    @property
    def is_rejected(self) -> bool:
        return self.status == TransitionStatus.REJECTED

    @property
    def is_failure(self) -> bool:
        return self.status == TransitionStatus.FAILED

    def __bool__(self) -> bool:
        return self.is_success

    def raise_for_error(self) -> None:
        """Raise the carried TransitionError, if any."""
        if self.error is not None:
            raise self.error

    def unwrap(self) -> TransitionRecord:
        """Return the new history record or raise the carried error."""
        self.raise_for_error()
        assert self.record is not None
        return self.record

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "action": self.action,
            "execution_id": self.execution_id,
            "from_step": self.from_step,
            "to_step": self.to_step,
            "record": self.record.model_dump(mode="json") if self.record else None,
            "error": self.error.to_dict() if self.error else None,
            "hook_errors": list(self.hook_errors),
        }


@dataclass(frozen=True)
class Evaluation:
    """
    Verdict of steps 1-3 of a transition, computed without side effects.

    Attributes:
        action: Requested action name
        from_step: Step the execution occupies
        step: Resolved step definition (None when corrupt)
        action_def: Resolved action definition (None when unavailable)
        merged_context: ``context | extra_context``
        outcomes: Every evaluated condition, step conditions first
        error: First blocking error, None when the transition may proceed
    """

    action: str
    from_step: str
    step: StepDefinition | None
    action_def: ActionDefinition | None
    merged_context: dict[str, Any]
    outcomes: tuple[ConditionOutcome, ...] = ()
    error: TransitionError | None = None

    @property
    def allowed(self) -> bool:
        return self.error is None

    @property
    def target_step(self) -> str | None:
        return self.action_def.to if self.action_def else None

    @property
    def details(self) -> list[str]:
        if not self.outcomes:
            if self.error is not None:
                return [self.error.message]
            return ["No condition specified"]
        lines = [f"[{o.scope}] {o.details}" for o in self.outcomes]
        if self.error is not None and not isinstance(self.error, ConditionsNotSatisfied):
            lines.insert(0, self.error.message)
        return lines


class TransitionEngine:
    """
    Performs actions against executions.

    Args:
        graphs: A single WorkflowGraph or a WorkflowRegistry used to resolve
            ``execution.workflow``
        store: Optional ExecutionStore; when set, every transition is saved
            with an optimistic version check before it is committed in memory
        checkpoints: Optional CheckpointStore used to reference the latest
            checkpoint in TransitionFailed errors
        hooks: Optional success/failure hooks
        clock: Timestamp source for history records
    """

    def __init__(
        self,
        graphs: WorkflowGraph | WorkflowRegistry,
        *,
        store: ExecutionStore | None = None,
        checkpoints: CheckpointStore | None = None,
        hooks: TransitionHooks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._graphs = graphs
        self.store = store
        self.checkpoints = checkpoints
        self.hooks = hooks or TransitionHooks()
        self._clock = clock

    def graph_for(self, execution: ExecutionState) -> WorkflowGraph | None:
        """Resolve the governing graph, None if it is unknown."""
        if isinstance(self._graphs, WorkflowGraph):
            return self._graphs if self._graphs.name == execution.workflow else None
        if not self._graphs.exists(execution.workflow):
            return None
        return self._graphs.get(execution.workflow)

    def evaluate(
        self,
        execution: ExecutionState,
        action_name: str,
        extra_context: Mapping[str, Any] | None = None,
    ) -> Evaluation:
        """
        Run the validation part of a transition without mutating anything.

        Raises:
            TypeError: If extra_context is not JSON-compatible
        """
        extra = to_json_value(dict(extra_context or {}), "extra_context")
        assert isinstance(extra, dict)
        merged = {**execution.context, **extra}
        from_step = execution.current_step

        graph = self.graph_for(execution)
        if graph is None:
            error: TransitionError = CorruptState(
                f"Workflow '{execution.workflow}' governing execution {execution.id} is not known",
                action=action_name,
                execution_id=execution.id,
                current_step=from_step,
            )
            return Evaluation(action_name, from_step, None, None, merged, error=error)

        step = graph.get_step(from_step)
        if step is None:
            error = CorruptState(
                f"Current step '{from_step}' is not defined in workflow '{graph.name}'",
                action=action_name,
                execution_id=execution.id,
                current_step=from_step,
            )
            return Evaluation(action_name, from_step, None, None, merged, error=error)

        if not execution.status.accepts_transitions():
            error = ActionNotAvailable(
                action_name,
                from_step,
                execution_id=execution.id,
                available=step.action_names,
                reason=(
                    f"Action '{action_name}' cannot be performed: execution is "
                    f"{execution.status.value} (step '{from_step}')"
                ),
            )
            return Evaluation(action_name, from_step, step, None, merged, error=error)

        action_def = step.get_action(action_name)
        if action_def is None:
            error = ActionNotAvailable(
                action_name, from_step, execution_id=execution.id, available=step.action_names
            )
            return Evaluation(action_name, from_step, step, None, merged, error=error)

        outcomes = [check_condition(c, merged, "step") for c in step.conditions]
        if action_def.condition is not None:
            outcomes.append(check_condition(action_def.condition, merged, "action"))

        failed = next((o for o in outcomes if not o.passed), None)
        cond_error = None
        if failed is not None:
            cond_error = ConditionsNotSatisfied(
                action_name,
                from_step,
                failed.condition.label,
                scope=failed.scope,
                execution_id=execution.id,
                evaluation_error=failed.error,
            )
        return Evaluation(
            action_name, from_step, step, action_def, merged, tuple(outcomes), cond_error
        )

    def perform(
        self,
        execution: ExecutionState,
        action_name: str,
        actor: ActorRef | dict[str, Any] | None = None,
        extra_context: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """
        Perform an action.

        Args:
            execution: Execution to transition (mutated only on success/failure)
            action_name: Action to perform at the current step
            actor: Acting actor; becomes ``assigned_to`` on success
            extra_context: Data merged into the context (wins on key collisions)

        Returns:
            TransitionResult (never raises for transition errors)

        Raises:
            TypeError: If extra_context is not JSON-compatible
        """
        if isinstance(actor, dict):
            actor = ActorRef.model_validate(actor)

        evaluation = self.evaluate(execution, action_name, extra_context)
        from_step = execution.current_step

        if evaluation.error is not None:
            if isinstance(evaluation.error, CorruptState):
                return self._fail(execution, evaluation.error, None)
            logger.info(
                f"[Execution:{execution.id}] Transition rejected: {evaluation.error.message}"
            )
            return TransitionResult(
                status=TransitionStatus.REJECTED,
                action=action_name,
                execution_id=execution.id,
                from_step=from_step,
                to_step=evaluation.target_step,
                error=evaluation.error,
            )

        to_step = evaluation.target_step
        assert to_step is not None
        graph = self.graph_for(execution)
        assert graph is not None

        before = execution.snapshot()
        try:
            candidate = self._build_candidate(execution, graph, evaluation, actor)
            if self.store is not None:
                self.store.save(candidate, expected_version=execution.version)
        except Exception as e:
            error = TransitionFailed(
                action_name,
                from_step,
                to_step,
                e,
                execution_id=execution.id,
                checkpoint_id=self._latest_checkpoint_id(execution),
            )
            logger.error(f"[Execution:{execution.id}] {error.message}", exc_info=True)
            return self._fail(execution, error, to_step, before=before)

        execution.apply_from(candidate)
        record = execution.history[-1]
        logger.info(
            f"[Execution:{execution.id}] Workflow transition: {action_name} "
            f"({from_step} -> {to_step})"
        )
        if execution.status.is_completed():
            logger.info(f"[Execution:{execution.id}] Workflow completed at step '{to_step}'")

        hook_errors = self.hooks.notify_success(before, execution.snapshot(), action_name)
        return TransitionResult(
            status=TransitionStatus.SUCCESS,
            action=action_name,
            execution_id=execution.id,
            from_step=from_step,
            to_step=to_step,
            record=record,
            hook_errors=hook_errors,
        )

    def available_actions(
        self, execution: ExecutionState, extra_context: Mapping[str, Any] | None = None
    ) -> list[str]:
        """Names of the actions that would currently succeed."""
        graph = self.graph_for(execution)
        step = graph.get_step(execution.current_step) if graph else None
        if step is None:
            return []
        return [
            action.name
            for action in step.actions
            if self.evaluate(execution, action.name, extra_context).allowed
        ]

    def action_options(self, execution: ExecutionState) -> list[dict[str, Any]]:
        """
        Every action at the current step with its availability (UI projection).

        Returns:
            List of dicts: name, to, description, confirmation_required,
            available, reason
        """
        graph = self.graph_for(execution)
        step = graph.get_step(execution.current_step) if graph else None
        if step is None:
            return []

        options = []
        for action in step.actions:
            evaluation = self.evaluate(execution, action.name)
            options.append(
                {
                    "name": action.name,
                    "to": action.to,
                    "description": action.description,
                    "confirmation_required": action.confirmation_required,
                    "available": evaluation.allowed,
                    "reason": evaluation.error.message if evaluation.error else None,
                }
            )
        return options

    def can_transition_to(self, execution: ExecutionState, target_step: str) -> bool:
        """True if some currently available action leads to target_step."""
        graph = self.graph_for(execution)
        step = graph.get_step(execution.current_step) if graph else None
        if step is None:
            return False
        available = set(self.available_actions(execution))
        return any(a.to == target_step and a.name in available for a in step.actions)

    def _build_candidate(
        self,
        execution: ExecutionState,
        graph: WorkflowGraph,
        evaluation: Evaluation,
        actor: ActorRef | None,
    ) -> ExecutionState:
        to_step = evaluation.target_step
        assert to_step is not None
        now = self._clock()
        record = TransitionRecord(
            from_step=execution.current_step,
            to_step=to_step,
            action=evaluation.action,
            actor=actor,
            timestamp=now,
        )

        candidate = execution.model_copy(deep=True)
        candidate.current_step = to_step
        candidate.context = evaluation.merged_context
        candidate.history = [*candidate.history, record]
        candidate.assigned_to = actor
        candidate.updated_at = now
        candidate.version = execution.version + 1
        if graph.is_terminal(to_step):
            candidate.status = ExecutionStatus.COMPLETED
        return candidate

    def _latest_checkpoint_id(self, execution: ExecutionState) -> str | None:
        if self.checkpoints is None:
            return None
        try:
            latest = self.checkpoints.latest(execution.id)
        except Exception:
            logger.warning(
                f"[Execution:{execution.id}] Could not look up latest checkpoint", exc_info=True
            )
            return None
        return latest.id if latest else None

    def _fail(
        self,
        execution: ExecutionState,
        error: TransitionError,
        to_step: str | None,
        *,
        before: ExecutionState | None = None,
    ) -> TransitionResult:
        before = before or execution.snapshot()
        if isinstance(error, CorruptState):
            logger.error(f"[Execution:{execution.id}] Corrupt state: {error.message}")

        execution.status = ExecutionStatus.FAILED
        execution.last_error = error.to_dict()
        execution.updated_at = self._clock()

        hook_errors = self.hooks.notify_failure(
            before, execution.snapshot(), error.action, error
        )
        return TransitionResult(
            status=TransitionStatus.FAILED,
            action=error.action,
            execution_id=execution.id,
            from_step=before.current_step,
            to_step=to_step,
            error=error,
            hook_errors=hook_errors,
        )


__all__ = ["Evaluation", "TransitionEngine", "TransitionResult", "TransitionStatus"]
