"""
Recovery manager: checkpoints, rollback, integrity checks and recovery plans.

Checkpoint/rollback is a compensating-action pattern, not a transaction:
a checkpoint is an immutable snapshot of the mutable execution fields, and
rollback overwrites those fields and truncates history back to the snapshot.
Side effects that happened outside the execution (mails, external writes)
are never undone.

Recovery strategies (``recover()``):
- auto: only for failed executions; retry_last, then rollback, then reset
  to the initial step
- rollback: restore the newest safe checkpoint
- reset: move to an explicit target step (recorded in history)
- retry_last: reactivate a failed execution so the failed action can be
  performed again
- manual: take a checkpoint and return instructions plus the recovery plan
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from ..settings import EngineSettings
from .checkpoint import Checkpoint, describe_age
from .checkpoint_store import CheckpointStore, InMemoryCheckpointStore
from .exceptions import (
    CheckpointNotFound,
    RecoveryError,
    RollbackError,
    StoreError,
    UnsafeRollback,
)
from .execution import ActorRef, ExecutionState, TransitionRecord, utcnow
from .execution_status import ExecutionStatus
from .graph import WorkflowGraph
from .store import ExecutionStore
from .transition import TransitionEngine, TransitionResult

logger = logging.getLogger(__name__)

RESERVED_CONTEXT_PREFIX = "_internal"
LARGE_CONTEXT_BYTES = 1024 * 1024
RESET_ACTION = "recovery:reset"

Severity = Literal["critical", "error", "warning"]


class RecoveryStrategy(str, Enum):
    AUTO = "auto"
    ROLLBACK = "rollback"
    RESET = "reset"
    RETRY_LAST = "retry_last"
    MANUAL = "manual"


class IntegrityIssue(BaseModel):
    """One finding of validate_integrity()."""

    model_config = {"frozen": True}

    code: str
    message: str
    severity: Severity = "error"


class RollbackPoint(BaseModel):
    """A checkpoint that can be restored without force."""

    checkpoint_id: str
    label: str
    step: str
    created_at: str
    age: str
    records_discarded: int


class RemediationStep(BaseModel):
    """
    One suggested recovery step.

    Attributes:
        order: 1-based position in the plan
        strategy: Strategy that carries it out
        description: What the step does
        risk: low / medium / high
        checkpoint_id: Checkpoint to restore (rollback steps only)
        target_step: Step to move to (reset steps only)
    """

    order: int
    strategy: RecoveryStrategy
    description: str
    risk: Literal["low", "medium", "high"]
    checkpoint_id: str | None = None
    target_step: str | None = None


class RecoveryPlan(BaseModel):
    """Read-only recovery assessment of an execution."""

    execution_id: str
    current_step: str
    status: ExecutionStatus
    can_recover: bool
    blockers: list[str] = Field(default_factory=list)
    issues: list[IntegrityIssue] = Field(default_factory=list)
    integrity_score: int = 100
    recommended_strategy: RecoveryStrategy
    steps: list[RemediationStep] = Field(default_factory=list)
    rollback_points: list[RollbackPoint] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)


class RollbackResult(BaseModel):
    """Outcome of a successful rollback."""

    execution_id: str
    checkpoint_id: str
    previous_step: str
    restored_step: str
    restored_status: ExecutionStatus
    backup_checkpoint_id: str | None = None
    records_discarded: int = 0
    warnings: list[str] = Field(default_factory=list)


class RecoveryResult(BaseModel):
    """Outcome of recover()."""

    strategy: RecoveryStrategy
    action: str
    execution_id: str
    current_step: str
    status: ExecutionStatus
    checkpoint_id: str | None = None
    target_step: str | None = None
    retry_action: str | None = None
    instructions: list[str] = Field(default_factory=list)
    plan: RecoveryPlan | None = None
    warnings: list[str] = Field(default_factory=list)


class RecoveryManager:
    """
    Checkpointing and recovery around a TransitionEngine.

    Args:
        engine: Engine used for perform() and to resolve graphs
        checkpoints: Checkpoint store (in-memory if omitted); also wired into
            the engine when it has none, so TransitionFailed errors reference
            the latest checkpoint
        store: Execution store for persisting rollbacks and recoveries
            (defaults to the engine's store)
        settings: Thresholds and checkpoint policy

    Example:
        manager = RecoveryManager(engine)
        result = manager.perform(execution, "approve", actor)
        if result.is_failure:
            plan = manager.recovery_plan(execution)
            manager.recover(execution, plan.recommended_strategy)
    """

    def __init__(
        self,
        engine: TransitionEngine,
        checkpoints: CheckpointStore | None = None,
        *,
        store: ExecutionStore | None = None,
        settings: EngineSettings | None = None,
    ):
        self.engine = engine
        self.checkpoints = checkpoints or engine.checkpoints or InMemoryCheckpointStore()
        if engine.checkpoints is None:
            engine.checkpoints = self.checkpoints
        self.store = store if store is not None else engine.store
        self.settings = settings or EngineSettings()
        self.last_checkpoint_error: str | None = None

    # Checkpoints

    def checkpoint(
        self,
        execution: ExecutionState,
        label: str | None = None,
        created_by: str = "recovery_manager",
    ) -> str | None:
        """
        Snapshot the execution.

        Returns:
            Checkpoint id, or None if the store rejected it (the reason is kept
            in ``last_checkpoint_error``)
        """
        return self._store_checkpoint(Checkpoint.capture(execution, label, created_by))

    def _store_checkpoint(self, checkpoint: Checkpoint) -> str | None:
        try:
            self.checkpoints.save_checkpoint(checkpoint)
        except Exception as e:
            self.last_checkpoint_error = f"{type(e).__name__}: {e}"
            logger.warning(
                f"[Execution:{checkpoint.execution_id}] Checkpoint '{checkpoint.label}' "
                f"was not stored: {e}",
                exc_info=True,
            )
            return None

        self.last_checkpoint_error = None
        logger.info(
            f"[Execution:{checkpoint.execution_id}] Checkpoint created: "
            f"{checkpoint.id} ({checkpoint.label})"
        )
        return checkpoint.id

    def list_checkpoints(self, execution: ExecutionState) -> list[Checkpoint]:
        """Checkpoints of the execution, oldest first."""
        return self.checkpoints.list_checkpoints(execution.id)

    def perform(
        self,
        execution: ExecutionState,
        action_name: str,
        actor: ActorRef | dict[str, Any] | None = None,
        extra_context: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """
        Checkpoint "Before <action>" and delegate to the engine.

        Rejected actions are not checkpointed: they never change the execution.
        """
        if (
            self.settings.checkpoint_before_transition
            and self.engine.evaluate(execution, action_name, extra_context).allowed
        ):
            self.checkpoint(execution, f"Before {action_name}")
        return self.engine.perform(execution, action_name, actor, extra_context)

    def rollback(
        self, execution: ExecutionState, checkpoint_id: str, force: bool = False
    ) -> RollbackResult:
        """
        Restore the execution to a checkpoint.

        The current state is saved as a backup checkpoint once the restore has
        been committed. History is truncated to the checkpoint's length; later
        records are discarded. A checkpoint whose history prefix no longer
        matches (the execution was rolled back past it and moved on along
        another branch) is refused unless forced; forcing keeps the history.

        Raises:
            CheckpointNotFound: Unknown id or checkpoint of another execution
            UnsafeRollback: Completed execution, checkpoint newer than the
                current history, diverged history, or step no longer in the
                graph (without force)
            RollbackError: The store rejected the restored state
        """
        checkpoint = self.checkpoints.load_checkpoint(checkpoint_id)
        if checkpoint is None or checkpoint.execution_id != execution.id:
            raise CheckpointNotFound(checkpoint_id, execution_id=execution.id)

        warnings: list[str] = []
        history_len = len(execution.history)
        keep = min(checkpoint.history_length, history_len)

        if execution.status.is_completed() and not force:
            raise UnsafeRollback(
                f"Execution {execution.id} is completed; use force=True to roll it back",
                execution_id=execution.id,
                current_step=execution.current_step,
                details={"checkpoint_id": checkpoint_id},
            )
        if checkpoint.history_length > history_len:
            if not force:
                raise UnsafeRollback(
                    f"Checkpoint {checkpoint_id} records {checkpoint.history_length} transitions "
                    f"but the execution has {history_len}; use force=True to restore it anyway",
                    execution_id=execution.id,
                    current_step=execution.current_step,
                    details={"checkpoint_id": checkpoint_id},
                )
            warnings.append("Checkpoint is newer than the current history; history kept as is")
        elif not checkpoint.matches_history(execution.history):
            if not force:
                raise UnsafeRollback(
                    f"History of execution {execution.id} has diverged since checkpoint "
                    f"{checkpoint_id} was taken; use force=True to restore it anyway",
                    execution_id=execution.id,
                    current_step=execution.current_step,
                    details={"checkpoint_id": checkpoint_id},
                )
            warnings.append("History has diverged since the checkpoint; history kept as is")
            keep = history_len

        graph = self.engine.graph_for(execution)
        if graph is not None and not graph.has_step(checkpoint.current_step):
            if not force:
                raise UnsafeRollback(
                    f"Checkpoint step '{checkpoint.current_step}' no longer exists in "
                    f"workflow '{graph.name}'",
                    execution_id=execution.id,
                    current_step=execution.current_step,
                    details={"checkpoint_id": checkpoint_id},
                )
            warnings.append(f"Restored step '{checkpoint.current_step}' is not in the workflow")

        age = utcnow() - checkpoint.created_at
        if age.total_seconds() > self.settings.max_checkpoint_age_days * 86400:
            warnings.append(f"Checkpoint is {describe_age(checkpoint.created_at)}")

        backup = Checkpoint.capture(
            execution, f"Before restore from {checkpoint.id}", created_by="rollback"
        )

        captured = checkpoint.captured_state.model_copy(deep=True)
        candidate = execution.model_copy(deep=True)
        candidate.current_step = captured.current_step
        candidate.context = captured.context
        candidate.status = captured.status
        candidate.assigned_to = captured.assigned_to
        candidate.history = candidate.history[:keep]
        candidate.last_error = None

        previous_step = execution.current_step
        self._commit(execution, candidate, f"rollback to checkpoint {checkpoint.id}")
        backup_id = self._store_checkpoint(backup)

        discarded = history_len - len(execution.history)
        logger.info(
            f"[Execution:{execution.id}] Restored checkpoint {checkpoint.id} "
            f"({previous_step} -> {execution.current_step}, {discarded} record(s) discarded)"
        )
        for warning in warnings:
            logger.warning(f"[Execution:{execution.id}] Rollback warning: {warning}")

        return RollbackResult(
            execution_id=execution.id,
            checkpoint_id=checkpoint.id,
            previous_step=previous_step,
            restored_step=execution.current_step,
            restored_status=execution.status,
            backup_checkpoint_id=backup_id,
            records_discarded=discarded,
            warnings=warnings,
        )

    # Integrity

    def validate_integrity(self, execution: ExecutionState) -> list[IntegrityIssue]:
        """
        Check the execution against its graph and its own invariants.

        Returns:
            Every issue found (empty list when the execution is consistent)
        """
        issues: list[IntegrityIssue] = []
        graph = self.engine.graph_for(execution)

        subject = getattr(execution, "subject", None)
        if subject is None or not subject.type or not subject.id:
            issues.append(
                IntegrityIssue(
                    code="missing_subject",
                    message="Subject reference is missing",
                    severity="critical",
                )
            )

        if graph is None:
            issues.append(
                IntegrityIssue(
                    code="unknown_workflow",
                    message=f"Workflow '{execution.workflow}' is not known",
                    severity="critical",
                )
            )
        elif not graph.has_step(execution.current_step):
            issues.append(
                IntegrityIssue(
                    code="unknown_step",
                    message=f"Current step '{execution.current_step}' is not defined "
                    f"in workflow '{graph.name}'",
                    severity="critical",
                )
            )

        issues.extend(self._context_issues(execution))
        issues.extend(self._history_issues(execution, graph))

        if graph is not None and graph.has_step(execution.current_step):
            terminal = graph.is_terminal(execution.current_step)
            if execution.status.is_completed() and not terminal:
                issues.append(
                    IntegrityIssue(
                        code="status_inconsistent",
                        message=f"Execution is completed but step '{execution.current_step}' "
                        "has outgoing actions",
                        severity="warning",
                    )
                )
            elif execution.status.is_active() and terminal:
                issues.append(
                    IntegrityIssue(
                        code="status_inconsistent",
                        message=f"Execution is active at terminal step '{execution.current_step}'",
                        severity="warning",
                    )
                )

        if issues:
            logger.warning(
                f"[Execution:{execution.id}] Integrity check found {len(issues)} issue(s): "
                + "; ".join(issue.code for issue in issues)
            )
        return issues

    def _context_issues(self, execution: ExecutionState) -> list[IntegrityIssue]:
        issues = []
        for key in execution.context:
            if key.startswith(RESERVED_CONTEXT_PREFIX):
                issues.append(
                    IntegrityIssue(
                        code="reserved_context_key",
                        message=f"Context key '{key}' uses the reserved "
                        f"'{RESERVED_CONTEXT_PREFIX}' prefix",
                    )
                )
        if _context_bytes(execution.context) is None:
            issues.append(
                IntegrityIssue(
                    code="context_not_serializable",
                    message="Context data is not JSON-serializable",
                    severity="critical",
                )
            )
        return issues

    def _history_issues(
        self, execution: ExecutionState, graph: WorkflowGraph | None
    ) -> list[IntegrityIssue]:
        issues = []
        history = execution.history
        if not history:
            return issues

        if graph is not None and history[0].from_step != graph.initial_step:
            issues.append(
                IntegrityIssue(
                    code="history_bad_start",
                    message=f"First transition starts at '{history[0].from_step}', "
                    f"not at the initial step '{graph.initial_step}'",
                )
            )

        for index, record in enumerate(history):
            if graph is not None:
                for step in (record.from_step, record.to_step):
                    if not graph.has_step(step):
                        issues.append(
                            IntegrityIssue(
                                code="unknown_history_step",
                                message=f"History entry {index + 1} references unknown "
                                f"step '{step}'",
                                severity="warning",
                            )
                        )
            if index == 0:
                continue
            previous = history[index - 1]
            if record.from_step != previous.to_step:
                issues.append(
                    IntegrityIssue(
                        code="history_discontinuity",
                        message=f"History entry {index + 1} starts at '{record.from_step}' "
                        f"but entry {index} ended at '{previous.to_step}'",
                    )
                )
            if record.timestamp < previous.timestamp:
                issues.append(
                    IntegrityIssue(
                        code="history_out_of_order",
                        message=f"History entry {index + 1} is older than entry {index}",
                        severity="warning",
                    )
                )

        if history[-1].to_step != execution.current_step:
            issues.append(
                IntegrityIssue(
                    code="history_step_mismatch",
                    message=f"Last transition ends at '{history[-1].to_step}' but the "
                    f"current step is '{execution.current_step}'",
                )
            )
        return issues

    # Plans

    def recovery_blockers(self, execution: ExecutionState) -> list[str]:
        blockers = []
        if execution.status.is_completed():
            blockers.append("Workflow is already completed")
        if _context_bytes(execution.context) is None:
            blockers.append("Context data appears corrupted")

        missing = []
        subject = getattr(execution, "subject", None)
        if subject is None or not subject.type or not subject.id:
            missing.append("subject reference")
        if not execution.workflow:
            missing.append("workflow")
        if missing:
            blockers.append(f"Missing critical data: {', '.join(missing)}")

        graph = self.engine.graph_for(execution)
        if graph is None or not graph.is_valid:
            blockers.append("Workflow definition is invalid or missing")
        return blockers

    def can_recover(self, execution: ExecutionState) -> bool:
        return not self.recovery_blockers(execution)

    def rollback_points(self, execution: ExecutionState) -> list[RollbackPoint]:
        """Checkpoints restorable without force, newest first."""
        graph = self.engine.graph_for(execution)
        history_len = len(execution.history)
        points = []
        for checkpoint in reversed(self.list_checkpoints(execution)):
            if not checkpoint.matches_history(execution.history):
                continue
            if checkpoint.captured_state.status.is_failed():
                continue
            if graph is not None and not graph.has_step(checkpoint.current_step):
                continue
            points.append(
                RollbackPoint(
                    checkpoint_id=checkpoint.id,
                    label=checkpoint.label,
                    step=checkpoint.current_step,
                    created_at=checkpoint.created_at.isoformat(),
                    age=describe_age(checkpoint.created_at),
                    records_discarded=history_len - checkpoint.history_length,
                )
            )
        return points

    def recovery_plan(self, execution: ExecutionState) -> RecoveryPlan:
        """Assess the execution and propose remediation steps (no side effects)."""
        blockers = self.recovery_blockers(execution)
        issues = self.validate_integrity(execution)
        points = self.rollback_points(execution)
        retry_action = _failed_action(execution)

        steps: list[RemediationStep] = []
        if not blockers:
            if retry_action is not None:
                steps.append(
                    RemediationStep(
                        order=len(steps) + 1,
                        strategy=RecoveryStrategy.RETRY_LAST,
                        description=f"Reactivate the execution and retry action '{retry_action}'",
                        risk="low",
                    )
                )
            if points:
                steps.append(
                    RemediationStep(
                        order=len(steps) + 1,
                        strategy=RecoveryStrategy.ROLLBACK,
                        description=f"Restore checkpoint '{points[0].label}' "
                        f"(step '{points[0].step}')",
                        risk="medium",
                        checkpoint_id=points[0].checkpoint_id,
                    )
                )
            graph = self.engine.graph_for(execution)
            if graph is not None and graph.initial_step is not None:
                steps.append(
                    RemediationStep(
                        order=len(steps) + 1,
                        strategy=RecoveryStrategy.RESET,
                        description=f"Reset to step '{graph.initial_step}'",
                        risk="high",
                        target_step=graph.initial_step,
                    )
                )

        if blockers:
            recommended = RecoveryStrategy.MANUAL
        elif retry_action is not None:
            recommended = RecoveryStrategy.RETRY_LAST
        elif points:
            recommended = RecoveryStrategy.ROLLBACK
        else:
            recommended = RecoveryStrategy.MANUAL

        risks = []
        size = _context_bytes(execution.context)
        if size is not None and size > LARGE_CONTEXT_BYTES:
            risks.append("Large context data may slow recovery")
        if len(execution.history) > self.settings.max_history_warning:
            risks.append("Long execution history may complicate rollback")

        return RecoveryPlan(
            execution_id=execution.id,
            current_step=execution.current_step,
            status=execution.status,
            can_recover=not blockers,
            blockers=blockers,
            issues=issues,
            integrity_score=max(0, 100 - 10 * len(issues)),
            recommended_strategy=recommended,
            steps=steps,
            rollback_points=points,
            risks=risks,
        )

    # Strategies

    def recover(
        self,
        execution: ExecutionState,
        strategy: RecoveryStrategy | str = RecoveryStrategy.AUTO,
        target_step: str | None = None,
        force: bool = False,
    ) -> RecoveryResult:
        """
        Apply a recovery strategy.

        Raises:
            RecoveryError: Unknown strategy, blocked execution, or the strategy
                is not applicable
            RollbackError: The store rejected the recovered state
        """
        try:
            strategy = RecoveryStrategy(strategy)
        except ValueError:
            raise RecoveryError(
                f"Unknown recovery strategy: {strategy}", execution_id=execution.id
            ) from None

        logger.info(
            f"[Execution:{execution.id}] Recovery attempt: strategy={strategy.value}, "
            f"target={target_step}, force={force}"
        )
        blockers = self.recovery_blockers(execution)
        if blockers:
            raise RecoveryError(
                f"Workflow cannot be recovered: {', '.join(blockers)}",
                execution_id=execution.id,
                current_step=execution.current_step,
                details={"blockers": blockers},
            )

        if strategy == RecoveryStrategy.AUTO:
            return self._auto(execution, force)
        if strategy == RecoveryStrategy.ROLLBACK:
            return self._rollback_to_safe_point(execution, strategy, force)
        if strategy == RecoveryStrategy.RESET:
            return self._reset(execution, target_step, strategy)
        if strategy == RecoveryStrategy.RETRY_LAST:
            return self._retry_last(execution, strategy)
        return self._manual(execution, target_step)

    def _auto(self, execution: ExecutionState, force: bool) -> RecoveryResult:
        if not execution.status.is_failed():
            raise RecoveryError(
                f"Auto recovery not applicable for status: {execution.status.value}",
                execution_id=execution.id,
                current_step=execution.current_step,
            )
        if _failed_action(execution) is not None:
            return self._retry_last(execution, RecoveryStrategy.AUTO)
        if self.rollback_points(execution):
            return self._rollback_to_safe_point(execution, RecoveryStrategy.AUTO, force)

        graph = self.engine.graph_for(execution)
        assert graph is not None
        return self._reset(execution, graph.initial_step, RecoveryStrategy.AUTO)

    def _rollback_to_safe_point(
        self, execution: ExecutionState, strategy: RecoveryStrategy, force: bool
    ) -> RecoveryResult:
        points = self.rollback_points(execution)
        if not points:
            raise RecoveryError(
                "No safe rollback point found",
                execution_id=execution.id,
                current_step=execution.current_step,
            )
        result = self.rollback(execution, points[0].checkpoint_id, force=force)
        return RecoveryResult(
            strategy=strategy,
            action="rollback",
            execution_id=execution.id,
            current_step=execution.current_step,
            status=execution.status,
            checkpoint_id=result.backup_checkpoint_id,
            target_step=result.restored_step,
            warnings=result.warnings,
        )

    def _reset(
        self, execution: ExecutionState, target_step: str | None, strategy: RecoveryStrategy
    ) -> RecoveryResult:
        if not target_step:
            raise RecoveryError("Target step required for reset", execution_id=execution.id)
        graph = self.engine.graph_for(execution)
        if graph is None or not graph.has_step(target_step):
            raise RecoveryError(f"Invalid target step: {target_step}", execution_id=execution.id)

        checkpoint_id = self.checkpoint(execution, f"Before reset to {target_step}")

        now = utcnow()
        candidate = execution.model_copy(deep=True)
        if target_step != execution.current_step:
            record = TransitionRecord(
                from_step=execution.current_step,
                to_step=target_step,
                action=RESET_ACTION,
                actor=None,
                timestamp=now,
            )
            candidate.history = [*candidate.history, record]
        candidate.current_step = target_step
        candidate.status = (
            ExecutionStatus.COMPLETED if graph.is_terminal(target_step) else ExecutionStatus.ACTIVE
        )
        candidate.last_error = None
        self._commit(execution, candidate, f"reset to {target_step}")

        logger.info(f"[Execution:{execution.id}] Recovery action: Reset to step {target_step}")
        return RecoveryResult(
            strategy=strategy,
            action="reset",
            execution_id=execution.id,
            current_step=execution.current_step,
            status=execution.status,
            checkpoint_id=checkpoint_id,
            target_step=target_step,
        )

    def _retry_last(self, execution: ExecutionState, strategy: RecoveryStrategy) -> RecoveryResult:
        action = _failed_action(execution)
        if action is None:
            raise RecoveryError(
                "No failed action to retry",
                execution_id=execution.id,
                current_step=execution.current_step,
            )

        candidate = execution.model_copy(deep=True)
        candidate.status = ExecutionStatus.ACTIVE
        candidate.last_error = None
        self._commit(execution, candidate, "retry_last")

        logger.info(
            f"[Execution:{execution.id}] Recovery action: Retry last action '{action}' "
            f"from {execution.current_step}"
        )
        return RecoveryResult(
            strategy=strategy,
            action="retry_last",
            execution_id=execution.id,
            current_step=execution.current_step,
            status=execution.status,
            retry_action=action,
        )

    def _manual(self, execution: ExecutionState, target_step: str | None) -> RecoveryResult:
        checkpoint_id = self.checkpoint(execution, "Before manual recovery")
        instructions = [
            "1. Review the current workflow state and context data",
            "2. Identify the root cause of the failure",
            "3. Make necessary corrections to the context or external systems",
            f"4. Consider resetting to step: {target_step}"
            if target_step
            else "4. Choose appropriate recovery step",
            "5. Create a checkpoint before making changes",
            "6. Test the recovery in a non-production environment if possible",
        ]
        return RecoveryResult(
            strategy=RecoveryStrategy.MANUAL,
            action="manual_preparation",
            execution_id=execution.id,
            current_step=execution.current_step,
            status=execution.status,
            checkpoint_id=checkpoint_id,
            target_step=target_step,
            instructions=instructions,
            plan=self.recovery_plan(execution),
        )

    def _commit(self, execution: ExecutionState, candidate: ExecutionState, what: str) -> None:
        candidate.updated_at = utcnow()
        candidate.version = execution.version + 1
        if self.store is not None:
            try:
                self.store.save(candidate, expected_version=execution.version)
            except StoreError as e:
                logger.error(f"[Execution:{execution.id}] Could not persist {what}: {e}")
                raise RollbackError(
                    f"Could not persist {what}: {e}",
                    execution_id=execution.id,
                    current_step=execution.current_step,
                    details={"original_error": type(e).__name__},
                ) from e
        execution.apply_from(candidate)

    # Diagnostics

    def export_diagnostics(self, execution: ExecutionState, fmt: str = "json") -> str:
        """
        Render a diagnostics document.

        Args:
            execution: Execution to describe
            fmt: "json" or "yaml"

        Raises:
            ValueError: Unsupported format
        """
        if fmt not in ("json", "yaml"):
            raise ValueError(f"Unsupported diagnostics format: {fmt}")

        issues = self.validate_integrity(execution)
        payload = {
            "execution_id": execution.id,
            "workflow": execution.workflow,
            "workflow_version": execution.workflow_version,
            "subject": str(execution.subject),
            "current_step": execution.current_step,
            "status": execution.status.value,
            "created_at": execution.created_at.isoformat(),
            "updated_at": execution.updated_at.isoformat(),
            "context_size": _context_bytes(execution.context),
            "history_length": len(execution.history),
            "last_error": execution.last_error,
            "integrity": {
                "valid": not issues,
                "issues": [issue.model_dump(mode="json") for issue in issues],
                "score": max(0, 100 - 10 * len(issues)),
            },
            "checkpoints": [c.summary() for c in self.list_checkpoints(execution)],
            "recovery_plan": self.recovery_plan(execution).model_dump(mode="json"),
            "exported_at": utcnow().isoformat(),
        }
        if fmt == "yaml":
            return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
        return json.dumps(payload, indent=2, ensure_ascii=False)


def _context_bytes(context: Any) -> int | None:
    """Serialized size of the context, None if it does not serialize."""
    try:
        return len(json.dumps(context, ensure_ascii=False, allow_nan=False).encode("utf-8"))
    except (TypeError, ValueError):
        return None


def _failed_action(execution: ExecutionState) -> str | None:
    """Action of the last retryable failed transition, if the execution is failed."""
    if not execution.status.is_failed() or not execution.last_error:
        return None
    if execution.last_error.get("retryable") is False:
        return None
    context = execution.last_error.get("context")
    if isinstance(context, dict) and isinstance(context.get("action"), str):
        return context["action"]
    return None


__all__ = [
    "IntegrityIssue",
    "RecoveryManager",
    "RecoveryPlan",
    "RecoveryResult",
    "RecoveryStrategy",
    "RemediationStep",
    "RollbackPoint",
    "RollbackResult",
]
