"""Workflow engine exceptions.

Hierarchy:

    WorkflowError
    ├── DefinitionInvalid            graph authoring errors (validation time only)
    ├── TransitionError
    │   ├── ActionNotAvailable       expected, caller-recoverable
    │   ├── ConditionsNotSatisfied   expected, caller-recoverable
    │   ├── CorruptState             engine invariant violated
    │   └── TransitionFailed         underlying write failed (wraps a cause)
    └── RecoveryError
        ├── CheckpointNotFound
        ├── UnsafeRollback
        └── RollbackError

    StoreError
    ├── ExecutionNotFound
    └── StaleExecutionError          optimistic version check lost

Transition errors are normally delivered inside a TransitionResult rather than
raised; callers that prefer exceptions use ``TransitionResult.raise_for_error()``.
"""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .validation import ValidationIssue


class WorkflowError(Exception):
    """
    Base class for all workflow errors.

    Carries enough structured information to render actionable feedback and to
    serialize the failure into an execution's ``last_error`` slot.

    Attributes:
        message: Human-readable error message
        execution_id: Execution the error belongs to (if any)
        current_step: Step the execution occupied when the error happened
        context: Situational data (action, from/to step, ...)
        details: Additional diagnostic data (checkpoint id, cause, ...)
    """

    severity = "low"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        current_step: str | None = None,
        context: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.execution_id = execution_id
        self.current_step = current_step
        self.context = context or {}
        self.details = details or {}
        super().__init__(message)

    @property
    def code(self) -> str:
        """Stable machine-readable error code (class name)."""
        return type(self).__name__

    def belongs_to(self, execution_id: str) -> bool:
        """Check if the error was raised for the given execution."""
        return self.execution_id == execution_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error to a JSON-compatible dictionary."""
        frames = traceback.format_tb(self.__traceback__)[:10] if self.__traceback__ else []
        return {
            "error_class": self.code,
            "message": self.message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "execution_id": self.execution_id,
            "current_step": self.current_step,
            "severity": self.severity,
            "retryable": self.retryable,
            "context": _jsonable(self.context),
            "details": _jsonable(self.details),
            "backtrace": frames,
        }

    def __repr__(self) -> str:
        return f"{self.code}({self.message!r})"


class DefinitionInvalid(WorkflowError):  # noqa: N818
    """
    Workflow graph failed static validation.

    Raised when an invalid graph is registered or used to create an execution.
    Never raised by a running transition.

    Attributes:
        workflow_name: Name of the offending workflow
        issues: Every validation issue found (not fail-fast)
    """

    severity = "critical"
    retryable = False

    def __init__(self, workflow_name: str, issues: list[ValidationIssue]):
        self.workflow_name = workflow_name
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues)
        super().__init__(
            f"Workflow '{workflow_name}' definition is invalid ({len(self.issues)} issue(s)): "
            f"{summary}",
            details={"issues": [issue.model_dump(mode="json") for issue in self.issues]},
        )

    def __repr__(self) -> str:
        return f"DefinitionInvalid(workflow={self.workflow_name!r}, issues={len(self.issues)})"


class TransitionError(WorkflowError):
    """
    Base class for errors produced while performing an action.

    Attributes:
        action: Attempted action name
    """

    severity = "high"

    def __init__(
        self,
        message: str,
        *,
        action: str,
        execution_id: str | None = None,
        current_step: str | None = None,
        context: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.action = action
        ctx = {"action": action, **(context or {})}
        super().__init__(
            message,
            execution_id=execution_id,
            current_step=current_step,
            context=ctx,
            details=details,
        )


class ActionNotAvailable(TransitionError):  # noqa: N818
    """The requested action is not defined at the current step (or the execution is not active)."""

    severity = "medium"

    def __init__(
        self,
        action: str,
        current_step: str,
        *,
        execution_id: str | None = None,
        available: list[str] | None = None,
        reason: str | None = None,
    ):
        self.available = list(available or [])
        message = reason or (
            f"Action '{action}' is not available in step '{current_step}'. "
            f"Available actions: {self.available}"
        )
        super().__init__(
            message,
            action=action,
            execution_id=execution_id,
            current_step=current_step,
            details={"available_actions": self.available},
        )


class ConditionsNotSatisfied(TransitionError):  # noqa: N818
    """
    A step or action condition evaluated to false (or failed to evaluate).

    Attributes:
        failed_condition: Description of the failing predicate
        scope: "step" for step-level conditions, "action" for the action condition
        evaluation_error: Error message if the predicate raised instead of returning
    """

    severity = "medium"

    def __init__(
        self,
        action: str,
        current_step: str,
        failed_condition: str,
        *,
        scope: str,
        execution_id: str | None = None,
        evaluation_error: str | None = None,
    ):
        self.failed_condition = failed_condition
        self.scope = scope
        self.evaluation_error = evaluation_error
        if evaluation_error:
            message = (
                f"Condition '{failed_condition}' for {scope} of action '{action}' in step "
                f"'{current_step}' could not be evaluated: {evaluation_error}"
            )
        else:
            message = (
                f"Condition '{failed_condition}' for {scope} of action '{action}' in step "
                f"'{current_step}' is not satisfied"
            )
        super().__init__(
            message,
            action=action,
            execution_id=execution_id,
            current_step=current_step,
            details={
                "failed_condition": failed_condition,
                "scope": scope,
                "evaluation_error": evaluation_error,
            },
        )


class CorruptState(TransitionError):  # noqa: N818
    """The execution violates an engine invariant (e.g. current step not in graph)."""

    severity = "critical"
    retryable = False


class TransitionFailed(TransitionError):  # noqa: N818
    """
    Applying a transition failed after it was validated.

    The execution is left at its pre-transition values with status ``failed``.

    Attributes:
        cause: Original exception
        from_step: Step before the transition
        to_step: Intended target step
        checkpoint_id: Most recent checkpoint usable for recovery (if any)
    """

    def __init__(
        self,
        action: str,
        from_step: str,
        to_step: str,
        cause: BaseException,
        *,
        execution_id: str | None = None,
        checkpoint_id: str | None = None,
    ):
        self.cause = cause
        self.from_step = from_step
        self.to_step = to_step
        self.checkpoint_id = checkpoint_id
        super().__init__(
            f"Transition '{action}' ({from_step} -> {to_step}) failed: {cause}",
            action=action,
            execution_id=execution_id,
            current_step=from_step,
            context={"from": from_step, "to": to_step},
            details={
                "checkpoint_id": checkpoint_id,
                "original_error": type(cause).__name__,
                "stale": self.is_stale,
            },
        )

    @property
    def is_stale(self) -> bool:
        """True when the write lost an optimistic concurrency check; reload and retry."""
        return isinstance(self.cause, StaleExecutionError)


class RecoveryError(WorkflowError):
    """Base class for recovery and rollback errors."""

    severity = "high"


class CheckpointNotFound(RecoveryError):  # noqa: N818
    """Checkpoint id is unknown or belongs to another execution."""

    def __init__(self, checkpoint_id: str, *, execution_id: str | None = None):
        self.checkpoint_id = checkpoint_id
        super().__init__(
            f"Checkpoint {checkpoint_id} not found",
            execution_id=execution_id,
            details={"checkpoint_id": checkpoint_id},
        )


class UnsafeRollback(RecoveryError):  # noqa: N818
    """Rollback refused without ``force=True``."""

    retryable = False


class RollbackError(RecoveryError):
    """Rollback or recovery action could not be applied."""


class InvalidConditionError(Exception):
    """Raised when a condition expression is invalid, unsafe, or fails to evaluate."""

    pass


class StoreError(Exception):
    """Base class for execution store failures."""

    pass


class ExecutionNotFound(StoreError):  # noqa: N818
    """Execution id is unknown to the store."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class StaleExecutionError(StoreError):
    """
    Optimistic version check failed.

    Another writer saved the execution since it was loaded.

    Attributes:
        execution_id: Execution being saved
        expected_version: Version the writer started from
        actual_version: Version currently stored
    """

    def __init__(self, execution_id: str, expected_version: int, actual_version: int):
        self.execution_id = execution_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Execution '{execution_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


def _jsonable(obj: Any) -> Any:
    """Best-effort conversion of error context into JSON-compatible values."""
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


__all__ = [
    "WorkflowError",
    "DefinitionInvalid",
    "TransitionError",
    "ActionNotAvailable",
    "ConditionsNotSatisfied",
    "CorruptState",
    "TransitionFailed",
    "RecoveryError",
    "CheckpointNotFound",
    "UnsafeRollback",
    "RollbackError",
    "InvalidConditionError",
    "StoreError",
    "ExecutionNotFound",
    "StaleExecutionError",
]
