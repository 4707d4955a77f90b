"""
Execution state model: one running instance of a workflow graph.

An ExecutionState holds:
- The governing workflow (name + version) and the subject entity reference
- The current step
- The context: a JSON value tree that grows by merge across transitions
- The append-only transition history
- Status, assignee, timestamps, and an optimistic-lock version

``model_dump(mode="json")`` is the wire/storage contract shared with stores
and UI collaborators: maps, lists, strings, numbers, booleans, null, and
ISO-8601 timestamps only.
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime, time, timezone
from typing import Any

from pydantic import BaseModel, Field, JsonValue, field_validator

from .exceptions import DefinitionInvalid
from .execution_status import ExecutionStatus
from .graph import WorkflowGraph
from .validation import validate_graph


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def to_json_value(value: Any, path: str = "context") -> JsonValue:
    """
    Normalise a value into the closed JSON value type.

    - datetime/date/time -> ISO-8601 string
    - tuple/set/frozenset -> list
    - mapping keys must be strings
    - floats must be finite (NaN and infinities have no JSON form)

    Raises:
        TypeError: If the value cannot be represented as JSON
    """
    if isinstance(value, float) and not math.isfinite(value):
        raise TypeError(f"{path}: non-finite float {value!r} is not JSON-compatible")
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, dict):
        out: dict[str, JsonValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: keys must be strings, got {type(key).__name__}")
            out[key] = to_json_value(item, f"{path}.{key}")
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise TypeError(f"{path}: value of type {type(value).__name__} is not JSON-compatible")


class EntityRef(BaseModel):
    """Reference (type + id) to an external entity the core never owns."""

    model_config = {"frozen": True}

    type: str = Field(min_length=1)
    id: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


class SubjectRef(EntityRef):
    """The entity an execution is about (document, order, employee, ...)."""


class ActorRef(EntityRef):
    """The actor performing actions or assigned to an execution."""


class TransitionRecord(BaseModel):
    """
    One entry of the append-only history.

    Attributes:
        from_step: Step before the transition
        to_step: Step after the transition
        action: Action performed
        actor: Acting actor (optional)
        timestamp: When the transition was applied (UTC)
    """

    model_config = {"frozen": True}

    from_step: str
    to_step: str
    action: str
    actor: ActorRef | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionState(BaseModel):
    """
    Mutable record of one running workflow instance.

    Mutated only through TransitionEngine and RecoveryManager. History is
    never edited in place; it is only appended to (or truncated by rollback).
    """

    model_config = {"validate_assignment": True}

    id: str = Field(default_factory=new_id)
    workflow: str = Field(description="Name of the governing WorkflowGraph")
    workflow_version: str = "1.0"
    subject: SubjectRef
    current_step: str = Field(min_length=1)
    context: dict[str, JsonValue] = Field(default_factory=dict)
    history: list[TransitionRecord] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    assigned_to: ActorRef | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0, description="Optimistic lock counter")
    last_error: dict[str, JsonValue] | None = None

    @field_validator("context", mode="before")
    @classmethod
    def _normalise_context(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError(f"context must be a mapping, got {type(value).__name__}")
        return to_json_value(value)

    @field_validator("last_error", mode="before")
    @classmethod
    def _normalise_last_error(cls, value: Any) -> Any:
        return None if value is None else to_json_value(value, "last_error")

    # Read accessors (UI / form projection)

    def context_value(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)

    @property
    def last_transition(self) -> TransitionRecord | None:
        return self.history[-1] if self.history else None

    @property
    def is_finished(self) -> bool:
        return self.status.is_completed()

    def snapshot(self) -> ExecutionState:
        """Deep, detached copy (used for hook payloads and dry runs)."""
        return self.model_copy(deep=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ExecutionState:
        return cls.model_validate(data)

    # Caller-controlled status changes

    def pause(self) -> None:
        """Suspend an active execution."""
        if self.status != ExecutionStatus.ACTIVE:
            raise ValueError(f"Only active executions can be paused (status: {self.status.value})")
        self.status = ExecutionStatus.PAUSED
        self.updated_at = utcnow()

    def resume(self) -> None:
        """Resume a paused execution."""
        if self.status != ExecutionStatus.PAUSED:
            raise ValueError(f"Only paused executions can be resumed (status: {self.status.value})")
        self.status = ExecutionStatus.ACTIVE
        self.updated_at = utcnow()

    def apply_from(self, other: ExecutionState) -> None:
        """
        Overwrite every field with the values of ``other``.

        Used to commit a fully-built candidate state in one step.
        """
        for name in type(self).model_fields:
            object.__setattr__(self, name, getattr(other, name))


def create_execution(
    graph: WorkflowGraph,
    subject: SubjectRef | dict[str, Any],
    *,
    initial_context: dict[str, Any] | None = None,
    assigned_to: ActorRef | dict[str, Any] | None = None,
    execution_id: str | None = None,
) -> ExecutionState:
    """
    Create an execution positioned at the graph's initial step.

    Args:
        graph: Validated workflow graph
        subject: Entity the execution is about
        initial_context: Starting context (JSON-compatible)
        assigned_to: Initial assignee
        execution_id: Explicit id (a uuid is generated otherwise)

    Returns:
        New ExecutionState (``completed`` if the initial step is terminal)

    Raises:
        DefinitionInvalid: If the graph has validation issues
    """
    issues = validate_graph(graph)
    if issues:
        raise DefinitionInvalid(graph.name, issues)

    initial = graph.initial_step
    assert initial is not None

    status = ExecutionStatus.COMPLETED if graph.is_terminal(initial) else ExecutionStatus.ACTIVE
    fields: dict[str, Any] = {
        "workflow": graph.name,
        "workflow_version": graph.version,
        "subject": subject,
        "current_step": initial,
        "context": dict(initial_context or {}),
        "assigned_to": assigned_to,
        "status": status,
    }
    if execution_id is not None:
        fields["id"] = execution_id
    return ExecutionState.model_validate(fields)


__all__ = [
    "ActorRef",
    "EntityRef",
    "ExecutionState",
    "SubjectRef",
    "TransitionRecord",
    "create_execution",
    "new_id",
    "to_json_value",
    "utcnow",
]
