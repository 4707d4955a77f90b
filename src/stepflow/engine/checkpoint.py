"""Checkpoint snapshots of execution state for rollback.

A checkpoint captures the mutable fields of an execution (current step,
context, status, assignee) plus the history length at capture time. History
itself is not copied: it is append-only, so restoring truncates it back to
``history_length``. A digest of that history prefix detects executions that
were rolled back past the checkpoint and then moved down another branch;
truncating those by length alone would keep records of the other branch.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, JsonValue

from .execution import ActorRef, ExecutionState, TransitionRecord, new_id, utcnow
from .execution_status import ExecutionStatus


class CapturedState(BaseModel):
    """
    Mutable execution fields frozen at checkpoint time.

    Attributes:
        current_step: Step occupied when captured
        context: Deep copy of the context
        status: Status when captured
        assigned_to: Assignee when captured
    """

    model_config = {"frozen": True}

    current_step: str
    context: dict[str, JsonValue] = Field(default_factory=dict)
    status: ExecutionStatus
    assigned_to: ActorRef | None = None


class Checkpoint(BaseModel):
    """
    Immutable point-in-time snapshot of an execution.

    Attributes:
        id: Unique checkpoint identifier
        execution_id: Execution the snapshot belongs to
        label: Human-readable label ("Before approve", ...)
        captured_state: Snapshot of the mutable fields
        history_length: Number of history records when captured
        history_digest: Digest of those records (None for checkpoints written
            before digests were recorded)
        created_at: Capture time (UTC)
        created_by: Component or actor that requested the checkpoint
    """

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    execution_id: str
    label: str
    captured_state: CapturedState
    history_length: int = Field(ge=0)
    history_digest: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "recovery_manager"

    @classmethod
    def capture(
        cls,
        execution: ExecutionState,
        label: str | None = None,
        created_by: str = "recovery_manager",
    ) -> Checkpoint:
        """Snapshot the execution's mutable fields."""
        now = utcnow()
        snapshot = execution.model_copy(deep=True)
        return cls(
            execution_id=execution.id,
            label=label or f"Checkpoint {now.strftime('%Y%m%d_%H%M%S')}",
            captured_state=CapturedState(
                current_step=snapshot.current_step,
                context=snapshot.context,
                status=snapshot.status,
                assigned_to=snapshot.assigned_to,
            ),
            history_length=len(execution.history),
            history_digest=history_digest(execution.history),
            created_at=now,
            created_by=created_by,
        )

    @property
    def current_step(self) -> str:
        return self.captured_state.current_step

    def matches_history(self, history: Sequence[TransitionRecord]) -> bool:
        """
        Whether ``history`` still starts with the records seen at capture time.

        False when the history is shorter than the checkpoint or its first
        ``history_length`` records differ from the captured ones.
        """
        if self.history_length > len(history):
            return False
        if self.history_digest is None:
            return True
        return history_digest(history[: self.history_length]) == self.history_digest

    def summary(self) -> dict[str, Any]:
        """Listing entry for UIs and diagnostics."""
        return {
            "id": self.id,
            "label": self.label,
            "step": self.captured_state.current_step,
            "status": self.captured_state.status.value,
            "history_length": self.history_length,
            "created_at": self.created_at.isoformat(),
            "age": describe_age(self.created_at),
        }


def history_digest(history: Sequence[TransitionRecord]) -> str:
    """SHA-256 over the JSON form of the records, in order."""
    payload = json.dumps(
        [record.model_dump(mode="json") for record in history], sort_keys=True
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def describe_age(timestamp: datetime, now: datetime | None = None) -> str:
    """Render the age of a timestamp as "N seconds/minutes/hours/days ago"."""
    seconds = ((now or utcnow()) - timestamp).total_seconds()
    if seconds < 0:
        return "in the future"
    if seconds < 60:
        return f"{int(seconds)} seconds ago"
    if seconds < 3600:
        return f"{int(seconds // 60)} minutes ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)} hours ago"
    return f"{int(seconds // 86400)} days ago"


__all__ = ["CapturedState", "Checkpoint", "describe_age", "history_digest"]
