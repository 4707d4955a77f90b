"""Execution lifecycle status."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """
    Lifecycle states of a workflow execution.

    ``completed`` and ``failed`` are set by the engine; ``paused`` and
    ``active`` are otherwise caller-controlled.
    """

    ACTIVE = "active"
    """Accepting transitions."""

    COMPLETED = "completed"
    """Reached a terminal step (no outgoing actions)."""

    FAILED = "failed"
    """A transition failed unrecoverably; needs recovery."""

    PAUSED = "paused"
    """Temporarily suspended by the caller."""

    def is_active(self) -> bool:
        return self == ExecutionStatus.ACTIVE

    def is_completed(self) -> bool:
        return self == ExecutionStatus.COMPLETED

    def is_failed(self) -> bool:
        return self == ExecutionStatus.FAILED

    def is_paused(self) -> bool:
        return self == ExecutionStatus.PAUSED

    def accepts_transitions(self) -> bool:
        """Only active executions may perform actions."""
        return self == ExecutionStatus.ACTIVE
