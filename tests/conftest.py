"""Shared fixtures for stepflow tests.

Provides:
- Small workflow graphs (approval loop, scored gate)
- A registry, engine, recovery manager and inspector wired together
- A controllable clock so durations and timestamps are deterministic
"""

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import pytest

from stepflow.engine import (
    ExecutionState,
    GraphBuilder,
    InMemoryCheckpointStore,
    InMemoryExecutionStore,
    Inspector,
    RecoveryManager,
    TransitionEngine,
    WorkflowGraph,
    WorkflowRegistry,
)

T0 = datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

SUBJECT = {"type": "Document", "id": 42}
REVIEWER = {"type": "User", "id": 7}


class Clock:
    """Manually advanced clock, handed to the engine as its timestamp source."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def approval_graph() -> WorkflowGraph:
    """draft -(submit)-> review -(approve)-> approved, review -(reject)-> draft."""
    return (
        GraphBuilder("approval", description="Simple approval loop", tags=["approval"])
        .step("draft", description="Author is writing")
        .action("submit", to="review")
        .step("review", form_fields=[{"name": "comments", "as": "textarea"}])
        .action("approve", to="approved", description="Accept the document")
        .action("reject", to="draft")
        .step("approved")
        .build()
    )


@pytest.fixture
def scored_graph() -> WorkflowGraph:
    """draft -(grade, ctx["score"] >= 7)-> passed, draft -(retry)-> draft."""
    return (
        GraphBuilder("scored-review")
        .step("draft")
        .action("grade", to="passed", condition='ctx["score"] >= 7')
        .action("retry", to="draft")
        .step("passed")
        .build()
    )


@pytest.fixture
def registry(approval_graph: WorkflowGraph, scored_graph: WorkflowGraph) -> WorkflowRegistry:
    registry = WorkflowRegistry()
    registry.register(approval_graph)
    registry.register(scored_graph)
    return registry


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(registry: WorkflowRegistry, clock: Clock) -> TransitionEngine:
    return TransitionEngine(registry, clock=clock)


@pytest.fixture
def execution(registry: WorkflowRegistry) -> ExecutionState:
    """Fresh approval execution created at T0."""
    execution = registry.create_execution("approval", SUBJECT)
    execution.created_at = T0
    execution.updated_at = T0
    return execution


@pytest.fixture
def checkpoints() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def manager(engine: TransitionEngine, checkpoints: InMemoryCheckpointStore) -> RecoveryManager:
    return RecoveryManager(engine, checkpoints)


@pytest.fixture
def inspector(engine: TransitionEngine) -> Inspector:
    return Inspector(engine)


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def isolated_home(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Point HOME and the stepflow env vars at a temporary directory."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in (
        "STEPFLOW_CONFIG",
        "STEPFLOW_STATE_DIR",
        "STEPFLOW_LOG_LEVEL",
        "STEPFLOW_CHECKPOINT_BEFORE_TRANSITION",
        "STEPFLOW_MAX_CONTEXT_BYTES",
        "STEPFLOW_STALE_AFTER_HOURS",
        "STEPFLOW_MAX_CHECKPOINT_AGE_DAYS",
        "STEPFLOW_MAX_HISTORY_WARNING",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
