"""Workflow engine core.

Key Components:

- WorkflowGraph / StepDefinition / ActionDefinition: immutable graph models
- GraphBuilder: fluent graph construction
- validate_graph / ensure_valid: static definition validation
- Condition / ConditionEvaluator: safe condition expressions and predicates
- ExecutionState / create_execution: one running instance of a graph
- TransitionEngine / TransitionResult: performing actions
- TransitionHooks: success/failure extension points
- Checkpoint / CheckpointStore: snapshots for rollback
- RecoveryManager: checkpoint, rollback, integrity checks, recovery strategies
- Inspector: read-only trace, simulation, graph analysis and metrics
- ExecutionStore: persistence capability with optimistic versioning
- WorkflowRegistry / loader: YAML definitions and name lookup
- LoadResult: loaded value or load failure (with validation issues)
"""

from .checkpoint import CapturedState, Checkpoint, describe_age
from .checkpoint_store import CheckpointStore, FileCheckpointStore, InMemoryCheckpointStore
from .conditions import Condition, ConditionEvaluator, ConditionOutcome, check_condition
from .exceptions import (
    ActionNotAvailable,
    CheckpointNotFound,
    ConditionsNotSatisfied,
    CorruptState,
    DefinitionInvalid,
    ExecutionNotFound,
    InvalidConditionError,
    RecoveryError,
    RollbackError,
    StaleExecutionError,
    StoreError,
    TransitionError,
    TransitionFailed,
    UnsafeRollback,
    WorkflowError,
)
from .execution import (
    ActorRef,
    EntityRef,
    ExecutionState,
    SubjectRef,
    TransitionRecord,
    create_execution,
)
from .execution_status import ExecutionStatus
from .graph import ActionDefinition, GraphBuilder, StepDefinition, WorkflowGraph
from .hooks import Notifier, TransitionHooks
from .inspector import (
    ActionSuggestion,
    ExecutionMetrics,
    GraphAnalysis,
    Inspector,
    SimulationResult,
    TraceEntry,
    format_duration,
)
from .load_result import LoadResult
from .loader import discover_workflows, load_workflow_from_file, load_workflow_from_yaml
from .recovery import (
    IntegrityIssue,
    RecoveryManager,
    RecoveryPlan,
    RecoveryResult,
    RecoveryStrategy,
    RemediationStep,
    RollbackPoint,
    RollbackResult,
)
from .registry import WorkflowRegistry
from .state_config import StateConfig
from .store import ExecutionStore, InMemoryExecutionStore, SqliteExecutionStore
from .transition import Evaluation, TransitionEngine, TransitionResult, TransitionStatus
from .validation import IssueCode, ValidationIssue, ensure_valid, validate_graph

__all__ = [
    # Graph
    "ActionDefinition",
    "GraphBuilder",
    "StepDefinition",
    "WorkflowGraph",
    "IssueCode",
    "ValidationIssue",
    "ensure_valid",
    "validate_graph",
    "Condition",
    "ConditionEvaluator",
    "ConditionOutcome",
    "check_condition",
    # Execution
    "ActorRef",
    "EntityRef",
    "ExecutionState",
    "ExecutionStatus",
    "SubjectRef",
    "TransitionRecord",
    "create_execution",
    "Evaluation",
    "TransitionEngine",
    "TransitionResult",
    "TransitionStatus",
    "Notifier",
    "TransitionHooks",
    # Recovery
    "CapturedState",
    "Checkpoint",
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "describe_age",
    "IntegrityIssue",
    "RecoveryManager",
    "RecoveryPlan",
    "RecoveryResult",
    "RecoveryStrategy",
    "RemediationStep",
    "RollbackPoint",
    "RollbackResult",
    # Inspector
    "ActionSuggestion",
    "ExecutionMetrics",
    "GraphAnalysis",
    "Inspector",
    "SimulationResult",
    "TraceEntry",
    "format_duration",
    # Storage and loading
    "ExecutionStore",
    "InMemoryExecutionStore",
    "SqliteExecutionStore",
    "StateConfig",
    "LoadResult",
    "WorkflowRegistry",
    "discover_workflows",
    "load_workflow_from_file",
    "load_workflow_from_yaml",
    # Errors
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
