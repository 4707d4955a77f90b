"""
Workflow registry: explicit name -> WorkflowGraph mapping.

There is no global registry. Create one, pass it to the TransitionEngine
(which resolves ``execution.workflow`` through it) and to any code that
needs to look workflow types up by name.

Features:
- Register graphs with validation and duplicate detection
- Retrieve graphs by name, list names filtered by tags
- Load YAML definitions from directories (recursive) or the bundled templates
- Track the source directory of each graph
- Create executions for a registered workflow by name
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .exceptions import DefinitionInvalid
from .execution import ActorRef, ExecutionState, SubjectRef, create_execution
from .graph import WorkflowGraph
from .load_result import LoadResult
from .loader import load_workflow_from_file
from .validation import validate_graph

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


class WorkflowRegistry:
    """
    Registry of validated workflow graphs.

    Example:
        registry = WorkflowRegistry()
        registry.register(graph)
        registry.load_from_directory("workflows/")

        engine = TransitionEngine(registry)
        execution = registry.create_execution("document-approval", {"type": "Document", "id": 7})
    """

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowGraph] = {}
        self._workflow_sources: dict[str, Path] = {}

    def register(
        self,
        graph: WorkflowGraph,
        source_dir: Path | None = None,
        replace: bool = False,
    ) -> None:
        """
        Register a workflow graph.

        Args:
            graph: Graph to register
            source_dir: Optional source directory for tracking
            replace: Overwrite an existing graph with the same name

        Raises:
            DefinitionInvalid: If the graph has validation issues
            ValueError: If the name is taken and replace is False
        """
        issues = validate_graph(graph)
        if issues:
            raise DefinitionInvalid(graph.name, issues)

        if graph.name in self._workflows and not replace:
            raise ValueError(
                f"Workflow '{graph.name}' already registered. Use replace=True or unregister() first."
            )

        self._workflows[graph.name] = graph
        if source_dir is not None:
            self._workflow_sources[graph.name] = source_dir
        else:
            self._workflow_sources.pop(graph.name, None)

        logger.info(f"Registered workflow: {graph.name} (version {graph.version})")

    def unregister(self, name: str) -> None:
        """
        Unregister a workflow by name.

        Raises:
            KeyError: If workflow not found
        """
        if name not in self._workflows:
            raise KeyError(f"Workflow '{name}' not found in registry")

        del self._workflows[name]
        self._workflow_sources.pop(name, None)
        logger.info(f"Unregistered workflow: {name}")

    def get(self, name: str) -> WorkflowGraph:
        """
        Get a workflow graph by name.

        Raises:
            KeyError: If workflow not found
        """
        if name not in self._workflows:
            available = sorted(self._workflows.keys())
            raise KeyError(f"Workflow '{name}' not found. Available workflows: {available}")
        return self._workflows[name]

    def exists(self, name: str) -> bool:
        return name in self._workflows

    def list_all(self) -> list[WorkflowGraph]:
        return list(self._workflows.values())

    def list_names(self, tags: list[str] | None = None) -> list[str]:
        """
        List workflow names, optionally filtered by tags.

        Args:
            tags: Workflows must carry ALL of these tags to be included

        Returns:
            Sorted list of workflow names
        """
        if not tags:
            return sorted(self._workflows.keys())

        required_tags = set(tags)
        return sorted(
            name
            for name, graph in self._workflows.items()
            if required_tags.issubset(set(graph.tags))
        )

    def get_workflow_metadata(self, name: str) -> dict[str, Any]:
        """JSON-compatible description of a registered workflow."""
        metadata = self.get(name).describe()
        source = self._workflow_sources.get(name)
        metadata["source"] = str(source) if source else None
        return metadata

    def get_workflow_source(self, name: str) -> Path | None:
        return self._workflow_sources.get(name)

    def load_from_directory(self, directory: str | Path) -> LoadResult[int]:
        """
        Load and register all workflows from a directory (recursive).

        Invalid files and duplicate names are logged and skipped.

        Returns:
            LoadResult.loaded(count) with the number of workflows registered and
            the skipped files in ``skipped``
            LoadResult.failed(error_message) if the directory doesn't exist
        """
        dir_path = Path(directory)
        logger.info(f"Loading workflows from directory: {dir_path}")

        if not dir_path.exists():
            error_msg = f"Directory not found: {dir_path}"
            logger.error(error_msg)
            return LoadResult.failed(error_msg, source=str(dir_path))

        if not dir_path.is_dir():
            error_msg = f"Not a directory: {dir_path}"
            logger.error(error_msg)
            return LoadResult.failed(error_msg, source=str(dir_path))

        yaml_files = sorted(dir_path.glob("**/*.yaml")) + sorted(dir_path.glob("**/*.yml"))
        errors: list[str] = []
        loaded_count = 0
        for yaml_file in yaml_files:
            result = load_workflow_from_file(yaml_file)
            if not result.is_success:
                logger.warning(f"Failed to load workflow from {yaml_file.name}: {result.error}")
                errors.append(f"{yaml_file.name}: {result.error}")
                continue

            try:
                self.register(result.unwrap(), source_dir=dir_path)
                loaded_count += 1
            except ValueError as e:
                logger.warning(f"Skipping duplicate workflow: {e}")
                errors.append(f"{yaml_file.name}: {e}")

        logger.info(
            f"Successfully loaded {loaded_count} workflows from {dir_path} "
            f"({len(yaml_files)} YAML files found)"
        )
        return LoadResult.loaded(loaded_count, source=str(dir_path), skipped=errors)

    def load_templates(self) -> LoadResult[int]:
        """Register the workflow templates bundled with the package."""
        return self.load_from_directory(TEMPLATES_DIR)

    def create_execution(
        self,
        name: str,
        subject: SubjectRef | dict[str, Any],
        *,
        initial_context: dict[str, Any] | None = None,
        assigned_to: ActorRef | dict[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> ExecutionState:
        """
        Create an execution of a registered workflow.

        Raises:
            KeyError: If the workflow is not registered
        """
        execution = create_execution(
            self.get(name),
            subject,
            initial_context=initial_context,
            assigned_to=assigned_to,
            execution_id=execution_id,
        )
        logger.info(
            f"[Execution:{execution.id}] Created {name} execution for {execution.subject} "
            f"at step '{execution.current_step}'"
        )
        return execution

    def clear(self) -> None:
        """Remove all workflows (mainly for tests)."""
        self._workflows.clear()
        self._workflow_sources.clear()
        logger.info("Cleared all workflows from registry")

    def __len__(self) -> int:
        return len(self._workflows)

    def __contains__(self, name: object) -> bool:
        return name in self._workflows

    def __repr__(self) -> str:
        return f"WorkflowRegistry(workflows={len(self._workflows)})"


__all__ = ["TEMPLATES_DIR", "WorkflowRegistry"]
