"""
YAML workflow loader.

Parses YAML definitions with ``yaml.safe_load``, builds WorkflowGraph models
and runs the static validator, so every structural problem of a file is
reported in one LoadResult failure.

Definition format:

    name: document-approval
    description: Review and approve documents
    version: "1.0"
    tags: [approval]
    steps:
      - name: draft
        actions:
          - name: submit
            to: review
      - name: review
        conditions:
          - "assignee != null"
        actions:
          - {name: approve, to: approved, condition: "score >= 7"}
          - {name: reject, to: draft}
      - name: approved
"""

import logging
from pathlib import Path

import yaml

from .graph import WorkflowGraph
from .load_result import LoadResult
from .validation import validate_graph

logger = logging.getLogger(__name__)


def load_workflow_from_file(file_path: str | Path) -> LoadResult[WorkflowGraph]:
    """
    Load and validate a workflow from a YAML file.

    Args:
        file_path: Path to YAML workflow file

    Returns:
        LoadResult.loaded(WorkflowGraph) if valid
        LoadResult.failed(error_message) otherwise; graph validation failures
        also carry the ValidationIssue list in ``issues``

    Example:
        result = load_workflow_from_file("workflows/document-approval.yaml")
        if result.is_success:
            registry.register(result.value)
        else:
            print(f"Failed to load: {result.error}")
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failed(f"Workflow file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failed(f"Path is not a file: {file_path}")

    try:
        yaml_content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failed(f"Failed to read file '{file_path}': {e}")

    return load_workflow_from_yaml(yaml_content, source=str(file_path))


def load_workflow_from_yaml(
    yaml_content: str, source: str = "<string>"
) -> LoadResult[WorkflowGraph]:
    """
    Load and validate a workflow from a YAML string.

    Args:
        yaml_content: YAML document
        source: Source identifier for error messages

    Returns:
        LoadResult.loaded(WorkflowGraph) if the document parses, matches the
        model and passes graph validation; LoadResult.invalid with the issues
        when only graph validation fails; LoadResult.failed otherwise
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failed(f"Invalid YAML syntax in {source}: {e}", source=source)

    if not isinstance(data, dict):
        return LoadResult.failed(
            f"Workflow {source} must be a YAML dictionary, got {type(data).__name__}",
            source=source,
        )

    model_result = WorkflowGraph.validate_yaml_dict(data)
    if not model_result.is_success:
        return LoadResult.failed(
            f"Workflow validation failed in {source}:\n{model_result.error}", source=source
        )

    graph = model_result.unwrap()
    issues = validate_graph(graph)
    if issues:
        return LoadResult.invalid(graph.name, issues, source=source)

    return LoadResult.loaded(graph, source=source)


def discover_workflows(directory: str | Path) -> LoadResult[list[WorkflowGraph]]:
    """
    Load every *.yaml / *.yml workflow in a directory (non-recursive).

    Invalid files are logged and skipped; only a missing directory fails.
    """
    dir_path = Path(directory)

    if not dir_path.exists():
        return LoadResult.failed(f"Directory not found: {directory}")

    if not dir_path.is_dir():
        return LoadResult.failed(f"Path is not a directory: {directory}")

    workflows: list[WorkflowGraph] = []
    errors: list[str] = []

    yaml_files = sorted(dir_path.glob("*.yaml")) + sorted(dir_path.glob("*.yml"))
    for yaml_file in yaml_files:
        result = load_workflow_from_file(yaml_file)
        if result.is_success:
            workflows.append(result.unwrap())
        else:
            errors.append(f"{yaml_file.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} workflow(s) failed to load:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.loaded(workflows, source=str(dir_path), skipped=errors)


__all__ = ["discover_workflows", "load_workflow_from_file", "load_workflow_from_yaml"]
