"""
Workflow graph definition models (pydantic v2).

A workflow graph is a declarative description of:
- Workflow metadata (name, description, version, tags)
- Ordered steps (the first declared step is the initial step)
- Actions on each step: named, directed edges to a target step
- Optional conditions on steps and actions
- Opaque form field declarations preserved for UI collaborators

Graph models are frozen: construct once per workflow type, validate with
``validate_definition()`` (or register in a WorkflowRegistry) and share the
instance read-only across every execution of that type.

Example (Python):
    graph = (
        GraphBuilder("document-approval", description="Review documents")
        .step("draft").action("submit", to="review")
        .step("review")
        .action("approve", to="approved", condition="score >= 7")
        .action("reject", to="draft")
        .step("approved")
        .build()
    )

Example (YAML):
    name: document-approval
    description: Review documents
    steps:
      - name: draft
        actions:
          - name: submit
            to: review
      - name: review
        conditions:
          - "reviewer != None"
        actions:
          - {name: approve, to: approved, condition: "score >= 7"}
          - {name: reject, to: draft}
      - name: approved
"""

from __future__ import annotations

from collections.abc import Mapping
from functools import cached_property
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .conditions import Condition, ConditionEvaluator
from .exceptions import InvalidConditionError
from .load_result import LoadResult

if TYPE_CHECKING:
    from .validation import ValidationIssue

NAME_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$"

_syntax_checker = ConditionEvaluator()


def _coerce_condition(value: Any) -> Condition | None:
    if value is None:
        return None
    try:
        condition = Condition.coerce(value)
    except TypeError as e:
        raise ValueError(str(e)) from e
    if condition.expression is not None:
        try:
            _syntax_checker.validate(condition.expression)
        except InvalidConditionError as e:
            raise ValueError(str(e)) from e
    return condition


def _named_mapping_to_list(value: Any, what: str) -> Any:
    """Accept ``{name: {...}}`` mappings as shorthand for ``[{name: ..., ...}]``."""
    if not isinstance(value, Mapping):
        return value
    items = []
    for name, spec in value.items():
        if spec is None:
            spec = {}
        if isinstance(spec, str) and what == "action":
            spec = {"to": spec}
        if not isinstance(spec, Mapping):
            raise ValueError(f"{what} '{name}' must be a mapping, got {type(spec).__name__}")
        items.append({"name": name, **spec})
    return items


class ActionDefinition(BaseModel):
    """
    A named transition from one step to another.

    Attributes:
        name: Action identifier (unique within its step)
        to: Target step name
        condition: Optional predicate over the merged context
        description: Optional human description
        confirmation_required: Whether UIs should confirm before performing
    """

    model_config = {"frozen": True, "extra": "forbid", "arbitrary_types_allowed": True}

    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    to: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    condition: Condition | None = None
    description: str | None = None
    confirmation_required: bool = False

    @field_validator("condition", mode="before")
    @classmethod
    def _validate_condition(cls, value: Any) -> Condition | None:
        return _coerce_condition(value)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "to": self.to,
            "condition": self.condition.to_dict() if self.condition else None,
            "description": self.description,
            "confirmation_required": self.confirmation_required,
        }


class StepDefinition(BaseModel):
    """
    A named state in the workflow graph.

    Attributes:
        name: Step identifier (unique within the graph)
        description: Optional human description
        requirements: Free-text requirements (documentation only)
        conditions: Predicates that must all hold before leaving the step
        actions: Outgoing actions, in declaration order
        form_fields: Opaque form field declarations for UI collaborators
    """

    model_config = {"frozen": True, "extra": "forbid", "arbitrary_types_allowed": True}

    name: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    description: str | None = None
    requirements: list[str] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[ActionDefinition] = Field(default_factory=list)
    form_fields: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def _validate_conditions(cls, value: Any) -> list[Condition]:
        if value is None:
            return []
        if isinstance(value, (str, Condition)) or callable(value):
            value = [value]
        return [c for c in (_coerce_condition(item) for item in value) if c is not None]

    @field_validator("actions", mode="before")
    @classmethod
    def _validate_actions(cls, value: Any) -> Any:
        if value is None:
            return []
        return _named_mapping_to_list(value, "action")

    @property
    def action_names(self) -> list[str]:
        return [action.name for action in self.actions]

    @property
    def is_terminal(self) -> bool:
        """A step with no outgoing actions is terminal."""
        return not self.actions

    def get_action(self, name: str) -> ActionDefinition | None:
        """Return the first action declared with this name, or None."""
        for action in self.actions:
            if action.name == name:
                return action
        return None

    def requires_confirmation(self, action_name: str) -> bool:
        action = self.get_action(action_name)
        return action.confirmation_required if action else False

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "requirements": list(self.requirements),
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.describe() for a in self.actions],
            "form_fields": [dict(f) for f in self.form_fields],
            "terminal": self.is_terminal,
        }


class WorkflowGraph(BaseModel):
    """
    Immutable workflow definition.

    Structural checks (duplicate names, dangling targets, reachability) are
    NOT enforced at construction so that every problem can be reported in one
    pass by ``validate_definition()``.
    """

    model_config = {"frozen": True, "extra": "forbid", "arbitrary_types_allowed": True}

    name: str = Field(
        description="Unique workflow identifier (kebab-case)",
        pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$",
        min_length=1,
        max_length=100,
    )
    description: str = Field(default="", description="Human-readable workflow description")
    version: str = Field(default="1.0", pattern=r"^\d+\.\d+(\.\d+)?$")
    tags: list[str] = Field(default_factory=list)
    steps: list[StepDefinition] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def _validate_steps(cls, value: Any) -> Any:
        if value is None:
            return []
        return _named_mapping_to_list(value, "step")

    @cached_property
    def step_map(self) -> dict[str, StepDefinition]:
        """Step lookup by name (first declaration wins on duplicates)."""
        mapping: dict[str, StepDefinition] = {}
        for step in self.steps:
            mapping.setdefault(step.name, step)
        return mapping

    @property
    def step_names(self) -> list[str]:
        """Step names in declaration order (duplicates removed)."""
        return list(self.step_map.keys())

    @property
    def initial_step(self) -> str | None:
        return self.steps[0].name if self.steps else None

    @property
    def final_steps(self) -> list[str]:
        return [name for name, step in self.step_map.items() if step.is_terminal]

    def get_step(self, name: str) -> StepDefinition | None:
        return self.step_map.get(name)

    def has_step(self, name: str) -> bool:
        return name in self.step_map

    def is_terminal(self, name: str) -> bool:
        step = self.get_step(name)
        return step is not None and step.is_terminal

    def transitions(self) -> dict[str, list[str]]:
        """Adjacency list: step name -> target step names of its actions."""
        return {name: [a.to for a in step.actions] for name, step in self.step_map.items()}

    def can_transition(self, from_step: str, action: str, to_step: str) -> bool:
        step = self.get_step(from_step)
        if step is None:
            return False
        action_def = step.get_action(action)
        return action_def is not None and action_def.to == to_step

    def validate_definition(self) -> list[ValidationIssue]:
        """Run static validation; an empty list means the graph is usable."""
        from .validation import validate_graph

        return validate_graph(self)

    @property
    def is_valid(self) -> bool:
        return not self.validate_definition()

    def describe(self) -> dict[str, Any]:
        """JSON-compatible description for UI and documentation collaborators."""
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "tags": list(self.tags),
            "initial_step": self.initial_step,
            "final_steps": self.final_steps,
            "steps": [step.describe() for step in self.steps],
        }

    @classmethod
    def validate_yaml_dict(cls, data: dict[str, Any]) -> LoadResult[WorkflowGraph]:
        """
        Build a graph from a parsed YAML mapping.

        Returns:
            LoadResult.loaded(WorkflowGraph) or LoadResult.failed with
            formatted pydantic errors
        """
        try:
            return LoadResult.loaded(cls.model_validate(data))
        except ValidationError as e:
            lines = []
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"]) or "<root>"
                lines.append(f"  - {loc}: {err['msg']}")
            return LoadResult.failed("\n".join(lines))


class StepBuilder:
    """Fluent helper returned by GraphBuilder.step()."""

    def __init__(self, graph_builder: GraphBuilder, spec: dict[str, Any]):
        self._graph_builder = graph_builder
        self._spec = spec

    def action(
        self,
        name: str,
        to: str,
        *,
        condition: Any = None,
        description: str | None = None,
        confirmation_required: bool = False,
    ) -> StepBuilder:
        self._spec["actions"].append(
            {
                "name": name,
                "to": to,
                "condition": condition,
                "description": description,
                "confirmation_required": confirmation_required,
            }
        )
        return self

    def condition(self, condition: Any) -> StepBuilder:
        self._spec["conditions"].append(condition)
        return self

    def requirement(self, text: str) -> StepBuilder:
        self._spec["requirements"].append(text)
        return self

    def step(self, name: str, **kwargs: Any) -> StepBuilder:
        return self._graph_builder.step(name, **kwargs)

    def build(self) -> WorkflowGraph:
        return self._graph_builder.build()


class GraphBuilder:
    """
    Fluent construction of a WorkflowGraph.

    Duplicate step or action names are kept so the validator can report them.
    """

    def __init__(
        self,
        name: str,
        *,
        description: str = "",
        version: str = "1.0",
        tags: list[str] | None = None,
    ):
        self._meta: dict[str, Any] = {
            "name": name,
            "description": description,
            "version": version,
            "tags": list(tags or []),
        }
        self._steps: list[dict[str, Any]] = []

    def step(
        self,
        name: str,
        *,
        description: str | None = None,
        requirements: list[str] | None = None,
        conditions: list[Any] | None = None,
        form_fields: list[dict[str, Any]] | None = None,
    ) -> StepBuilder:
        spec: dict[str, Any] = {
            "name": name,
            "description": description,
            "requirements": list(requirements or []),
            "conditions": list(conditions or []),
            "actions": [],
            "form_fields": list(form_fields or []),
        }
        self._steps.append(spec)
        return StepBuilder(self, spec)

    def build(self) -> WorkflowGraph:
        return WorkflowGraph.model_validate({**self._meta, "steps": self._steps})


__all__ = [
    "ActionDefinition",
    "StepDefinition",
    "WorkflowGraph",
    "GraphBuilder",
    "StepBuilder",
]
