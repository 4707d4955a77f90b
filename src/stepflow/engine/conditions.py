"""
Condition predicates for steps and actions.

A condition is either:
1. An expression string evaluated by ConditionEvaluator against the context
2. A pure callable ``(context) -> bool`` injected by the caller

Expressions:
- Bare names resolve to context keys: ``score >= 7``
- ``ctx`` / ``context`` resolve to the whole context: ``ctx["score"] >= 7``
- Subscripts and dotted access into nested maps/lists: ``order.total > 100``,
  ``items[0] == 'a'``
- Supported operators: ==, !=, >, <, >=, <=, and, or, not, in, not in
- Literals: strings, numbers, booleans (True/true), None/null, lists, tuples

Evaluation never executes arbitrary code: expressions are parsed with
``ast.parse`` and walked with an explicit node and operator whitelist.
"""

from __future__ import annotations

import ast
import logging
import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .exceptions import InvalidConditionError

logger = logging.getLogger(__name__)

Predicate = Callable[[Mapping[str, Any]], bool]

_MISSING = object()

_LITERAL_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
}

_WHOLE_CONTEXT_NAMES = ("ctx", "context")


class Condition:
    """
    A single predicate over an execution context.

    Exactly one of ``expression`` or ``predicate`` is set. Instances are
    immutable and hashable so they can live inside frozen graph models.

    Attributes:
        expression: Safe boolean expression (see module docs)
        predicate: Injected pure function receiving the merged context
        description: Human-readable label used in error messages
    """

    __slots__ = ("expression", "predicate", "description")

    expression: str | None
    predicate: Predicate | None
    description: str | None

    def __init__(
        self,
        expression: str | None = None,
        predicate: Predicate | None = None,
        description: str | None = None,
    ):
        if (expression is None) == (predicate is None):
            raise ValueError("Condition requires exactly one of 'expression' or 'predicate'")
        if expression is not None and not expression.strip():
            raise ValueError("Condition expression must not be empty")
        object.__setattr__(self, "expression", expression)
        object.__setattr__(self, "predicate", predicate)
        object.__setattr__(self, "description", description)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Condition is immutable")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Condition):
            return NotImplemented
        return (self.expression, self.predicate, self.description) == (
            other.expression,
            other.predicate,
            other.description,
        )

    def __hash__(self) -> int:
        return hash((self.expression, self.predicate, self.description))

    def __repr__(self) -> str:
        return f"Condition({self.label!r})"

    @classmethod
    def coerce(cls, value: Any) -> Condition:
        """Build a Condition from a string, callable, mapping, or Condition."""
        if isinstance(value, Condition):
            return value
        if isinstance(value, str):
            return cls(expression=value)
        if isinstance(value, Mapping):
            return cls(
                expression=value.get("expression"),
                description=value.get("description"),
            )
        if callable(value):
            return cls(predicate=value)
        raise TypeError(
            f"Condition must be an expression string or a callable, got {type(value).__name__}"
        )

    @property
    def label(self) -> str:
        """Identify the predicate in error messages and debug output."""
        if self.description:
            return self.description
        if self.expression is not None:
            return self.expression
        name = getattr(self.predicate, "__name__", None)
        return name if name and name != "<lambda>" else repr(self.predicate)

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        """
        Evaluate the condition.

        Raises:
            InvalidConditionError: If evaluation fails or yields a non-boolean
        """
        if self.expression is not None:
            return _EVALUATOR.evaluate(self.expression, context)

        assert self.predicate is not None
        try:
            result = self.predicate(context)
        except Exception as e:
            raise InvalidConditionError(f"{type(e).__name__}: {e}") from e
        return bool(result)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly description (callables are described by name only)."""
        return {
            "expression": self.expression,
            "predicate": None if self.predicate is None else self.label,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class ConditionOutcome:
    """
    Result of checking one condition.

    Attributes:
        condition: The evaluated condition
        scope: "step" or "action"
        passed: Whether the predicate held
        error: Evaluation error message (passed is False when set)
    """

    condition: Condition
    scope: str
    passed: bool
    error: str | None = None

    @property
    def details(self) -> str:
        if self.error:
            return f"Condition error: {self.error}"
        return f"Condition '{self.condition.label}' evaluated to {self.passed}"


def check_condition(condition: Condition, context: Mapping[str, Any], scope: str) -> ConditionOutcome:
    """Evaluate a condition, converting any evaluation error into a failed outcome."""
    try:
        passed = condition.evaluate(context)
    except InvalidConditionError as e:
        logger.debug(f"Condition '{condition.label}' failed to evaluate: {e}")
        return ConditionOutcome(condition=condition, scope=scope, passed=False, error=str(e))
    return ConditionOutcome(condition=condition, scope=scope, passed=passed)


class ConditionEvaluator:
    """
    Safe AST-based boolean expression evaluator.

    Security:
        - Uses ast.parse() (no code execution)
        - Whitelist of allowed nodes and operators
        - No function calls, imports, comprehensions, or lambdas

    Example:
        evaluator = ConditionEvaluator()
        evaluator.evaluate("score >= 7 and reviewer != None", {"score": 8, "reviewer": "ann"})
        # Returns: True
    """

    SAFE_OPERATORS: dict[type, Any] = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Not: operator.not_,
        ast.In: lambda x, y: x in y,
        ast.NotIn: lambda x, y: x not in y,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> bool:
        """
        Evaluate an expression against a context.

        Args:
            expression: Boolean expression
            context: Mapping used to resolve names

        Returns:
            Boolean result

        Raises:
            InvalidConditionError: If the expression is invalid, unsafe, references
                a missing key, or does not produce a boolean
        """
        # ast.parse mode='eval' requires a single-line expression
        normalized = expression.replace("\n", " ").replace("\r", " ").strip()
        try:
            tree = ast.parse(normalized, mode="eval")
        except SyntaxError as e:
            raise InvalidConditionError(f"Invalid syntax in expression '{expression}': {e}") from e

        try:
            result = self._eval_node(tree.body, context)
        except InvalidConditionError:
            raise
        except Exception as e:
            raise InvalidConditionError(f"Evaluation error in '{expression}': {e}") from e

        if not isinstance(result, bool):
            raise InvalidConditionError(
                f"Expression '{expression}' must evaluate to boolean, "
                f"got {type(result).__name__}: {result!r}"
            )
        logger.debug(f"Condition evaluated: '{expression}' -> {result}")
        return result

    def validate(self, expression: str) -> None:
        """
        Check an expression only uses whitelisted syntax (no evaluation).

        Raises:
            InvalidConditionError: If the expression is not parseable or uses forbidden syntax
        """
        try:
            tree = ast.parse(expression.replace("\n", " ").strip(), mode="eval")
        except SyntaxError as e:
            raise InvalidConditionError(f"Invalid syntax in expression '{expression}': {e}") from e
        for node in ast.walk(tree.body):
            if not isinstance(node, _ALLOWED_NODES):
                raise InvalidConditionError(
                    f"Unsupported expression type '{type(node).__name__}' in '{expression}'"
                )

    def _eval_node(self, node: ast.AST, context: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self._resolve_name(node.id, context)

        if isinstance(node, ast.BoolOp):
            # Short-circuit so guards like "total != None and total > 5" are safe
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval_node(value, context)
                    if not result:
                        return result
                return result
            if isinstance(node.op, ast.Or):
                result = False
                for value in node.values:
                    result = self._eval_node(value, context)
                    if result:
                        return result
                return result
            raise InvalidConditionError(f"Unsupported boolean operator: {type(node.op).__name__}")

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, context)
            for op, comparator in zip(node.ops, node.comparators):
                op_func = self.SAFE_OPERATORS.get(type(op))
                if op_func is None:
                    raise InvalidConditionError(
                        f"Unsupported comparison operator: {type(op).__name__}"
                    )
                right = self._eval_node(comparator, context)
                if not op_func(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand, context)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub) and isinstance(operand, (int, float)):
                return -operand
            raise InvalidConditionError(f"Unsupported unary operator: {type(node.op).__name__}")

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval_node(elt, context) for elt in node.elts]

        if isinstance(node, ast.Subscript):
            container = self._eval_node(node.value, context)
            key = self._eval_node(node.slice, context)
            return self._lookup(container, key, ast.unparse(node))

        if isinstance(node, ast.Attribute):
            container = self._eval_node(node.value, context)
            return self._lookup(container, node.attr, ast.unparse(node))

        raise InvalidConditionError(
            f"Unsupported expression type: {type(node).__name__}. "
            f"Only literals, names, comparisons, and boolean operators are allowed."
        )

    @staticmethod
    def _resolve_name(name: str, context: Mapping[str, Any]) -> Any:
        if name in context:
            return context[name]
        if name in _WHOLE_CONTEXT_NAMES:
            return context
        if name.lower() in _LITERAL_NAMES:
            return _LITERAL_NAMES[name.lower()]
        raise InvalidConditionError(
            f"Context key '{name}' not found. Available keys: {sorted(context.keys())}"
        )

    @staticmethod
    def _lookup(container: Any, key: Any, source: str) -> Any:
        if isinstance(container, Mapping):
            value = container.get(key, _MISSING)
            if value is _MISSING:
                raise InvalidConditionError(f"Key {key!r} not found while resolving '{source}'")
            return value
        if isinstance(container, (list, tuple)) and isinstance(key, int):
            try:
                return container[key]
            except IndexError as e:
                raise InvalidConditionError(
                    f"Index {key} out of range while resolving '{source}'"
                ) from e
        raise InvalidConditionError(
            f"Cannot resolve '{source}': {type(container).__name__} is not subscriptable by {key!r}"
        )


_ALLOWED_NODES = (
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.Compare,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.List,
    ast.Tuple,
    ast.Subscript,
    ast.Attribute,
    *ConditionEvaluator.SAFE_OPERATORS.keys(),
)

_EVALUATOR = ConditionEvaluator()


__all__ = [
    "Condition",
    "ConditionEvaluator",
    "ConditionOutcome",
    "Predicate",
    "check_condition",
]
