"""
Outcome of loading workflow definitions.

Loading never raises on bad input: one broken YAML file must not abort a
directory scan. A result is either loaded (``value`` set) or failed
(``error`` set). Graph-level problems travel as ValidationIssue objects so
callers can branch on issue codes instead of parsing the message, and
directory loads list the files they skipped.

Transitions use TransitionResult instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from .exceptions import DefinitionInvalid

if TYPE_CHECKING:
    from .validation import ValidationIssue

T = TypeVar("T")


@dataclass
class LoadResult(Generic[T]):  # noqa: UP046
    """
    Loaded value or load failure.

    Attributes:
        value: Loaded object (graph, graph list, registered count)
        error: Human-readable failure, None when loaded
        source: File or label the definition came from
        workflow_name: Name of the offending workflow when it parsed far enough
        issues: Static validation issues behind a failure
        skipped: "<file>: <reason>" entries for files a directory load skipped

    Usage:
        result = load_workflow_from_file(path)
        if result:
            registry.register(result.value)
        elif "unknown_target" in result.issue_codes:
            ...
    """

    value: T | None = None
    error: str | None = None
    source: str | None = None
    workflow_name: str | None = None
    issues: list[ValidationIssue] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.error is None and self.value is None:
            raise ValueError("LoadResult needs a value or an error")
        if self.error is not None and self.value is not None:
            raise ValueError("A failed LoadResult cannot carry a value")

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @property
    def issue_codes(self) -> list[str]:
        return [issue.code.value for issue in self.issues]

    @classmethod
    def loaded(
        cls, value: T, *, source: str | None = None, skipped: list[str] | None = None
    ) -> LoadResult[T]:
        return cls(value=value, source=source, skipped=list(skipped or []))

    @classmethod
    def failed(cls, error: str, *, source: str | None = None) -> LoadResult[T]:
        return cls(error=error, source=source)

    @classmethod
    def invalid(
        cls, workflow_name: str, issues: list[ValidationIssue], *, source: str
    ) -> LoadResult[T]:
        """Failure for a graph that parsed but did not pass static validation."""
        lines = "\n".join(f"  - [{issue.code.value}] {issue.message}" for issue in issues)
        return cls(
            error=f"Workflow '{workflow_name}' in {source} has {len(issues)} "
            f"definition issue(s):\n{lines}",
            source=source,
            workflow_name=workflow_name,
            issues=list(issues),
        )

    def __bool__(self) -> bool:
        return self.is_success

    def unwrap(self) -> T:
        """
        Get the loaded value.

        Raises:
            DefinitionInvalid: The definition parsed but has validation issues
            ValueError: Any other load failure
        """
        if self.error is not None:
            if self.issues:
                raise DefinitionInvalid(self.workflow_name or "<unknown>", self.issues)
            raise ValueError(f"Cannot unwrap failed result: {self.error}")
        return self.value  # type: ignore[return-value]


__all__ = ["LoadResult"]
