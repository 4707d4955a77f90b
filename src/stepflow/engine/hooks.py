"""
Transition hooks: extension points for notifications and other side effects.

Hooks run after the engine has decided the outcome of a transition:
- success hooks receive ``(before, after, action_name)``
- failure hooks receive ``(before, after, action_name, error)``

``before`` and ``after`` are detached snapshots, so hooks cannot mutate the
live execution. A hook that raises is logged and reported back to the caller
in ``TransitionResult.hook_errors``; it never undoes a committed transition.
Delivery (mail, chat, webhooks) belongs to the Notifier the caller plugs in.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .exceptions import TransitionError
    from .execution import ExecutionState

logger = logging.getLogger(__name__)

SuccessHook = Callable[["ExecutionState", "ExecutionState", str], None]
FailureHook = Callable[["ExecutionState", "ExecutionState", str, "TransitionError"], None]


class Notifier(Protocol):
    """Delivery collaborator (not implemented by the core)."""

    def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class TransitionHooks:
    """
    Registry of success/failure hooks.

    Example:
        hooks = TransitionHooks()

        @hooks.on_success
        def announce(before, after, action):
            print(f"{before.current_step} -> {after.current_step} via {action}")

        engine = TransitionEngine(registry, hooks=hooks)
    """

    def __init__(self) -> None:
        self._success: list[SuccessHook] = []
        self._failure: list[FailureHook] = []

    def on_success(self, hook: SuccessHook) -> SuccessHook:
        """Register a success hook (usable as a decorator)."""
        self._success.append(hook)
        return hook

    def on_failure(self, hook: FailureHook) -> FailureHook:
        """Register a failure hook (usable as a decorator)."""
        self._failure.append(hook)
        return hook

    def __len__(self) -> int:
        return len(self._success) + len(self._failure)

    @classmethod
    def from_notifier(cls, notifier: Notifier) -> TransitionHooks:
        """Forward transition events to a Notifier as JSON payloads."""
        hooks = cls()

        def _success(before: ExecutionState, after: ExecutionState, action: str) -> None:
            notifier.notify(
                "transition.succeeded",
                {
                    "execution_id": after.id,
                    "workflow": after.workflow,
                    "action": action,
                    "from_step": before.current_step,
                    "to_step": after.current_step,
                    "status": after.status.value,
                },
            )

        def _failure(
            before: ExecutionState, after: ExecutionState, action: str, error: TransitionError
        ) -> None:
            notifier.notify(
                "transition.failed",
                {
                    "execution_id": after.id,
                    "workflow": after.workflow,
                    "action": action,
                    "step": before.current_step,
                    "status": after.status.value,
                    "error": error.to_dict(),
                },
            )

        hooks.on_success(_success)
        hooks.on_failure(_failure)
        return hooks

    def notify_success(
        self, before: ExecutionState, after: ExecutionState, action: str
    ) -> list[str]:
        errors = []
        for hook in self._success:
            try:
                hook(before, after, action)
            except Exception as e:
                logger.exception(f"Success hook {_hook_name(hook)} failed for action '{action}'")
                errors.append(f"{_hook_name(hook)}: {e}")
        return errors

    def notify_failure(
        self,
        before: ExecutionState,
        after: ExecutionState,
        action: str,
        error: TransitionError,
    ) -> list[str]:
        errors = []
        for hook in self._failure:
            try:
                hook(before, after, action, error)
            except Exception as e:
                logger.exception(f"Failure hook {_hook_name(hook)} failed for action '{action}'")
                errors.append(f"{_hook_name(hook)}: {e}")
        return errors


def _hook_name(hook: Callable[..., Any]) -> str:
    return getattr(hook, "__qualname__", None) or repr(hook)


__all__ = ["FailureHook", "Notifier", "SuccessHook", "TransitionHooks"]
