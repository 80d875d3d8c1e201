# actions.py
# Local resolution of `uses:` references. Actions are opaque: each one maps to a
# shell command (or to a no-op) and receives its `with:` inputs as INPUT_* variables.
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .model import ActionStep

# The workspace a local run executes in already is the checkout.
BUILTIN_ACTIONS: Dict[str, Optional[str]] = {
    "actions/checkout": None,
}


@dataclass(frozen=True)
class ResolvedAction:
    ref: str
    command: Optional[str]  # None = no-op

    @property
    def is_noop(self) -> bool:
        return self.command is None


def input_env(with_: Mapping[str, str]) -> Dict[str, str]:
    """`with: {fetch-depth: 1}` -> {"INPUT_FETCH_DEPTH": "1"}"""
    return {f"INPUT_{k.upper().replace('-', '_').replace(' ', '_')}": str(v) for k, v in with_.items()}


def unversioned(ref: str) -> str:
    return ref.split("@", 1)[0]


class ActionRegistry:
    def __init__(self, handlers: Optional[Mapping[str, Optional[str]]] = None, *, builtins: bool = True):
        self._handlers: Dict[str, Optional[str]] = dict(BUILTIN_ACTIONS) if builtins else {}
        if handlers:
            self._handlers.update(handlers)

    def register(self, ref: str, command: Optional[str]) -> None:
        self._handlers[ref] = command

    def with_overrides(self, handlers: Mapping[str, Optional[str]]) -> "ActionRegistry":
        merged = ActionRegistry(self._handlers, builtins=False)
        merged._handlers.update(handlers)
        return merged

    def __contains__(self, ref: str) -> bool:
        return ref in self._handlers or unversioned(ref) in self._handlers

    def resolve(self, step: ActionStep) -> Optional[ResolvedAction]:
        """Exact reference first, then the reference without its @version."""
        for key in (step.uses, unversioned(step.uses)):
            if key in self._handlers:
                return ResolvedAction(ref=step.uses, command=self._handlers[key])
        return None
