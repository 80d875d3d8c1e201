# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class ConfigurationError(Exception):
    """
    The workflow definition cannot be used.

    Raised at load time (or when a definition is built in code) and never
    once a run has started, so nothing is ever partially executed.
    """

    kind = "configuration_error"

    def __init__(self, message: str, *, source: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.source = source
        self.details: Dict[str, Any] = details

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.source:
            lines.append(f"source={self.source}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
