# triggers.py
# Event trigger matching: does an incoming event create a run?
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Optional, Sequence

from .errors import ConfigurationError
from .model import Event, TriggerRule


def _translate(pattern: str) -> str:
    """
    Translate a branch/path glob into a regex.

      *   any run of characters except '/'
      **  any run of characters, '/' included
      ?   one character except '/'
      [.] character class (must be closed)
    """
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                raise ConfigurationError(f"unterminated character class in pattern {pattern!r}")
            body = pattern[i + 1:end]
            if not body:
                raise ConfigurationError(f"empty character class in pattern {pattern!r}")
            if body[0] == "!":
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = end
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigurationError(f"invalid filter pattern: {pattern!r}")
    try:
        return re.compile(rf"\A{_translate(pattern)}\Z")
    except re.error as e:
        raise ConfigurationError(f"invalid filter pattern {pattern!r}: {e}") from e


def validate_rule(rule: TriggerRule) -> None:
    """Compile every pattern of a rule so malformed ones fail at load time."""
    for pattern in (*rule.branches, *rule.branches_ignore, *rule.paths, *rule.paths_ignore):
        compile_pattern(pattern)


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(compile_pattern(p).match(value) for p in patterns)


def _ref_ok(ref: Optional[str], include: Sequence[str], exclude: Sequence[str]) -> bool:
    if not include and not exclude:
        return True
    if ref is None:
        return False
    if include and not _matches_any(ref, include):
        return False
    if exclude and _matches_any(ref, exclude):
        return False
    return True


def _paths_ok(paths: Optional[Sequence[str]], include: Sequence[str], exclude: Sequence[str]) -> bool:
    if not include and not exclude:
        return True
    if paths is None:
        # changed files unknown: cannot rule the run out
        return True
    if include and not any(_matches_any(p, include) for p in paths):
        return False
    if exclude and paths and all(_matches_any(p, exclude) for p in paths):
        return False
    return True


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    if rule.kind is not event.kind:
        return False
    if not _ref_ok(event.branch, rule.branches, rule.branches_ignore):
        return False
    return _paths_ok(event.paths, rule.paths, rule.paths_ignore)


def matches(trigger_rules: Iterable[TriggerRule], incoming_event: Event) -> bool:
    """True iff any rule's kind equals the event's kind and all its filters pass."""
    return any(rule_matches(rule, incoming_event) for rule in trigger_rules)
