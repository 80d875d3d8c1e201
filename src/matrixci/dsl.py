# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .loader import parse_event_kind, validate_workflow
from .errors import ConfigurationError
from .model import (
    ActionStep,
    EventKind,
    JobDefinition,
    MatrixAxis,
    RunStep,
    StepDefinition,
    TriggerRule,
    WorkflowDefinition,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    cmd: str,
    *,
    name: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> RunStep:
    """Create a shell step. `timeout` is in seconds."""
    return RunStep(run=cmd, name=name, env=dict(env or {}), working_directory=cwd, timeout=timeout)


def uses(
    ref: str,
    *,
    name: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    **with_: Any,
) -> ActionStep:
    """Reference a reusable action: uses("actions/checkout@v4", fetch_depth=1)."""
    inputs = {k.replace("_", "-"): str(v) for k, v in with_.items()}
    return ActionStep(uses=ref, name=name, with_=inputs, env=dict(env or {}), working_directory=cwd, timeout=timeout)


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepDefinition,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepDefinition]] = None,
    name: Optional[str] = None,
    runs_on: Optional[str] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    env: Optional[Dict[str, str]] = None,
    needs: Optional[List[str]] = None,
    timeout: Optional[float] = None,
) -> JobDefinition:
    steps_final: List[StepDefinition] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ConfigurationError(f"job({id!r}) must have at least one step")

    return JobDefinition(
        id=id,
        name=name,
        runs_on=runs_on,
        steps=tuple(steps_final),
        matrix=MatrixAxis.of({k: list(v) for k, v in (matrix or {}).items()}),
        env=dict(env or {}),
        needs=tuple(needs or ()),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on(
    kind: Union[str, EventKind],
    *,
    branches: Sequence[str] = (),
    branches_ignore: Sequence[str] = (),
    paths: Sequence[str] = (),
    paths_ignore: Sequence[str] = (),
) -> TriggerRule:
    ek = kind if isinstance(kind, EventKind) else parse_event_kind(kind)
    return TriggerRule(
        kind=ek,
        branches=tuple(branches),
        branches_ignore=tuple(branches_ignore),
        paths=tuple(paths),
        paths_ignore=tuple(paths_ignore),
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: JobDefinition,
    on: Sequence[Union[str, EventKind, TriggerRule]] = ("push",),
    env: Optional[Dict[str, str]] = None,
    actions: Optional[Dict[str, Optional[str]]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(...).

        from matrixci.dsl import wf, job, sh, uses

        def workflow():
            return wf(
                "CI",
                job("build", uses("actions/checkout@v4"), sh("make"), matrix={"cc": ["gcc", "clang"]}),
                on=["push", "pull_request"],
            )
    """
    triggers = tuple(t if isinstance(t, TriggerRule) else _on(t) for t in on)
    definition = WorkflowDefinition(
        name=name,
        triggers=triggers,
        jobs={j.id: j for j in jobs},
        env=dict(env or {}),
        actions=dict(actions or {}),
    )
    if len(definition.jobs) != len(jobs):
        ids = [j.id for j in jobs]
        raise ConfigurationError("Duplicate job ids found", ids=sorted({i for i in ids if ids.count(i) > 1}))
    return validate_workflow(definition)


_on = on
workflow = wf  # alias (avoid naming your function workflow if you use it)
