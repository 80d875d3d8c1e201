# matrix.py
# Expand a job definition over its matrix axes into concrete JobInstances.
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .model import ActionStep, JobDefinition, JobInstance, RunStep, StepDefinition

EXPRESSION = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_MATRIX_REF = re.compile(r"\Amatrix\.([A-Za-z_][A-Za-z0-9_-]*)\Z")


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def references(text: Optional[str]) -> List[str]:
    """
    Axis names referenced by `${{ matrix.<axis> }}` expressions in text.

    Raises ConfigurationError for any other expression.
    """
    if not text:
        return []
    names = []
    for expr in EXPRESSION.findall(text):
        m = _MATRIX_REF.match(expr)
        if not m:
            raise ConfigurationError(f"unsupported expression '${{{{ {expr} }}}}'", text=text)
        names.append(m.group(1))
    return names


def interpolate(text: Optional[str], values: Mapping[str, Any]) -> Optional[str]:
    if not text:
        return text

    def sub(m: "re.Match[str]") -> str:
        ref = _MATRIX_REF.match(m.group(1))
        if not ref or ref.group(1) not in values:
            raise ConfigurationError(f"cannot resolve '{m.group(0)}'", values=dict(values))
        return format_value(values[ref.group(1)])

    return EXPRESSION.sub(sub, text)


def step_texts(step: StepDefinition) -> List[Optional[str]]:
    """Every templated string of a step."""
    texts: List[Optional[str]] = [step.name, step.working_directory, *step.env.values()]
    if isinstance(step, RunStep):
        texts.append(step.run)
    elif isinstance(step, ActionStep):
        texts.extend(step.with_.values())
    else:
        raise TypeError(f"unknown step type: {type(step).__name__}")
    return texts


def validate_matrix(job: JobDefinition) -> None:
    """Empty axes, duplicate values and references to undeclared axes are errors."""
    for axis, values in job.matrix.dimensions:
        if len(values) == 0:
            raise ConfigurationError(f"job '{job.id}': matrix axis '{axis}' has no values")
        rendered = [format_value(v) for v in values]
        if len(set(rendered)) != len(rendered):
            raise ConfigurationError(f"job '{job.id}': matrix axis '{axis}' has duplicate values", values=rendered)

    declared = set(job.matrix.names)
    texts: List[Optional[str]] = [job.name, *job.env.values()]
    for step in job.steps:
        texts.extend(step_texts(step))
    for text in texts:
        for name in references(text):
            if name not in declared:
                raise ConfigurationError(
                    f"job '{job.id}' references undeclared matrix axis '{name}'",
                    declared=sorted(declared),
                )


def _bind_step(step: StepDefinition, values: Mapping[str, Any]) -> StepDefinition:
    env = {k: interpolate(v, values) for k, v in step.env.items()}
    common: Dict[str, Any] = dict(
        name=interpolate(step.name, values),
        env=env,
        working_directory=interpolate(step.working_directory, values),
    )
    if isinstance(step, RunStep):
        return replace(step, run=interpolate(step.run, values), **common)
    if isinstance(step, ActionStep):
        with_ = {k: interpolate(v, values) for k, v in step.with_.items()}
        return replace(step, with_=with_, **common)
    raise TypeError(f"unknown step type: {type(step).__name__}")


def instance_name(job: JobDefinition, values: Mapping[str, Any]) -> str:
    """
    "build" for no matrix, "build (nightly)" for one axis, "build (stable, linux)"
    for several. A display name that already uses matrix expressions is taken as is.
    """
    if job.name and references(job.name):
        return interpolate(job.name, values) or job.id
    if not values:
        return job.display_name
    return f"{job.display_name} ({', '.join(format_value(v) for v in values.values())})"


def expand(job_definition: JobDefinition) -> List[JobInstance]:
    """
    Cartesian product of the job's axes, first axis varying slowest, each axis in
    declared order. A job without axes yields exactly one instance carrying the
    base definition unchanged.
    """
    job = job_definition
    validate_matrix(job)

    if not job.matrix:
        return [JobInstance(job=job, index=0, name=instance_name(job, {}))]

    names = job.matrix.names
    axes = [values for _, values in job.matrix.dimensions]

    instances: List[JobInstance] = []
    seen: Dict[str, int] = {}
    for index, combo in enumerate(itertools.product(*axes)):
        values = dict(zip(names, combo))
        bound = replace(
            job,
            steps=tuple(_bind_step(s, values) for s in job.steps),
            env={k: interpolate(v, values) for k, v in job.env.items()},
        )
        name = instance_name(job, values)
        if name in seen:
            raise ConfigurationError(f"job '{job.id}': matrix produces duplicate instance name '{name}'")
        seen[name] = index
        pairs: Tuple[Tuple[str, Any], ...] = tuple(values.items())
        instances.append(JobInstance(job=bound, index=index, name=name, values=pairs))
    return instances
