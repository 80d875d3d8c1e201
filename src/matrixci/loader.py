# loader.py
# Workflow loading: YAML documents and python files using the DSL.
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .dag import validate_dag
from .errors import ConfigurationError
from .log import get_logger
from .matrix import expand, validate_matrix
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
from .triggers import validate_rule

logger = get_logger(__name__)

_FILTER_KEYS = {
    "branches": "branches",
    "branches-ignore": "branches_ignore",
    "paths": "paths",
    "paths-ignore": "paths_ignore",
}


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------

def parse_event_kind(value: Any, *, where: str = "on") -> EventKind:
    try:
        return EventKind(str(value))
    except ValueError:
        known = ", ".join(k.value for k in EventKind)
        raise ConfigurationError(f"unknown trigger kind {value!r} in '{where}'", known=known) from None


def _str_map(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"'{where}' must be a mapping")
    out: Dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, (dict, list)):
            raise ConfigurationError(f"'{where}.{k}' must be a scalar")
        out[str(k)] = _scalar(v)
    return out


def _scalar(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if v is None:
        return ""
    return str(v)


def _str_list(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, (str, int, float)) for v in value):
        raise ConfigurationError(f"'{where}' must be a string or a list of strings")
    return tuple(str(v) for v in value)


def _timeout(value: Any, where: str) -> Optional[float]:
    """`timeout-minutes` -> seconds."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"'{where}' must be a positive number of minutes")
    return float(value) * 60.0


# ----------------------------------------------------------------------
# Sections
# ----------------------------------------------------------------------

def parse_triggers(value: Any) -> Tuple[TriggerRule, ...]:
    """`on:` as a string, a list of strings, or a mapping kind -> filters|null."""
    if value is None:
        raise ConfigurationError("workflow must declare at least one trigger in 'on'")
    if isinstance(value, str):
        value = [value]

    rules: List[TriggerRule] = []
    if isinstance(value, list):
        for item in value:
            rules.append(TriggerRule(kind=parse_event_kind(item)))
    elif isinstance(value, Mapping):
        for kind, filters in value.items():
            ek = parse_event_kind(kind)
            if filters is None:
                rules.append(TriggerRule(kind=ek))
                continue
            if not isinstance(filters, Mapping):
                raise ConfigurationError(f"filters of trigger '{ek.value}' must be a mapping")
            fields: Dict[str, Tuple[str, ...]] = {}
            for key, val in filters.items():
                if key in _FILTER_KEYS:
                    fields[_FILTER_KEYS[key]] = _str_list(val, f"on.{ek.value}.{key}")
                elif key in ("cron", "types", "inputs", "tags", "tags-ignore"):
                    # accepted and carried by the hosting platform, not by this matcher
                    logger.debug("trigger_filter_ignored", trigger=ek.value, key=key)
                else:
                    raise ConfigurationError(f"unknown filter '{key}' for trigger '{ek.value}'")
            rules.append(TriggerRule(kind=ek, **fields))
    else:
        raise ConfigurationError("'on' must be a string, a list or a mapping")

    if not rules:
        raise ConfigurationError("workflow must declare at least one trigger in 'on'")
    for rule in rules:
        validate_rule(rule)
    return tuple(rules)


def parse_step(raw: Any, where: str) -> StepDefinition:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where} must be a mapping")
    has_run, has_uses = "run" in raw, "uses" in raw
    if has_run == has_uses:
        raise ConfigurationError(f"{where} must have exactly one of 'run' or 'uses'")

    name = raw.get("name")
    common: Dict[str, Any] = dict(
        name=str(name) if name is not None else None,
        env=_str_map(raw.get("env"), f"{where}.env"),
        working_directory=raw.get("working-directory"),
        timeout=_timeout(raw.get("timeout-minutes"), f"{where}.timeout-minutes"),
    )
    if has_run:
        run = raw["run"]
        if not isinstance(run, str) or not run.strip():
            raise ConfigurationError(f"{where}.run must be a non-empty string")
        return RunStep(run=run, **common)

    uses = raw["uses"]
    if not isinstance(uses, str) or not uses.strip():
        raise ConfigurationError(f"{where}.uses must be a non-empty string")
    return ActionStep(uses=uses.strip(), with_=_str_map(raw.get("with"), f"{where}.with"), **common)


def parse_matrix(raw: Mapping[str, Any], where: str) -> MatrixAxis:
    strategy = raw.get("strategy")
    matrix = raw.get("matrix")
    if strategy is not None:
        if not isinstance(strategy, Mapping):
            raise ConfigurationError(f"{where}.strategy must be a mapping")
        if matrix is not None:
            raise ConfigurationError(f"{where} declares both 'matrix' and 'strategy.matrix'")
        matrix = strategy.get("matrix")
    if matrix is None:
        return MatrixAxis()
    if not isinstance(matrix, Mapping):
        raise ConfigurationError(f"{where} matrix must be a mapping of axis -> list of values")
    for axis, values in matrix.items():
        if not isinstance(values, list):
            raise ConfigurationError(f"{where} matrix axis '{axis}' must be a list")
    return MatrixAxis.of(matrix)


def parse_job(job_id: str, raw: Any) -> JobDefinition:
    where = f"jobs.{job_id}"
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where} must be a mapping")
    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigurationError(f"{where} must have a non-empty 'steps' list")

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list):
        runs_on = ", ".join(str(x) for x in runs_on)
    name = raw.get("name")
    job = JobDefinition(
        id=job_id,
        name=str(name) if name is not None else None,
        runs_on=str(runs_on) if runs_on is not None else None,
        matrix=parse_matrix(raw, where),
        env=_str_map(raw.get("env"), f"{where}.env"),
        needs=_str_list(raw.get("needs"), f"{where}.needs"),
        timeout=_timeout(raw.get("timeout-minutes"), f"{where}.timeout-minutes"),
        steps=tuple(parse_step(s, f"{where}.steps[{i}]") for i, s in enumerate(steps_raw)),
    )
    validate_matrix(job)
    return job


def parse_actions(value: Any) -> Dict[str, Optional[str]]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError("'actions' must be a mapping of action reference -> command")
    out: Dict[str, Optional[str]] = {}
    for ref, cmd in value.items():
        if cmd is not None and not isinstance(cmd, str):
            raise ConfigurationError(f"actions.{ref} must be a command string or null")
        out[str(ref)] = cmd
    return out


def parse_workflow(data: Any, *, source: Optional[str] = None) -> WorkflowDefinition:
    """Build and validate a WorkflowDefinition from a loaded YAML document."""
    try:
        if not isinstance(data, Mapping):
            raise ConfigurationError("workflow document must be a mapping")

        # YAML 1.1 reads a bare `on` key as boolean True
        triggers_raw = data["on"] if "on" in data else data.get(True)
        jobs_raw = data.get("jobs")
        if not isinstance(jobs_raw, Mapping) or not jobs_raw:
            raise ConfigurationError("workflow must have a non-empty 'jobs' mapping")

        name = data.get("name") or (Path(source).stem if source else None)
        if not name:
            raise ConfigurationError("workflow must have a 'name'")

        definition = WorkflowDefinition(
            name=str(name),
            triggers=parse_triggers(triggers_raw),
            jobs={str(k): parse_job(str(k), v) for k, v in jobs_raw.items()},
            env=_str_map(data.get("env"), "env"),
            actions=parse_actions(data.get("actions")),
        )
        return validate_workflow(definition)
    except ConfigurationError as e:
        if source and e.source is None:
            e.source = source
        raise


def validate_workflow(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Checks shared by YAML and DSL definitions."""
    if not definition.triggers:
        raise ConfigurationError("workflow must declare at least one trigger")
    if not definition.jobs:
        raise ConfigurationError("workflow must declare at least one job")
    for rule in definition.triggers:
        validate_rule(rule)
    for job_id, job in definition.jobs.items():
        if job_id != job.id:
            raise ConfigurationError(f"job key '{job_id}' does not match job id '{job.id}'")
        if not job.steps:
            raise ConfigurationError(f"job '{job.id}' has no steps")
        validate_matrix(job)
        # rejects duplicate instance names
        expand(job)
    validate_dag(definition.jobs.values())
    return definition


def parse_yaml(text: str, *, source: Optional[str] = None) -> WorkflowDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML: {e}", source=source) from e
    return parse_workflow(data, source=source)


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """
    Load a workflow from a file.

    `.yml`/`.yaml` files are declarative documents. `.py` files must define
    either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition(...)

    Raises FileNotFoundError for a missing file and ConfigurationError for
    anything that cannot be turned into a valid definition.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        definition = parse_yaml(wf_path.read_text(encoding="utf-8"), source=str(wf_path))
    elif wf_path.suffix == ".py":
        definition = _load_python(wf_path)
    else:
        raise ConfigurationError(
            f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}",
            source=str(wf_path),
        )

    logger.debug("workflow_loaded", source=str(wf_path), jobs=len(definition.jobs))
    return definition


def _load_python(wf_path: Path) -> WorkflowDefinition:
    module_name = f"matrixci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except ConfigurationError as e:
        e.source = e.source or str(wf_path)
        raise
    except Exception as e:
        raise ConfigurationError(f"error while executing workflow file: {e}", source=str(wf_path)) from e

    definition: Any = None
    try:
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            definition = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            definition = globals_dict["WORKFLOW"]
    except ConfigurationError as e:
        e.source = e.source or str(wf_path)
        raise

    if not isinstance(definition, WorkflowDefinition):
        raise ConfigurationError(
            "Workflow file must define workflow() -> WorkflowDefinition or WORKFLOW = WorkflowDefinition(...)",
            source=str(wf_path),
        )
    try:
        return validate_workflow(definition)
    except ConfigurationError as e:
        e.source = e.source or str(wf_path)
        raise
