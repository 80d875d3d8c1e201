# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class EventKind(str, enum.Enum):
    """Events a workflow can be triggered by."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    WORKFLOW_DISPATCH = "workflow_dispatch"


class Status(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class Marker(str, enum.Enum):
    """Why a step failed without a plain nonzero exit."""
    TIMED_OUT = "timed out"
    COULD_NOT_START = "could not start"
    CANCELLED = "cancelled"


class RunStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_TRIGGERED = "not triggered"


# ---------------------------------------------------------------------
# Definitions (load-time, immutable)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """
    An incoming event descriptor.

    `paths` is None when the set of changed files is unknown (e.g. a manual
    run without --from-git); path filters then do not exclude the run.
    """
    kind: EventKind
    branch: Optional[str] = None
    tag: Optional[str] = None
    paths: Optional[Tuple[str, ...]] = None

    def describe(self) -> str:
        parts = []
        if self.branch:
            parts.append(f"branch={self.branch}")
        if self.tag:
            parts.append(f"tag={self.tag}")
        if self.paths is not None:
            parts.append(f"paths={len(self.paths)}")
        return f"{self.kind.value} ({', '.join(parts)})" if parts else self.kind.value


@dataclass(frozen=True)
class TriggerRule:
    """An `on:` entry. Empty filter tuples mean "no filter"."""
    kind: EventKind
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RunStep:
    """A literal shell command."""
    run: str
    name: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    timeout: Optional[float] = None  # seconds

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        first = self.run.strip().splitlines()[0] if self.run.strip() else ""
        return f"Run {first}"


@dataclass(frozen=True)
class ActionStep:
    """A reference to a reusable action, resolved through an ActionRegistry."""
    uses: str
    name: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.name or f"Run {self.uses}"


StepDefinition = Union[RunStep, ActionStep]


@dataclass(frozen=True)
class MatrixAxis:
    """Named dimensions, in declaration order. No dimensions is the identity expansion."""
    dimensions: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()

    @classmethod
    def of(cls, axes: Optional[Mapping[str, Any]] = None) -> "MatrixAxis":
        axes = axes or {}
        return cls(tuple((str(k), tuple(v)) for k, v in axes.items()))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.dimensions]

    def __bool__(self) -> bool:
        return bool(self.dimensions)


@dataclass(frozen=True)
class JobDefinition:
    id: str
    steps: Tuple[StepDefinition, ...]
    runs_on: Optional[str] = None
    name: Optional[str] = None
    matrix: MatrixAxis = field(default_factory=MatrixAxis)
    env: Mapping[str, str] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    timeout: Optional[float] = None  # seconds, whole job

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: Mapping[str, JobDefinition]  # ordered: declaration order
    env: Mapping[str, str] = field(default_factory=dict)
    actions: Mapping[str, Optional[str]] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Run-time values
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobInstance:
    """A JobDefinition bound to one matrix assignment (already interpolated)."""
    job: JobDefinition
    index: int
    name: str
    values: Tuple[Tuple[str, Any], ...] = ()

    @property
    def key(self) -> Tuple[str, int]:
        return (self.job.id, self.index)

    @property
    def steps(self) -> Tuple[StepDefinition, ...]:
        return self.job.steps

    @property
    def matrix_values(self) -> Dict[str, Any]:
        return dict(self.values)


@dataclass
class StepResult:
    name: str
    status: Status = Status.PENDING
    exit_code: Optional[int] = None
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    marker: Optional[Marker] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class JobResult:
    instance: JobInstance
    steps: List[StepResult] = field(default_factory=list)
    started: bool = False
    reason: Optional[str] = None  # why the job failed/skipped outside of a step

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def status(self) -> Status:
        if any(s.status is Status.FAILED for s in self.steps):
            return Status.FAILED
        if not self.started:
            # never started: upstream failure (skipped) or cancelled before dispatch
            return Status.FAILED if self.reason == Marker.CANCELLED.value else Status.SKIPPED
        if self.reason is not None:
            return Status.FAILED
        if self.steps and all(s.status is Status.SUCCEEDED for s in self.steps):
            return Status.SUCCEEDED
        return Status.FAILED

    @property
    def duration(self) -> Optional[float]:
        durations = [s.duration for s in self.steps if s.duration is not None]
        return sum(durations) if durations else None


@dataclass
class WorkflowRun:
    """
    One run of a workflow for one event.

    Owns its instances and their results; `results` is written only by the
    scheduler's collecting loop.
    """
    workflow: WorkflowDefinition
    event: Event
    triggered: bool = True
    instances: List[JobInstance] = field(default_factory=list)
    results: Dict[Tuple[str, int], JobResult] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled: bool = False

    def record(self, result: JobResult) -> None:
        self.results[result.instance.key] = result

    def ordered_results(self) -> List[JobResult]:
        """Results in declaration/expansion order, independent of completion order."""
        return [self.results[i.key] for i in self.instances if i.key in self.results]

    @property
    def status(self) -> RunStatus:
        if not self.triggered:
            return RunStatus.NOT_TRIGGERED
        if len(self.results) != len(self.instances):
            return RunStatus.FAILED
        if all(r.status is Status.SUCCEEDED for r in self.results.values()):
            return RunStatus.SUCCEEDED
        return RunStatus.FAILED
