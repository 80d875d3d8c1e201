# report.py
# Final workflow verdict and the human readable / JSON report.
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .model import JobResult, RunStatus, Status, StepResult, WorkflowRun
from .ui.console import GLYPHS

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

DEFAULT_TAIL_LINES = 20


@dataclass(frozen=True)
class RenderedReport:
    status: RunStatus
    exit_code: int
    text: str
    data: Dict[str, Any]

    def to_json(self) -> str:
        return json.dumps(self.data, indent=2, sort_keys=False, ensure_ascii=False)


def exit_code_for(status: RunStatus) -> int:
    return EXIT_FAILED if status is RunStatus.FAILED else EXIT_SUCCESS


def tail(output: str, lines: int) -> List[str]:
    if lines <= 0 or not output:
        return []
    return output.rstrip("\n").splitlines()[-lines:]


def _fmt_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return ""
    return f"{seconds:.2f}s"


def _step_dict(step: StepResult, tail_lines: int, timings: bool) -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "name": step.name,
        "status": step.status.value,
        "exit_code": step.exit_code,
        "marker": step.marker.value if step.marker else None,
    }
    if step.error:
        d["error"] = step.error
    if timings:
        d["duration"] = step.duration
    if step.status is Status.FAILED:
        d["output_tail"] = tail(step.output, tail_lines)
    return d


def _job_dict(result: JobResult, tail_lines: int, timings: bool) -> Dict[str, Any]:
    inst = result.instance
    d: Dict[str, Any] = {
        "job": inst.job.id,
        "name": inst.name,
        "runs_on": inst.job.runs_on,
        "matrix": {k: v for k, v in inst.values},
        "status": result.status.value,
        "reason": result.reason,
        "steps": [_step_dict(s, tail_lines, timings) for s in result.steps],
    }
    if timings:
        d["duration"] = result.duration
    return d


def _counts(results: List[JobResult]) -> Dict[str, int]:
    counts = {Status.SUCCEEDED.value: 0, Status.FAILED.value: 0, Status.SKIPPED.value: 0}
    for r in results:
        counts[r.status.value] = counts.get(r.status.value, 0) + 1
    return counts


def _render_step(step: StepResult, tail_lines: int, timings: bool) -> List[str]:
    parts = [f"    {GLYPHS[step.status]} {step.name}"]
    if step.status is Status.FAILED and step.exit_code is not None:
        parts.append(f"exit={step.exit_code}")
    if step.marker is not None:
        parts.append(f"[{step.marker.value}]")
    if timings and step.duration is not None:
        parts.append(_fmt_duration(step.duration))
    lines = ["  ".join(parts)]
    if step.error:
        lines.append(f"        error: {step.error}")
    if step.status is Status.FAILED:
        lines.extend(f"        | {line}" for line in tail(step.output, tail_lines))
    return lines


def render_text(run: WorkflowRun, *, tail_lines: int = DEFAULT_TAIL_LINES, timings: bool = True) -> str:
    status = run.status
    lines = [
        "=" * 60,
        f"Workflow: {run.workflow.name}",
        f"Event:    {run.event.describe()}",
        f"Status:   {status.value.upper()}",
        "=" * 60,
    ]
    if status is RunStatus.NOT_TRIGGERED:
        lines.append("No trigger rule matched the event; no jobs were run.")
        return "\n".join(lines) + "\n"

    if run.cancelled:
        lines.append("Run timeout elapsed: running steps were cancelled.")

    results = run.ordered_results()
    for result in results:
        header = f"{GLYPHS[result.status]} {result.name}  [{result.status.value.upper()}]"
        if result.instance.job.runs_on:
            header += f"  runs-on={result.instance.job.runs_on}"
        if timings and result.duration is not None:
            header += f"  {_fmt_duration(result.duration)}"
        lines.append("")
        lines.append(header)
        if result.reason:
            lines.append(f"    reason: {result.reason}")
        for step in result.steps:
            lines.extend(_render_step(step, tail_lines, timings))

    counts = _counts(results)
    lines.append("")
    lines.append("-" * 60)
    lines.append(
        f"{len(results)} job(s): {counts['succeeded']} succeeded, "
        f"{counts['failed']} failed, {counts['skipped']} skipped"
    )
    return "\n".join(lines) + "\n"


def report(
    workflow_run: WorkflowRun,
    *,
    tail_lines: int = DEFAULT_TAIL_LINES,
    show_timings: bool = True,
) -> RenderedReport:
    """
    Per job, per matrix instance, per step: status, duration and, on failure,
    the tail of the captured output. Ordering follows the definition, not
    completion order, so equal runs render equal reports.
    """
    run = workflow_run
    results = run.ordered_results()
    data: Dict[str, Any] = {
        "workflow": run.workflow.name,
        "event": {
            "kind": run.event.kind.value,
            "branch": run.event.branch,
            "tag": run.event.tag,
        },
        "status": run.status.value,
        "cancelled": run.cancelled,
        "jobs": [_job_dict(r, tail_lines, show_timings) for r in results],
        "summary": _counts(results),
    }
    return RenderedReport(
        status=run.status,
        exit_code=exit_code_for(run.status),
        text=render_text(run, tail_lines=tail_lines, timings=show_timings),
        data=data,
    )
