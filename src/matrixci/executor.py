# executor.py
from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .actions import ActionRegistry, input_env
from .command import CommandRunner
from .log import get_logger
from .model import (
    ActionStep,
    JobInstance,
    JobResult,
    Marker,
    RunStep,
    Status,
    StepDefinition,
    StepResult,
    WorkflowDefinition,
)
from .ui.console import Console, get_console

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutor:
    """
    Runs the steps of one JobInstance in order, fail-fast.

    After the first failed step the remaining steps are marked Skipped and
    never spawned. Environment layering, lowest to highest priority:
    process env < workflow env < job env < step env (< action INPUT_* vars).
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        workspace: Union[str, Path] = ".",
        actions: Optional[ActionRegistry] = None,
        workflow_env: Optional[Mapping[str, str]] = None,
        action_overrides: Optional[Mapping[str, Optional[str]]] = None,
        console: Optional[Console] = None,
    ):
        self.runner = runner or CommandRunner()
        self.workspace = Path(workspace)
        self.actions = actions or ActionRegistry()
        self.workflow_env = dict(workflow_env or {})
        self.action_overrides = dict(action_overrides or {})
        self.console = console

    def for_workflow(self, definition: WorkflowDefinition) -> "JobExecutor":
        """
        An executor bound to one workflow: its env overlay and its `actions:`
        handlers (explicit overrides still win).
        """
        actions = self.actions.with_overrides(definition.actions).with_overrides(self.action_overrides)
        return JobExecutor(
            self.runner,
            workspace=self.workspace,
            actions=actions,
            workflow_env={**self.workflow_env, **definition.env},
            action_overrides=self.action_overrides,
            console=self.console,
        )

    def execute(self, job_instance: JobInstance, cancel: Optional[threading.Event] = None) -> JobResult:
        instance = job_instance
        console = self.console or get_console()
        log = logger.bind(instance=instance.name)

        if cancel is not None and cancel.is_set():
            return self.cancelled(instance)

        result = JobResult(
            instance=instance,
            steps=[StepResult(name=s.display_name) for s in instance.steps],
            started=True,
        )
        console.print_job_start(instance.name)
        deadline = time.monotonic() + instance.job.timeout if instance.job.timeout else None

        for idx, step in enumerate(instance.steps):
            if cancel is not None and cancel.is_set():
                result.reason = Marker.CANCELLED.value
                self._skip_rest(result, idx)
                break

            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    result.steps[idx] = self._timed_out(step)
                    self._skip_rest(result, idx + 1)
                    console.print_step_result(instance.name, result.steps[idx])
                    break

            console.print_step(instance.name, step.display_name)
            step_result = self._run_step(instance, step, remaining, cancel, console)
            result.steps[idx] = step_result
            console.print_step_result(instance.name, step_result)
            log.debug("step_finished", step=step_result.name, status=step_result.status.value,
                      exit_code=step_result.exit_code)

            if step_result.status is Status.FAILED:
                self._skip_rest(result, idx + 1)
                break

        console.print_job_result(instance.name, result.status)
        return result

    @staticmethod
    def cancelled(instance: JobInstance) -> JobResult:
        """Result for an instance the run was cancelled before it started."""
        return JobExecutor.skipped(instance, Marker.CANCELLED.value)

    @staticmethod
    def skipped(instance: JobInstance, reason: str) -> JobResult:
        return JobResult(
            instance=instance,
            steps=[StepResult(name=s.display_name, status=Status.SKIPPED) for s in instance.steps],
            started=False,
            reason=reason,
        )

    # ------------------------------------------------------------------

    def step_env(self, instance: JobInstance, step: StepDefinition) -> Dict[str, str]:
        env: Dict[str, str] = {}
        env.update(self.workflow_env)
        env.update(instance.job.env)
        env.update(step.env)
        return {k: str(v) for k, v in env.items()}

    def _run_step(
        self,
        instance: JobInstance,
        step: StepDefinition,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
        console: Console,
    ) -> StepResult:
        env = self.step_env(instance, step)
        cwd = self.workspace / (step.working_directory or ".")
        if step.timeout is not None:
            timeout = step.timeout if timeout is None else min(timeout, step.timeout)

        if isinstance(step, RunStep):
            command = step.run
        elif isinstance(step, ActionStep):
            resolved = self.actions.resolve(step)
            if resolved is None:
                return StepResult(
                    name=step.display_name,
                    status=Status.FAILED,
                    marker=Marker.COULD_NOT_START,
                    error=f"no local handler for action '{step.uses}'",
                    started_at=_now(),
                    finished_at=_now(),
                )
            if resolved.is_noop:
                started = _now()
                return StepResult(
                    name=step.display_name,
                    status=Status.SUCCEEDED,
                    exit_code=0,
                    started_at=started,
                    finished_at=_now(),
                )
            command = resolved.command
            env.update(input_env(step.with_))
        else:
            raise TypeError(f"unknown step type: {type(step).__name__}")

        def on_output(line: str) -> None:
            console.print_output(instance.name, line)

        return self.runner.run(
            command,
            env=env,
            cwd=cwd,
            timeout=timeout,
            name=step.display_name,
            cancel=cancel,
            on_output=on_output,
        )

    @staticmethod
    def _timed_out(step: StepDefinition) -> StepResult:
        now = _now()
        return StepResult(
            name=step.display_name,
            status=Status.FAILED,
            marker=Marker.TIMED_OUT,
            error="job timeout elapsed before the step started",
            started_at=now,
            finished_at=now,
        )

    @staticmethod
    def _skip_rest(result: JobResult, start: int) -> None:
        for s in result.steps[start:]:
            s.status = Status.SKIPPED
