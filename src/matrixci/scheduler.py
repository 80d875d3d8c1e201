# scheduler.py
from __future__ import annotations

import contextvars
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Set

from .dag import build_dag
from .executor import JobExecutor
from .log import bind_run_context, clear_run_context, get_logger
from .matrix import expand
from .model import Event, JobInstance, JobResult, Status, WorkflowDefinition, WorkflowRun
from .triggers import matches
from .ui.console import Console, get_console

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowScheduler:
    """
    Turns (workflow, event) into a finished WorkflowRun.

    Every instance of every ready job is submitted to a bounded thread pool
    (FIFO once the bound is reached). Jobs are independent unless linked by
    `needs`; a failure never cancels a sibling, every instance runs to completion.
    Results are written only by the collecting loop below, never by workers.
    """

    def __init__(
        self,
        executor: Optional[JobExecutor] = None,
        *,
        max_workers: Optional[int] = None,
        run_timeout: Optional[float] = None,
        console: Optional[Console] = None,
    ):
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.executor = executor or JobExecutor(console=console)
        self.max_workers = max_workers
        self.run_timeout = run_timeout
        self.console = console

    def plan(self, workflow_definition: WorkflowDefinition) -> List[JobInstance]:
        """All instances of all jobs, in declaration then expansion order."""
        instances: List[JobInstance] = []
        for job in workflow_definition.jobs.values():
            instances.extend(expand(job))
        return instances

    def run_workflow(self, workflow_definition: WorkflowDefinition, event: Event) -> WorkflowRun:
        definition = workflow_definition
        console = self.console or get_console()
        run = WorkflowRun(workflow=definition, event=event, started_at=_now())

        if not matches(definition.triggers, event):
            logger.info("run_not_triggered", workflow=definition.name, event_kind=event.kind.value)
            run.triggered = False
            run.finished_at = _now()
            console.print_not_triggered(definition.name, event.describe())
            return run

        run.instances = self.plan(definition)
        by_job: Dict[str, List[JobInstance]] = {}
        for inst in run.instances:
            by_job.setdefault(inst.job.id, []).append(inst)

        bind_run_context(workflow=definition.name)
        try:
            console.print_run_started(definition.name, event.describe(), len(run.instances))
            logger.info("run_started", event_kind=event.kind.value, instances=len(run.instances))
            self._dispatch(definition, run, by_job)
        finally:
            run.finished_at = _now()
            logger.info("run_finished", status=run.status.value)
            clear_run_context()
        return run

    def _dispatch(self, definition: WorkflowDefinition, run: WorkflowRun, by_job: Dict[str, List[JobInstance]]) -> None:
        executor = self.executor.for_workflow(definition)
        adj, indeg = build_dag(definition.jobs.values())
        ready: Deque[str] = deque(job_id for job_id in definition.jobs if indeg[job_id] == 0)
        remaining: Dict[str, int] = {job_id: len(insts) for job_id, insts in by_job.items()}
        failed_jobs: Set[str] = set()
        blocked_by: Dict[str, str] = {}

        cancel = threading.Event()
        deadline = time.monotonic() + self.run_timeout if self.run_timeout else None
        max_workers = self.max_workers or max(1, len(run.instances))

        def finish_job(job_id: str) -> None:
            # unlock dependents; a job that did not fully succeed blocks them
            for nxt in sorted(adj[job_id], key=list(definition.jobs).index):
                if job_id in failed_jobs:
                    blocked_by.setdefault(nxt, job_id)
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)

        in_flight: Dict[Future, JobInstance] = {}

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matrixci") as pool:
            try:
                while ready or in_flight:
                    while ready:
                        job_id = ready.popleft()
                        if job_id in blocked_by:
                            reason = f"needs '{blocked_by[job_id]}' did not succeed"
                            for inst in by_job[job_id]:
                                run.record(executor.skipped(inst, reason))
                            logger.info("job_skipped", job=job_id, reason=reason)
                            failed_jobs.add(job_id)
                            finish_job(job_id)
                            continue
                        for inst in by_job[job_id]:
                            # workers see the run's bound log context
                            ctx = contextvars.copy_context()
                            in_flight[pool.submit(ctx.run, executor.execute, inst, cancel)] = inst
                            logger.debug("instance_dispatched", instance=inst.name)

                    if not in_flight:
                        break

                    timeout = None
                    if deadline is not None and not cancel.is_set():
                        timeout = max(0.0, deadline - time.monotonic())
                    try:
                        fut = next(as_completed(list(in_flight), timeout=timeout))
                    except FuturesTimeout:
                        logger.warning("run_cancelled", reason="run timeout", timeout=self.run_timeout)
                        run.cancelled = True
                        cancel.set()
                        continue

                    inst = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        logger.exception("instance_crashed", instance=inst.name)
                        result = JobResult(instance=inst, started=True, reason=f"internal error: {e}")
                    run.record(result)

                    job_id = inst.job.id
                    if result.status is not Status.SUCCEEDED:
                        failed_jobs.add(job_id)
                    remaining[job_id] -= 1
                    if remaining[job_id] == 0:
                        finish_job(job_id)
            except BaseException:
                # e.g. Ctrl-C: running steps must be killed before the pool joins its workers
                logger.warning("run_cancelled", reason="interrupted")
                run.cancelled = True
                cancel.set()
                raise


def run_workflow(
    workflow_definition: WorkflowDefinition,
    event: Event,
    *,
    executor: Optional[JobExecutor] = None,
    max_workers: Optional[int] = None,
    run_timeout: Optional[float] = None,
    console: Optional[Console] = None,
) -> WorkflowRun:
    """Convenience wrapper around WorkflowScheduler."""
    scheduler = WorkflowScheduler(
        executor,
        max_workers=max_workers,
        run_timeout=run_timeout,
        console=console,
    )
    return scheduler.run_workflow(workflow_definition, event)
