"""Tests for WorkflowScheduler: triggering, concurrency, aggregation"""
import os
import threading
import time

import pytest

from matrixci.command import CommandRunner
from matrixci.dsl import job, sh, wf
from matrixci.model import Event, EventKind, Marker, RunStatus, Status

from conftest import FakeRunner

PUSH = Event(kind=EventKind.PUSH, branch="main")


def build_only(ci_workflow):
    return wf("CI", ci_workflow.jobs["build"], on=["push", "pull_request"])


class TestScenarios:

    def test_all_instances_succeed(self, ci_workflow, make_scheduler) -> None:
        runner = FakeRunner()
        run = make_scheduler(runner).run_workflow(build_only(ci_workflow), PUSH)

        assert run.status is RunStatus.SUCCEEDED
        assert len(run.instances) == 3
        steps = [s for r in run.ordered_results() for s in r.steps]
        assert len(steps) == 6
        assert all(s.status is Status.SUCCEEDED for s in steps)
        assert len(runner.calls) == 6

    def test_one_matrix_cell_fails(self, ci_workflow, make_scheduler) -> None:
        runner = FakeRunner(exit_codes={"cargo test --toolchain beta": 101})
        run = make_scheduler(runner).run_workflow(build_only(ci_workflow), PUSH)

        assert run.status is RunStatus.FAILED
        by_name = {r.name: r for r in run.ordered_results()}
        beta = by_name["build (beta)"]
        assert beta.status is Status.FAILED
        assert [s.status for s in beta.steps] == [Status.SUCCEEDED, Status.FAILED]
        assert by_name["build (stable)"].status is Status.SUCCEEDED
        assert by_name["build (nightly)"].status is Status.SUCCEEDED

    def test_independent_job_failure_does_not_abort_siblings(self, ci_workflow, make_scheduler) -> None:
        runner = FakeRunner(exit_codes={"cargo fmt": 1})
        run = make_scheduler(runner).run_workflow(ci_workflow, PUSH)

        assert run.status is RunStatus.FAILED
        results = run.ordered_results()
        assert [r.name for r in results] == ["build (stable)", "build (beta)", "build (nightly)", "rustfmt"]
        assert [r.status for r in results] == [Status.SUCCEEDED] * 3 + [Status.FAILED]
        assert len(runner.calls) == 7

    def test_not_triggered(self, ci_workflow, make_scheduler) -> None:
        runner = FakeRunner()
        run = make_scheduler(runner).run_workflow(ci_workflow, Event(kind=EventKind.SCHEDULE))

        assert run.status is RunStatus.NOT_TRIGGERED
        assert not run.triggered
        assert run.instances == []
        assert run.results == {}
        assert runner.calls == []

    def test_workflow_env_reaches_steps(self, ci_workflow, make_scheduler) -> None:
        runner = FakeRunner()
        make_scheduler(runner).run_workflow(ci_workflow, PUSH)
        assert all(c["env"]["CARGO_TERM_COLOR"] == "always" for c in runner.calls)


class TestConcurrency:

    def test_instances_run_concurrently(self, make_scheduler) -> None:
        barrier = threading.Barrier(4, timeout=10)
        runner = FakeRunner(delay=lambda command: barrier.wait())
        definition = wf("w", job("a", sh("x ${{ matrix.n }}"), matrix={"n": [1, 2, 3]}), job("b", sh("y")))

        run = make_scheduler(runner).run_workflow(definition, PUSH)

        # all four instances reached the barrier together
        assert run.status is RunStatus.SUCCEEDED

    def test_worker_bound_is_respected(self, make_scheduler) -> None:
        lock = threading.Lock()
        active = {"now": 0, "peak": 0}

        def delay(command):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            time.sleep(0.05)
            with lock:
                active["now"] -= 1

        runner = FakeRunner(delay=delay)
        definition = wf("w", job("a", sh("x ${{ matrix.n }}"), matrix={"n": list(range(6))}))

        run = make_scheduler(runner, max_workers=2).run_workflow(definition, PUSH)

        assert run.status is RunStatus.SUCCEEDED
        assert active["peak"] <= 2
        assert len(run.results) == 6

    def test_invalid_worker_bound(self, make_scheduler) -> None:
        with pytest.raises(ValueError):
            make_scheduler(FakeRunner(), max_workers=0)

    def test_crashing_instance_is_isolated(self, make_scheduler) -> None:
        def delay(command):
            if command == "explode":
                raise RuntimeError("runner bug")

        runner = FakeRunner(delay=delay)
        definition = wf("w", job("a", sh("explode")), job("b", sh("fine")))

        run = make_scheduler(runner).run_workflow(definition, PUSH)

        a, b = run.ordered_results()
        assert a.status is Status.FAILED
        assert "runner bug" in a.reason
        assert b.status is Status.SUCCEEDED
        assert run.status is RunStatus.FAILED


class TestNeeds:

    def test_dependent_runs_after_upstream(self, make_scheduler) -> None:
        runner = FakeRunner()
        definition = wf(
            "w",
            job("deploy", sh("deploy"), needs=["build"]),
            job("build", sh("build ${{ matrix.v }}"), matrix={"v": [1, 2]}),
        )

        run = make_scheduler(runner).run_workflow(definition, PUSH)

        assert run.status is RunStatus.SUCCEEDED
        assert runner.commands[-1] == "deploy"
        # report order follows declaration, not execution
        assert [r.name for r in run.ordered_results()] == ["deploy", "build (1)", "build (2)"]

    def test_failed_upstream_skips_dependents_transitively(self, make_scheduler) -> None:
        runner = FakeRunner(exit_codes={"build 2": 1})
        definition = wf(
            "w",
            job("build", sh("build ${{ matrix.v }}"), matrix={"v": [1, 2]}),
            job("test", sh("test"), needs=["build"]),
            job("deploy", sh("deploy"), needs=["test"]),
            job("lint", sh("lint")),
        )

        run = make_scheduler(runner).run_workflow(definition, PUSH)

        statuses = {r.name: r.status for r in run.ordered_results()}
        assert statuses == {
            "build (1)": Status.SUCCEEDED,
            "build (2)": Status.FAILED,
            "test": Status.SKIPPED,
            "deploy": Status.SKIPPED,
            "lint": Status.SUCCEEDED,
        }
        assert "test" not in runner.commands and "deploy" not in runner.commands
        assert run.status is RunStatus.FAILED


@pytest.mark.subprocess
@pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")
class TestRunTimeout:

    def test_run_timeout_cancels_running_steps(self, make_scheduler) -> None:
        definition = wf("w", job("slow", sh("sleep 30"), sh("echo never")), job("quick", sh("true")))
        started = time.monotonic()

        run = make_scheduler(CommandRunner(), run_timeout=0.5).run_workflow(definition, PUSH)

        assert time.monotonic() - started < 15
        assert run.cancelled
        assert run.status is RunStatus.FAILED
        slow, quick = run.ordered_results()
        assert slow.steps[0].marker is Marker.CANCELLED
        assert slow.steps[1].status is Status.SKIPPED
        assert quick.status is Status.SUCCEEDED


class TestInterrupt:

    def test_interrupt_cancels_running_steps(self, make_scheduler, monkeypatch) -> None:
        started = threading.Event()
        saw_cancel = []

        class BlockingRunner(FakeRunner):
            def run(self, command, env=None, cwd=None, timeout=None, *, name=None, cancel=None, on_output=None):
                started.set()
                saw_cancel.append(cancel.wait(10))
                return super().run(command, env, cwd, timeout, name=name, cancel=cancel, on_output=on_output)

        def interrupted(futures, timeout=None):
            started.wait(5)
            raise KeyboardInterrupt

        monkeypatch.setattr("matrixci.scheduler.as_completed", interrupted)
        definition = wf("w", job("slow", sh("sleep 30"), sh("echo never")))
        began = time.monotonic()

        with pytest.raises(KeyboardInterrupt):
            make_scheduler(BlockingRunner()).run_workflow(definition, PUSH)

        assert time.monotonic() - began < 5
        assert saw_cancel == [True]

    @pytest.mark.subprocess
    @pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")
    def test_interrupt_kills_real_processes(self, make_scheduler, monkeypatch) -> None:
        def interrupted(futures, timeout=None):
            time.sleep(0.3)
            raise KeyboardInterrupt

        monkeypatch.setattr("matrixci.scheduler.as_completed", interrupted)
        definition = wf("w", job("slow", sh("sleep 30")), job("slower", sh("sleep 60")))
        began = time.monotonic()

        with pytest.raises(KeyboardInterrupt):
            make_scheduler(CommandRunner()).run_workflow(definition, PUSH)

        assert time.monotonic() - began < 15
