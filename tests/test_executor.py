"""Tests for JobExecutor"""
import threading

import pytest

from matrixci.actions import ActionRegistry
from matrixci.dsl import job, sh, uses, wf
from matrixci.executor import JobExecutor
from matrixci.matrix import expand
from matrixci.model import Marker, Status

from conftest import FakeRunner


def single(definition):
    (instance,) = expand(definition)
    return instance


class TestFailFast:

    def test_all_steps_succeed(self, fake_runner, quiet_console) -> None:
        executor = JobExecutor(fake_runner, console=quiet_console)

        result = executor.execute(single(job("build", sh("build"), sh("test"))))

        assert result.status is Status.SUCCEEDED
        assert [s.status for s in result.steps] == [Status.SUCCEEDED, Status.SUCCEEDED]
        assert fake_runner.commands == ["build", "test"]

    @pytest.mark.parametrize("failing", [0, 1, 2, 3])
    def test_later_steps_are_skipped_and_never_spawned(self, quiet_console, failing: int) -> None:
        commands = [f"step-{i}" for i in range(4)]
        runner = FakeRunner(exit_codes={commands[failing]: 1})
        executor = JobExecutor(runner, console=quiet_console)

        result = executor.execute(single(job("j", *[sh(c) for c in commands])))

        assert result.status is Status.FAILED
        assert runner.commands == commands[:failing + 1]
        assert [s.status for s in result.steps] == (
            [Status.SUCCEEDED] * failing + [Status.FAILED] + [Status.SKIPPED] * (3 - failing)
        )
        assert result.steps[failing].exit_code == 1

    def test_steps_run_in_declared_order(self, fake_runner, quiet_console) -> None:
        executor = JobExecutor(fake_runner, console=quiet_console)
        executor.execute(single(job("j", sh("c"), sh("a"), sh("b"))))
        assert fake_runner.commands == ["c", "a", "b"]


class TestEnvironment:

    def test_layering(self, fake_runner, quiet_console) -> None:
        definition = wf(
            "w",
            job("j", sh("cmd", env={"STEP": "s", "SHARED": "step"}), env={"JOB": "j", "SHARED": "job"}),
            env={"WF": "w", "SHARED": "workflow"},
        )
        executor = JobExecutor(fake_runner, console=quiet_console).for_workflow(definition)

        executor.execute(single(definition.jobs["j"]))

        env = fake_runner.calls[0]["env"]
        assert env["WF"] == "w"
        assert env["JOB"] == "j"
        assert env["STEP"] == "s"
        assert env["SHARED"] == "step"

    def test_working_directory_is_relative_to_workspace(self, fake_runner, quiet_console, tmp_path) -> None:
        executor = JobExecutor(fake_runner, workspace=tmp_path, console=quiet_console)
        executor.execute(single(job("j", sh("a"), sh("b", cwd="sub"))))
        assert fake_runner.calls[0]["cwd"] == tmp_path / "."
        assert fake_runner.calls[1]["cwd"] == tmp_path / "sub"

    def test_step_timeout_is_passed_to_runner(self, fake_runner, quiet_console) -> None:
        executor = JobExecutor(fake_runner, console=quiet_console)
        executor.execute(single(job("j", sh("a", timeout=5), sh("b"))))
        assert fake_runner.calls[0]["timeout"] == 5
        assert fake_runner.calls[1]["timeout"] is None

    def test_job_timeout_bounds_step_timeout(self, fake_runner, quiet_console) -> None:
        executor = JobExecutor(fake_runner, console=quiet_console)
        executor.execute(single(job("j", sh("a", timeout=600), timeout=60)))
        assert 0 < fake_runner.calls[0]["timeout"] <= 60


class TestActions:

    def test_checkout_is_a_builtin_noop(self, fake_runner, quiet_console) -> None:
        executor = JobExecutor(fake_runner, console=quiet_console)

        result = executor.execute(single(job("j", uses("actions/checkout@v4"), sh("make"))))

        assert result.status is Status.SUCCEEDED
        assert fake_runner.commands == ["make"]

    def test_unresolved_action_could_not_start(self, fake_runner, quiet_console) -> None:
        executor = JobExecutor(fake_runner, console=quiet_console)

        result = executor.execute(single(job("j", uses("someone/unknown@v1"), sh("make"))))

        assert result.status is Status.FAILED
        assert result.steps[0].marker is Marker.COULD_NOT_START
        assert "someone/unknown@v1" in result.steps[0].error
        assert result.steps[1].status is Status.SKIPPED
        assert fake_runner.commands == []

    def test_registered_action_receives_inputs(self, fake_runner, quiet_console) -> None:
        registry = ActionRegistry({"dtolnay/rust-toolchain": "rustup default $INPUT_TOOLCHAIN"})
        executor = JobExecutor(fake_runner, actions=registry, console=quiet_console)

        executor.execute(single(job("j", uses("dtolnay/rust-toolchain@stable", toolchain="beta"))))

        call = fake_runner.calls[0]
        assert call["command"] == "rustup default $INPUT_TOOLCHAIN"
        assert call["env"]["INPUT_TOOLCHAIN"] == "beta"

    def test_overrides_win_over_workflow_actions(self, fake_runner, quiet_console) -> None:
        definition = wf("w", job("j", uses("my/setup@v1")), actions={"my/setup": "from-workflow"})
        executor = JobExecutor(
            fake_runner, action_overrides={"my/setup@v1": "from-cli"}, console=quiet_console,
        ).for_workflow(definition)

        executor.execute(single(definition.jobs["j"]))

        assert fake_runner.commands == ["from-cli"]


class TestCancellation:

    def test_cancelled_before_start(self, fake_runner, quiet_console) -> None:
        cancel = threading.Event()
        cancel.set()
        executor = JobExecutor(fake_runner, console=quiet_console)

        result = executor.execute(single(job("j", sh("a"), sh("b"))), cancel)

        assert fake_runner.commands == []
        assert not result.started
        assert result.reason == Marker.CANCELLED.value
        assert result.status is Status.FAILED
        assert all(s.status is Status.SKIPPED for s in result.steps)

    def test_cancelled_between_steps(self, quiet_console) -> None:
        cancel = threading.Event()
        runner = FakeRunner(delay=lambda command: cancel.set() if command == "a" else None)
        executor = JobExecutor(runner, console=quiet_console)

        result = executor.execute(single(job("j", sh("a"), sh("b"))), cancel)

        assert runner.commands == ["a"]
        assert result.status is Status.FAILED
        assert result.steps[0].marker is Marker.CANCELLED
        assert result.steps[1].status is Status.SKIPPED

    def test_skipped_result(self) -> None:
        result = JobExecutor.skipped(single(job("j", sh("a"))), "needs 'x' did not succeed")
        assert result.status is Status.SKIPPED
        assert result.steps[0].status is Status.SKIPPED
