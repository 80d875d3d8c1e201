"""Shared fixtures: a deterministic command runner spy and sample workflows."""
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from matrixci.executor import JobExecutor
from matrixci.loader import parse_yaml
from matrixci.log import configure_logging
from matrixci.model import Marker, Status, StepResult, WorkflowDefinition
from matrixci.scheduler import WorkflowScheduler
from matrixci.ui.console import Console, set_console

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

CI_YAML = """
name: CI

on:
  push:
  pull_request:

env:
  CARGO_TERM_COLOR: always

jobs:
  build:
    runs-on: ubuntu-latest
    strategy:
      matrix:
        toolchain:
          - stable
          - beta
          - nightly
    steps:
      - run: cargo build --toolchain ${{ matrix.toolchain }}
        name: build
      - run: cargo test --toolchain ${{ matrix.toolchain }}
        name: test
  fmt:
    name: rustfmt
    runs-on: ubuntu-latest
    steps:
      - run: cargo fmt --all -- --check
        name: fmt
"""


class FakeRunner:
    """
    Deterministic stand-in for CommandRunner.

    `exit_codes` maps a substring of a command to the exit code it should
    produce; everything else succeeds. Every call is recorded.
    """

    def __init__(self, exit_codes: Optional[Dict[str, int]] = None, output: str = "ok\n",
                 delay: Optional[Callable[[str], None]] = None):
        self.exit_codes = exit_codes or {}
        self.output = output
        self.delay = delay
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    @property
    def commands(self) -> List[str]:
        return [c["command"] for c in self.calls]

    def run(self, command, env=None, cwd=None, timeout=None, *, name=None, cancel=None, on_output=None):
        with self._lock:
            self.calls.append({"command": command, "env": dict(env or {}), "cwd": cwd, "timeout": timeout})
        if self.delay is not None:
            self.delay(command)
        code = 0
        for fragment, exit_code in self.exit_codes.items():
            if fragment in command:
                code = exit_code
        if on_output is not None:
            for line in self.output.splitlines():
                on_output(line)
        if cancel is not None and cancel.is_set():
            return StepResult(name=name or command, status=Status.FAILED, marker=Marker.CANCELLED,
                              started_at=EPOCH, finished_at=EPOCH)
        return StepResult(
            name=name or command,
            status=Status.SUCCEEDED if code == 0 else Status.FAILED,
            exit_code=code,
            output=self.output if code == 0 else f"error: {command} failed\n",
            started_at=EPOCH,
            finished_at=EPOCH + timedelta(seconds=1),
        )


@pytest.fixture(autouse=True, scope="session")
def warning_logging():
    configure_logging()


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console


@pytest.fixture
def ci_workflow() -> WorkflowDefinition:
    return parse_yaml(CI_YAML, source="ci.yml")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_scheduler(quiet_console, tmp_path):
    def factory(runner, **kwargs) -> WorkflowScheduler:
        executor = JobExecutor(runner, workspace=tmp_path, console=quiet_console)
        return WorkflowScheduler(executor, console=quiet_console, **kwargs)
    return factory


@pytest.fixture
def write_workflow(tmp_path) -> Callable[[str, str], Path]:
    def write(text: str, name: str = "workflow.yml") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return write
