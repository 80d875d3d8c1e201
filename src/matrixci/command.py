# command.py
# Runs one external command: merged environment, streamed output, timeout,
# cancellation. Never raises for a failing command: everything ends up in a StepResult.
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence, Union

from .log import get_logger
from .model import Marker, Status, StepResult

logger = get_logger(__name__)

Command = Union[str, Sequence[str]]
OutputCallback = Callable[[str], None]

# Shell statuses for "not executable" and "command not found".
SHELL_COULD_NOT_START = (126, 127)

_POSIX = os.name == "posix"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(command: Command) -> str:
    return command if isinstance(command, str) else " ".join(command)


class CommandRunner:
    """
    Executes commands as isolated subprocesses.

    Each call blocks the calling thread until the process exits, the timeout
    elapses or `cancel` is set; sibling threads are unaffected.
    """

    def __init__(
        self,
        base_env: Optional[Mapping[str, str]] = None,
        *,
        poll_interval: float = 0.05,
        kill_grace: float = 5.0,
    ):
        # None = read os.environ at call time
        self.base_env = dict(base_env) if base_env is not None else None
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def merged_env(self, env: Optional[Mapping[str, str]]) -> dict:
        merged = dict(os.environ if self.base_env is None else self.base_env)
        merged.update({k: str(v) for k, v in (env or {}).items()})
        return merged

    def run(
        self,
        command: Command,
        env: Optional[Mapping[str, str]] = None,
        cwd: Union[str, Path, None] = None,
        timeout: Optional[float] = None,
        *,
        name: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> StepResult:
        result = StepResult(name=name or _describe(command), status=Status.RUNNING, started_at=_now())
        shell = isinstance(command, str)

        if cancel is not None and cancel.is_set():
            return self._finish(result, Status.FAILED, marker=Marker.CANCELLED)

        try:
            proc = subprocess.Popen(
                command if shell else list(command),
                shell=shell,
                cwd=str(cwd) if cwd is not None else None,
                env=self.merged_env(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=_POSIX,
            )
        except OSError as e:
            logger.debug("spawn_failed", command=_describe(command), error=str(e))
            return self._finish(result, Status.FAILED, marker=Marker.COULD_NOT_START, error=str(e))

        lines: List[str] = []
        reader = threading.Thread(target=self._pump, args=(proc, lines, on_output), daemon=True)
        reader.start()

        deadline = time.monotonic() + timeout if timeout is not None else None
        marker: Optional[Marker] = None
        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                marker = Marker.CANCELLED
            elif deadline is not None and time.monotonic() >= deadline:
                marker = Marker.TIMED_OUT
            if marker is not None:
                self._kill(proc)
                proc.wait()
                break

        reader.join(self.kill_grace)
        if reader.is_alive():
            # a background child of the step still holds the pipe open
            logger.debug("orphaned_output_pipe", command=_describe(command))
            self._kill(proc)
            reader.join(self.kill_grace)
        result.output = "".join(list(lines))
        result.exit_code = proc.returncode

        if marker is not None:
            logger.debug("command_interrupted", command=_describe(command), marker=marker.value)
            return self._finish(result, Status.FAILED, marker=marker)
        if proc.returncode == 0:
            return self._finish(result, Status.SUCCEEDED)
        if shell and proc.returncode in SHELL_COULD_NOT_START:
            return self._finish(result, Status.FAILED, marker=Marker.COULD_NOT_START)
        return self._finish(result, Status.FAILED)

    @staticmethod
    def _pump(proc: subprocess.Popen, lines: List[str], on_output: Optional[OutputCallback]) -> None:
        assert proc.stdout is not None
        with proc.stdout:
            for line in proc.stdout:
                lines.append(line)
                if on_output is not None:
                    on_output(line.rstrip("\n"))

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        # the whole process group, so children of the shell die too
        try:
            if _POSIX:
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    def _finish(
        result: StepResult,
        status: Status,
        *,
        marker: Optional[Marker] = None,
        error: Optional[str] = None,
    ) -> StepResult:
        result.status = status
        result.marker = marker
        result.error = error
        result.finished_at = _now()
        return result
