# steps.py
from __future__ import annotations

import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .cancel import CancelToken
from .errors import StepTransportError
from .model import Step


@dataclass(frozen=True)
class StepResult:
    exit_status: int
    duration: float
    output: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.cancelled


class StepRunner(Protocol):
    """
    External collaborator executing one step.

    Must stop promptly once `token` is cancelled and return a result with
    cancelled=True; raises StepTransportError if the step could not be run or
    observed at all.
    """

    def run(self, step: Step, token: CancelToken) -> StepResult: ...


# ----------------------------------------------------------------------
# Shell runner
# ----------------------------------------------------------------------

class ShellStepRunner:
    """Runs `step.run` through the shell, terminating it when cancelled."""

    def __init__(
        self,
        repo_root: str | Path = ".",
        poll_interval: float = 0.05,
        kill_after: float = 5.0,
        output_limit: int = 4000,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.poll_interval = poll_interval
        self.kill_after = kill_after
        self.output_limit = output_limit

    def run(self, step: Step, token: CancelToken) -> StepResult:
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepTransportError(f"step '{step.name}' cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(dict(step.env))

        started = time.monotonic()
        # output goes to a file so a chatty step never blocks on a full pipe
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as sink:
            try:
                proc = subprocess.Popen(
                    step.run,
                    shell=True,
                    cwd=str(cwd),
                    env=env,
                    text=True,
                    stdout=sink,
                    stderr=subprocess.STDOUT,
                )
            except OSError as e:
                raise StepTransportError(f"could not start step '{step.name}': {e}") from e

            cancelled = False
            while proc.poll() is None:
                if token.wait(self.poll_interval):
                    cancelled = True
                    self._stop(proc)
                    break

            sink.seek(0)
            out = sink.read()

        return StepResult(
            exit_status=proc.returncode if proc.returncode is not None else -1,
            duration=time.monotonic() - started,
            output=out[-self.output_limit:],
            cancelled=cancelled,
        )

    def _stop(self, proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.wait(timeout=self.kill_after)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
