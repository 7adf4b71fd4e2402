# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FlowgateError(Exception):
    """
    Structured error with enough context for:
      - clean CLI output
      - API error payloads
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Validation errors (fatal, raised before a run starts)
# ----------------------------------------------------------------------

class WorkflowValidationError(FlowgateError):
    pass


class InvalidWorkflow(WorkflowValidationError):
    def __init__(self, message: str, job: str | None = None, **details):
        super().__init__(kind="InvalidWorkflow", message=message, job=job, details=details)


class NotTriggered(WorkflowValidationError):
    def __init__(self, workflow: str, event: str, triggers: list[str]):
        super().__init__(
            kind="NotTriggered",
            message=f"Workflow '{workflow}' does not run on '{event}' events",
            details={"triggers": triggers},
        )


class InvalidMatrix(WorkflowValidationError):
    def __init__(self, message: str, job: str | None = None, axis: str | None = None):
        details = {"axis": axis} if axis is not None else {}
        super().__init__(kind="InvalidMatrix", message=message, job=job, details=details)
        self.axis = axis


class UnknownDependency(WorkflowValidationError):
    def __init__(self, job: str, missing: str, known: list[str]):
        super().__init__(
            kind="UnknownDependency",
            message=f"Job '{job}' needs missing job '{missing}'",
            job=job,
            details={"known": sorted(known)},
        )
        self.missing = missing


class CyclicDependency(WorkflowValidationError):
    def __init__(self, members: list[str]):
        super().__init__(
            kind="CyclicDependency",
            message=f"Dependency cycle between jobs: {', '.join(members)}",
            details={"members": members},
        )
        self.members = members


# ----------------------------------------------------------------------
# Execution errors
# ----------------------------------------------------------------------

class StepTransportError(Exception):
    """The step runner could not deliver or observe the step (retryable)."""


@dataclass
class StepExecutionFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class CancellationTimeout(Exception):
    job: str
    grace_period: float

    def __str__(self) -> str:
        return f"[{self.job}] did not acknowledge cancellation within {self.grace_period:.1f}s"


class ExpressionError(ValueError):
    """Raised for malformed or unevaluable `if` expressions."""
