# model.py
from __future__ import annotations

import enum
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .cancel import CancelToken


# ----------------------------------------------------------------------
# Declarations (immutable once loaded)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Tuple[Tuple[str, str], ...] = ()
    if_: str | None = None


@dataclass(frozen=True)
class MatrixSpec:
    """
    Axis definitions plus include/exclude overrides.

    axes: ordered (axis-name, values) pairs; declaration order drives expansion.
    """
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    include: Tuple[Tuple[Tuple[str, Any], ...], ...] = ()
    exclude: Tuple[Tuple[Tuple[str, Any], ...], ...] = ()

    @classmethod
    def of(
        cls,
        axes: Mapping[str, List[Any]] | None = None,
        include: List[Mapping[str, Any]] | None = None,
        exclude: List[Mapping[str, Any]] | None = None,
    ) -> "MatrixSpec":
        return cls(
            axes=tuple((k, tuple(v)) for k, v in (axes or {}).items()),
            include=tuple(tuple(d.items()) for d in (include or [])),
            exclude=tuple(tuple(d.items()) for d in (exclude or [])),
        )

    @property
    def empty(self) -> bool:
        return not self.axes and not self.include


@dataclass(frozen=True)
class ConcurrencyPolicy:
    """
    group: key template formatted with the run context,
           e.g. "{workflow}-{number}".
    cancel_in_progress: bool, or an expression evaluated against the context.
    """
    group: str
    cancel_in_progress: bool | str = False


@dataclass(frozen=True)
class JobTemplate:
    """
    A CI job declaration: steps + dependencies + matrix + gating.

    needs_policy:
      - "terminal": predecessors only need to be finished (skipped counts)
      - "success":  every predecessor must be `success`

    continue_on_error and fail_fast take a bool or an expression evaluated per
    instance, e.g. "matrix.checks == 'advisories'".
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    matrix: MatrixSpec = field(default_factory=MatrixSpec)
    concurrency: Optional[ConcurrencyPolicy] = None
    continue_on_error: bool | str = False
    if_: str | None = None
    needs_policy: str = "terminal"
    matrix_scoped_needs: bool = False
    fail_fast: bool | str = True
    timeout_minutes: float = 20
    env: Tuple[Tuple[str, str], ...] = ()
    title: str | None = None


@dataclass(frozen=True)
class WorkflowSpec:
    name: str
    jobs: Tuple[JobTemplate, ...]
    triggers: Tuple[str, ...] = ()
    concurrency: Optional[ConcurrencyPolicy] = None
    required: Optional[Tuple[str, ...]] = None
    env: Tuple[Tuple[str, str], ...] = ()

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def required_jobs(self) -> Tuple[str, ...]:
        """Required checks; every job when none were declared."""
        if self.required is None:
            return tuple(j.name for j in self.jobs)
        return self.required


# ----------------------------------------------------------------------
# Run context
# ----------------------------------------------------------------------

class EventKind(str, enum.Enum):
    PULL_REQUEST = "pull_request"
    MERGE_GROUP = "merge_group"
    PUSH = "push"
    RELEASE = "release"
    MANUAL = "manual"


@dataclass(frozen=True)
class RunContext:
    event: EventKind = EventKind.MANUAL
    ref: str = "HEAD"
    actor: str = "unknown"
    workflow: str = ""
    number: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {
            "event": self.event.value,
            "ref": self.ref,
            "actor": self.actor,
            "workflow": self.workflow,
            "number": self.number,
        }


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

class RunResult(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (RunResult.PENDING, RunResult.RUNNING)


MatrixPoint = Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class JobInstance:
    """One concrete matrix point of a JobTemplate. Identity = (job, point)."""
    template: JobTemplate
    point: MatrixPoint
    order: int

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def key(self) -> Tuple[str, MatrixPoint]:
        return (self.template.name, self.point)

    @property
    def id(self) -> str:
        if not self.point:
            return self.template.name
        return f"{self.template.name}[{','.join(f'{k}={v}' for k, v in self.point)}]"

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self.point)

    @property
    def display(self) -> str:
        base = self.template.title or self.template.name
        if not self.point:
            return base
        return f"{base} ({', '.join(str(v) for _k, v in self.point)})"


@dataclass
class InstanceOutcome:
    instance: JobInstance
    result: RunResult = RunResult.PENDING
    reason: str = ""
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class RunStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class WorkflowRun:
    """
    One triggered execution. Owns its instances, their DAG and results.

    outcomes is written only by the scheduler thread driving the run.
    """
    id: str
    spec: WorkflowSpec
    context: RunContext
    instances: List[JobInstance]
    preds: Dict[str, List[str]]
    token: CancelToken = field(default_factory=CancelToken)
    status: RunStatus = RunStatus.QUEUED
    group: str | None = None
    outcomes: Dict[str, InstanceOutcome] = field(default_factory=dict)
    verdict: Any = None
    created_at: float = field(default_factory=time.time)
    done: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        if not self.outcomes:
            self.outcomes = {i.id: InstanceOutcome(instance=i) for i in self.instances}

    def results(self) -> Dict[str, RunResult]:
        return {k: o.result for k, o in list(self.outcomes.items())}
