# src/flowgate/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .model import ConcurrencyPolicy, JobTemplate, MatrixSpec, Step, WorkflowSpec


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env=tuple((k, str(v)) for k, v in (env or {}).items()),
        if_=if_,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Chainable matrix definition.

    Example:
        matrix("os", ["linux", "macos"]).axis("py", ["3.11", "3.12"]) \
            .exclude(os="macos", py="3.11") \
            .include(os="linux", py="3.12", coverage="true")
    """
    def __init__(self, key: str | None = None, values: Iterable[Any] = ()):
        self._axes: Dict[str, List[Any]] = {}
        self._include: List[Dict[str, Any]] = []
        self._exclude: List[Dict[str, Any]] = []
        if key is not None:
            self.axis(key, values)

    def axis(self, key: str, values: Iterable[Any]) -> "Matrix":
        self._axes[key] = list(values)
        return self

    def include(self, **entry: Any) -> "Matrix":
        self._include.append(entry)
        return self

    def exclude(self, **entry: Any) -> "Matrix":
        self._exclude.append(entry)
        return self

    def spec(self) -> MatrixSpec:
        return MatrixSpec.of(self._axes, self._include, self._exclude)


def matrix(key: str | None = None, values: Iterable[Any] = ()) -> Matrix:
    return Matrix(key, values)


MatrixLike = Union[Matrix, MatrixSpec, Mapping[str, Any], None]


def to_matrix_spec(m: MatrixLike) -> MatrixSpec:
    """Accept a Matrix, a MatrixSpec, or a plain {axis: values, include:, exclude:} mapping."""
    if m is None:
        return MatrixSpec()
    if isinstance(m, MatrixSpec):
        return m
    if isinstance(m, Matrix):
        return m.spec()
    axes = {k: list(v) for k, v in m.items() if k not in ("include", "exclude")}
    return MatrixSpec.of(axes, list(m.get("include") or []), list(m.get("exclude") or []))


def concurrency(group: str, cancel_in_progress: bool | str = False) -> ConcurrencyPolicy:
    return ConcurrencyPolicy(group=group, cancel_in_progress=cancel_in_progress)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: MatrixLike = None,
    concurrency: Optional[ConcurrencyPolicy] = None,
    continue_on_error: bool | str = False,
    if_: str | None = None,
    needs_policy: str = "terminal",
    matrix_scoped_needs: bool = False,
    fail_fast: bool | str = True,
    timeout_minutes: float = 20,
    env: Optional[Dict[str, str]] = None,
    title: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        matrix=to_matrix_spec(matrix),
        concurrency=concurrency,
        continue_on_error=continue_on_error,
        if_=if_,
        needs_policy=needs_policy,
        matrix_scoped_needs=matrix_scoped_needs,
        fail_fast=fail_fast,
        timeout_minutes=timeout_minutes,
        env=tuple((k, str(v)) for k, v in (env or {}).items()),
        title=title,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix = Matrix()
        self._if: str | None = None
        self._continue_on_error = False
        self._needs_policy = "terminal"
        self._timeout_minutes: float = 20
        self._concurrency: Optional[ConcurrencyPolicy] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, if_: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, if_=if_))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, axis: str, *values: Any):
        self._matrix.axis(axis, values)
        return self

    def when(self, expression: str):
        self._if = expression
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def require_success(self, enabled: bool = True):
        self._needs_policy = "success" if enabled else "terminal"
        return self

    def timeout(self, minutes: float):
        self._timeout_minutes = minutes
        return self

    def concurrency_group(self, group: str, cancel_in_progress: bool | str = False):
        self._concurrency = ConcurrencyPolicy(group, cancel_in_progress)
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            matrix=self._matrix,
            concurrency=self._concurrency,
            continue_on_error=self._continue_on_error,
            if_=self._if,
            needs_policy=self._needs_policy,
            timeout_minutes=self._timeout_minutes,
            env=self._env,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: JobTemplate,
    name: str = "workflow",
    on: Optional[List[str]] = None,
    concurrency: Optional[ConcurrencyPolicy] = None,
    required: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
) -> WorkflowSpec:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from flowgate import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                on=["pull_request", "merge_group"],
                required=["test"],
            )

    Or use WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...))
    """
    return WorkflowSpec(
        name=name,
        jobs=tuple(jobs),
        triggers=tuple(on or ()),
        concurrency=concurrency,
        required=tuple(required) if required is not None else None,
        env=tuple((k, str(v)) for k, v in (env or {}).items()),
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
