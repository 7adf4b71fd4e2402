# schema.py
"""Pydantic documents for declarative (YAML/JSON) workflows and the HTTP API."""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .model import EventKind


def _scalar_str(v: Any) -> Any:
    # YAML reads `CI: true` and `RUST_BACKTRACE: 1` as bool / int
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return v


ScalarStr = Annotated[str, BeforeValidator(_scalar_str)]


class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ConcurrencyDoc(_Doc):
    group: str
    cancel_in_progress: Union[bool, str] = False


class StepDoc(_Doc):
    name: str
    run: str
    cwd: Optional[str] = None
    env: Dict[str, ScalarStr] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")


class JobDoc(_Doc):
    name: Optional[str] = None
    title: Optional[str] = None
    steps: List[StepDoc]
    needs: List[str] = Field(default_factory=list)
    matrix: Optional[Dict[str, Any]] = None
    concurrency: Optional[ConcurrencyDoc] = None
    continue_on_error: Union[bool, str] = False
    if_: Optional[str] = Field(default=None, alias="if")
    needs_policy: str = "terminal"
    matrix_scoped_needs: bool = False
    fail_fast: Union[bool, str] = True
    timeout_minutes: float = 20
    env: Dict[str, ScalarStr] = Field(default_factory=dict)


class WorkflowDoc(_Doc):
    name: str = "workflow"
    on: List[str] = Field(default_factory=list)
    concurrency: Optional[ConcurrencyDoc] = None
    required: Optional[List[str]] = None
    env: Dict[str, ScalarStr] = Field(default_factory=dict)
    jobs: Union[Dict[str, JobDoc], List[JobDoc]]


class ContextDoc(_Doc):
    event: EventKind = EventKind.MANUAL
    ref: str = "HEAD"
    actor: str = "unknown"
    number: ScalarStr = ""


# -------------------- API --------------------

class CreateRunRequest(_Doc):
    workflow: Dict[str, Any]
    context: ContextDoc = Field(default_factory=ContextDoc)


class CreateRunResponse(BaseModel):
    run_id: str
    instances: List[str]


class JobResultResponse(BaseModel):
    job: str
    instance: str
    display: str
    result: str
    required: bool
    reason: str = ""
    duration: Optional[float] = None


class RunResponse(BaseModel):
    run_id: str
    workflow: str
    status: str
    group: Optional[str] = None
    verdict: Optional[str] = None
    jobs: List[JobResultResponse]


class ArchivedRunResponse(BaseModel):
    run_id: str
    workflow: str
    status: str
    verdict: str
    event: str
    ref: str
    failing: List[str]
