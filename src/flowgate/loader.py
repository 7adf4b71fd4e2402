# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .dsl import to_matrix_spec, wf
from .errors import InvalidWorkflow
from .model import ConcurrencyPolicy, JobTemplate, Step, WorkflowSpec
from .schema import ConcurrencyDoc, JobDoc, WorkflowDoc


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowSpec:
    """
    Load a workflow from a file.

    Python files must define either:
      - workflow() -> WorkflowSpec | List[JobTemplate]
      - WORKFLOW = WorkflowSpec(...)  or  JOBS = [JobTemplate, ...]

    .yaml / .yml / .json files are parsed as workflow documents.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yaml", ".yml", ".json"):
        with wf_path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        return workflow_from_dict(data, default_name=wf_path.stem)

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py, .yaml or .json file, got: {wf_path.name}")

    module_name = f"flowgate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            loaded = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from flowgate import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, list) and all(isinstance(j, JobTemplate) for j in loaded):
        loaded = wf(*loaded, name=wf_path.stem)

    if not isinstance(loaded, WorkflowSpec):
        raise TypeError(
            "Workflow must return/define a WorkflowSpec or List[JobTemplate]. "
            "Define workflow() -> wf(...), WORKFLOW = wf(...) or JOBS = [job(...), ...]."
        )
    return loaded


# ----------------------------------------------------------------------
# Documents <-> specs
# ----------------------------------------------------------------------

def _concurrency(doc: ConcurrencyDoc | None) -> ConcurrencyPolicy | None:
    if doc is None:
        return None
    return ConcurrencyPolicy(group=doc.group, cancel_in_progress=doc.cancel_in_progress)


def _job(doc: JobDoc) -> JobTemplate:
    return JobTemplate(
        name=doc.name or "",
        title=doc.title,
        steps=tuple(
            Step(name=s.name, run=s.run, cwd=s.cwd, env=tuple(s.env.items()), if_=s.if_)
            for s in doc.steps
        ),
        needs=tuple(doc.needs),
        matrix=to_matrix_spec(doc.matrix),
        concurrency=_concurrency(doc.concurrency),
        continue_on_error=doc.continue_on_error,
        if_=doc.if_,
        needs_policy=doc.needs_policy,
        matrix_scoped_needs=doc.matrix_scoped_needs,
        fail_fast=doc.fail_fast,
        timeout_minutes=doc.timeout_minutes,
        env=tuple(doc.env.items()),
    )


def workflow_from_dict(data: Any, default_name: str = "workflow") -> WorkflowSpec:
    """Parse a plain dict (YAML/JSON document or API payload) into a WorkflowSpec."""
    if not isinstance(data, dict):
        raise InvalidWorkflow(f"Workflow document must be a mapping, got {type(data).__name__}")

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data["on"] = data.pop(True)
    data.setdefault("name", default_name)

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise InvalidWorkflow(f"Invalid workflow document: {e.error_count()} error(s)", errors=_errors(e)) from e

    jobs: List[JobTemplate] = []
    if isinstance(doc.jobs, dict):
        for name, jdoc in doc.jobs.items():
            if jdoc.name is not None and jdoc.name != name:
                raise InvalidWorkflow(f"Job key '{name}' does not match its name '{jdoc.name}'", job=name)
            jdoc.name = name
            jobs.append(_job(jdoc))
    else:
        for i, jdoc in enumerate(doc.jobs):
            if not jdoc.name:
                raise InvalidWorkflow(f"Job #{i + 1} has no name")
            jobs.append(_job(jdoc))

    return WorkflowSpec(
        name=doc.name,
        jobs=tuple(jobs),
        triggers=tuple(doc.on),
        concurrency=_concurrency(doc.concurrency),
        required=tuple(doc.required) if doc.required is not None else None,
        env=tuple(doc.env.items()),
    )


def _errors(e: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


def _policy_dict(p: ConcurrencyPolicy | None) -> Dict[str, Any] | None:
    if p is None:
        return None
    return {"group": p.group, "cancel_in_progress": p.cancel_in_progress}


def workflow_to_dict(spec: WorkflowSpec) -> Dict[str, Any]:
    """
    Convert a WorkflowSpec into a document for API submission.
    This is the reverse of workflow_from_dict().
    """
    jobs: Dict[str, Any] = {}
    for j in spec.jobs:
        m = j.matrix
        matrix: Dict[str, Any] | None = None
        if not m.empty or m.exclude:
            matrix = {k: list(v) for k, v in m.axes}
            if m.include:
                matrix["include"] = [dict(e) for e in m.include]
            if m.exclude:
                matrix["exclude"] = [dict(e) for e in m.exclude]

        steps = []
        for s in j.steps:
            step_dict: Dict[str, Any] = {"name": s.name, "run": s.run}
            if s.cwd is not None:
                step_dict["cwd"] = s.cwd
            if s.env:
                step_dict["env"] = dict(s.env)
            if s.if_ is not None:
                step_dict["if"] = s.if_
            steps.append(step_dict)

        job_dict: Dict[str, Any] = {
            "steps": steps,
            "needs": list(j.needs),
            "continue_on_error": j.continue_on_error,
            "needs_policy": j.needs_policy,
            "matrix_scoped_needs": j.matrix_scoped_needs,
            "fail_fast": j.fail_fast,
            "timeout_minutes": j.timeout_minutes,
            "env": dict(j.env),
        }
        if j.title is not None:
            job_dict["title"] = j.title
        if matrix is not None:
            job_dict["matrix"] = matrix
        if j.if_ is not None:
            job_dict["if"] = j.if_
        if j.concurrency is not None:
            job_dict["concurrency"] = _policy_dict(j.concurrency)
        jobs[j.name] = job_dict

    out: Dict[str, Any] = {
        "name": spec.name,
        "on": list(spec.triggers),
        "env": dict(spec.env),
        "jobs": jobs,
    }
    if spec.concurrency is not None:
        out["concurrency"] = _policy_dict(spec.concurrency)
    if spec.required is not None:
        out["required"] = list(spec.required)
    return out
