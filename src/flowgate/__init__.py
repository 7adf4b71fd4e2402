from .engine import Engine, prepare_run
from .model import JobTemplate, RunContext, EventKind, RunResult, Step, WorkflowSpec
from .aggregator import aggregate, Verdict
# Imported last: loading .engine binds the flowgate.matrix / flowgate.concurrency
# submodules as package attributes, which would shadow these helpers.
from .dsl import job, sh, matrix, wf, workflow, concurrency, JobBuilder, build

__all__ = [
    "job", "sh", "matrix", "wf", "workflow", "concurrency", "JobBuilder", "build",
    "Engine", "prepare_run",
    "JobTemplate", "RunContext", "EventKind", "RunResult", "Step", "WorkflowSpec",
    "aggregate", "Verdict",
]
