from __future__ import annotations

import os

from fastapi import FastAPI, HTTPException

from ..engine import Engine
from ..errors import WorkflowValidationError
from ..loader import workflow_from_dict
from ..model import RunContext, WorkflowRun
from ..settings import Settings
from ..sinks import ReportingSink
from ..steps import ShellStepRunner, StepRunner
from ..schema import (
    ArchivedRunResponse,
    CreateRunRequest,
    CreateRunResponse,
    JobResultResponse,
    RunResponse,
)
from .archive import ArchiveSink


def _run_response(run: WorkflowRun) -> RunResponse:
    verdict = run.verdict
    if verdict is not None:
        jobs = [JobResultResponse(**row) for row in verdict.to_dict()["jobs"]]
    else:
        required = set(run.spec.required_jobs)
        jobs = [
            JobResultResponse(
                job=o.instance.name,
                instance=o.instance.id,
                display=o.instance.display,
                result=o.result.value,
                required=o.instance.name in required,
                reason=o.reason,
                duration=o.duration,
            )
            for o in sorted(list(run.outcomes.values()), key=lambda o: o.instance.order)
        ]
    return RunResponse(
        run_id=run.id,
        workflow=run.spec.name,
        status=run.status.value,
        group=run.group,
        verdict=verdict.label if verdict is not None else None,
        jobs=jobs,
    )


def create_app(
    engine: Engine | None = None,
    archive: ArchiveSink | None = None,
    runner: StepRunner | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Build the control plane.

    uvicorn flowgate.cloud.main:create_app --factory
    """
    settings = settings or Settings()
    if archive is None:
        archive = ArchiveSink(settings.database_url)
    if engine is None:
        sinks: list[ReportingSink] = [archive]
        engine = Engine(
            runner or ShellStepRunner(os.environ.get("FLOWGATE_WORKDIR", ".")),
            settings,
            sinks=sinks,
        )

    app = FastAPI(title="flowgate control plane")
    app.state.engine = engine
    app.state.archive = archive

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest):
        ctx = req.context
        try:
            spec = workflow_from_dict(req.workflow)
            run_id = engine.submit(
                spec,
                RunContext(event=ctx.event, ref=ctx.ref, actor=ctx.actor, number=ctx.number),
            )
        except WorkflowValidationError as e:
            raise HTTPException(
                status_code=422,
                detail={"kind": e.kind, "message": e.message, "job": e.job, "details": e.details},
            )
        run = engine.get(run_id)
        return CreateRunResponse(run_id=run_id, instances=[i.id for i in run.instances])

    @app.get("/runs", response_model=list[RunResponse])
    def list_runs():
        return [_run_response(r) for r in engine.runs()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        try:
            run = engine.get(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(run)

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str):
        try:
            cancelled = engine.cancel(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Run not found")
        if not cancelled:
            raise HTTPException(status_code=409, detail="Run already finished")
        return {"ok": True}

    @app.get("/concurrency")
    def concurrency_groups():
        return engine.concurrency.snapshot()

    @app.get("/archive", response_model=list[ArchivedRunResponse])
    def archived_runs(limit: int = 50):
        return [
            ArchivedRunResponse(
                run_id=r.id,
                workflow=r.workflow,
                status=r.status,
                verdict=r.verdict,
                event=r.event,
                ref=r.ref,
                failing=list(r.failing),
            )
            for r in archive.list_runs(limit=limit)
        ]

    return app
