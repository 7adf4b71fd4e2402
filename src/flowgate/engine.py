# engine.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .aggregator import Verdict, aggregate
from .concurrency import ConcurrencyManager, resolve_policy
from .dag import build_graph, instance_predecessors
from .errors import ExpressionError, InvalidWorkflow, NotTriggered
from .expressions import compile_expression
from .matrix import expand_workflow
from .model import RunContext, RunResult, RunStatus, WorkflowRun, WorkflowSpec, new_run_id
from .scheduler import Scheduler
from .settings import Settings
from .sinks import JOB_FINISHED, RUN_FINISHED, RUN_QUEUED, RUN_STARTED, Event, ReportingSink, Reporter
from .steps import ShellStepRunner, StepRunner

log = logging.getLogger(__name__)

NEEDS_POLICIES = ("terminal", "success")


def prepare_run(spec: WorkflowSpec, context: RunContext, run_id: str | None = None) -> WorkflowRun:
    """
    Validate a workflow and expand it into a runnable WorkflowRun.

    Parsing, validation and execution stay separate: this function has no side
    effects, and every error it raises is fatal to the run before any job starts.
    """
    if spec.triggers and context.event.value not in spec.triggers:
        raise NotTriggered(spec.name, context.event.value, list(spec.triggers))
    if not context.workflow:
        context = replace(context, workflow=spec.name)

    graph = build_graph(spec.jobs)
    known = set(graph.order)

    for template in spec.jobs:
        if template.needs_policy not in NEEDS_POLICIES:
            raise InvalidWorkflow(
                f"needs_policy must be one of {NEEDS_POLICIES}, got {template.needs_policy!r}",
                job=template.name,
            )
        if not template.steps:
            raise InvalidWorkflow(f"Job '{template.name}' has no steps", job=template.name)
        exprs = [("if", template.if_)] + [("if", s.if_) for s in template.steps]
        exprs += [
            (label, value)
            for label, value in (("continue_on_error", template.continue_on_error), ("fail_fast", template.fail_fast))
            if isinstance(value, str)
        ]
        for label, text in exprs:
            if text is None:
                continue
            try:
                compile_expression(text)
            except ExpressionError as e:
                raise InvalidWorkflow(f"Bad {label} expression {text!r}: {e}", job=template.name) from e

    unknown_required = [r for r in spec.required_jobs if r not in known]
    if unknown_required:
        raise InvalidWorkflow(f"Required checks name unknown jobs: {unknown_required}")

    instances = expand_workflow(spec.jobs)
    for inst in instances:
        if inst.template.concurrency is not None:
            resolve_policy(inst.template.concurrency, context, inst.values, job=inst.id)

    group = None
    if spec.concurrency is not None:
        group, _cancel = resolve_policy(spec.concurrency, context)

    return WorkflowRun(
        id=run_id or new_run_id(),
        spec=spec,
        context=context,
        instances=instances,
        preds=instance_predecessors(instances, graph),
        group=group,
    )


class Engine:
    """
    Trigger boundary: submit() validates, takes the concurrency group and
    drives the run on its own thread.
    """

    def __init__(
        self,
        runner: StepRunner | None = None,
        settings: Settings | None = None,
        sinks: Iterable[ReportingSink] = (),
        concurrency: ConcurrencyManager | None = None,
    ):
        self.settings = settings or Settings()
        self.reporter = Reporter(sinks)
        self.concurrency = concurrency or ConcurrencyManager()
        self.scheduler = Scheduler(
            runner or ShellStepRunner(),
            self.settings,
            reporter=self.reporter,
            concurrency=self.concurrency,
        )
        self._runs: Dict[str, WorkflowRun] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, spec: WorkflowSpec, context: RunContext) -> str:
        """Validate and start a run; returns its id. Validation errors propagate."""
        run = prepare_run(spec, context)
        with self._lock:
            self._runs[run.id] = run

        granted = True
        if run.group is not None:
            _key, cancel = resolve_policy(spec.concurrency, run.context)
            acquired = self.concurrency.acquire(
                run.group,
                run.id,
                cancel_in_progress=cancel,
                on_superseded=lambda by, r=run: r.token.cancel(f"superseded by run {by}"),
            )
            granted = acquired.granted
            if acquired.superseded:
                log.info("run %s supersedes run %s in group %r", run.id, acquired.superseded, run.group)

        thread = threading.Thread(
            target=self._drive,
            args=(run, granted),
            name=f"flowgate-run-{run.id}",
            daemon=True,
        )
        thread.start()
        return run.id

    def run(self, spec: WorkflowSpec, context: RunContext, timeout: float | None = None) -> WorkflowRun:
        """Submit and block until the run is finalized."""
        run_id = self.submit(spec, context)
        self.wait(run_id, timeout=timeout)
        return self.get(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> Optional[Verdict]:
        run = self.get(run_id)
        if not run.done.wait(timeout):
            return None
        return run.verdict

    def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        run = self.get(run_id)
        if run.done.is_set():
            return False
        run.token.cancel(reason)
        return True

    def get(self, run_id: str) -> WorkflowRun:
        with self._lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise KeyError(f"Unknown run: {run_id}") from None

    def runs(self) -> List[WorkflowRun]:
        with self._lock:
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    def forget(self, run_id: str) -> None:
        """Drop a finalized run from memory (after it has been archived)."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is not None and run.done.is_set():
                del self._runs[run_id]

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    def _drive(self, run: WorkflowRun, granted: bool) -> None:
        try:
            if not granted:
                self.reporter.emit(Event(RUN_QUEUED, run.id, data={"group": run.group}))
                if not self.concurrency.wait(run.group, run.id, run.token):
                    run.token.cancel(run.token.reason or "superseded while queued")

            if run.token.cancelled:
                # dropped from the queue before any job started
                self._cancel_outcomes(run, run.token.reason or "cancelled")
                return

            run.status = RunStatus.RUNNING
            self.reporter.emit(
                Event(
                    RUN_STARTED,
                    run.id,
                    data={
                        "workflow": run.spec.name,
                        "instances": len(run.instances),
                        "event": run.context.event.value,
                        "ref": run.context.ref,
                    },
                )
            )
            self.scheduler.run(run)
        except Exception:
            log.exception("run %s crashed", run.id)
            run.token.cancel("engine error")
            self._cancel_outcomes(run, "engine error")
        finally:
            try:
                self._finalize(run)
            finally:
                if run.group is not None:
                    self.concurrency.release(run.group, run.id)
                self._prune(run)
                run.done.set()

    def _cancel_outcomes(self, run: WorkflowRun, reason: str) -> None:
        for outcome in sorted(run.outcomes.values(), key=lambda o: o.instance.order):
            if outcome.result.terminal:
                continue
            outcome.result = RunResult.CANCELLED
            outcome.reason = reason
            outcome.finished_at = time.time()
            self.reporter.emit(
                Event(
                    JOB_FINISHED,
                    run.id,
                    job=outcome.instance.id,
                    data={
                        "display": outcome.instance.display,
                        "result": outcome.result.value,
                        "reason": reason,
                        "duration": outcome.duration,
                    },
                )
            )

    def _prune(self, current: WorkflowRun) -> None:
        """Keep at most `run_history` finished runs in memory, oldest dropped first."""
        keep = int(self.settings.run_history)
        if keep <= 0:
            return
        with self._lock:
            finished = sorted(
                (r for r in self._runs.values() if r is current or r.done.is_set()),
                key=lambda r: r.created_at,
            )
            excess = len(finished) - keep
            for old in finished:
                if excess <= 0:
                    break
                if old is not current:
                    del self._runs[old.id]
                    excess -= 1

    def _finalize(self, run: WorkflowRun) -> None:
        run.verdict = aggregate(run.outcomes.values(), run.spec.required_jobs)
        run.status = RunStatus.CANCELLED if run.token.cancelled else RunStatus.COMPLETED
        data = run.verdict.to_dict()
        data.update(
            {
                "workflow": run.spec.name,
                "status": run.status.value,
                "event": run.context.event.value,
                "ref": run.context.ref,
                "actor": run.context.actor,
            }
        )
        self.reporter.emit(Event(RUN_FINISHED, run.id, data=data))
