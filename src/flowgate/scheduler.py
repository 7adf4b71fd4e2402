# scheduler.py
from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from .cancel import CancelToken
from .concurrency import ConcurrencyManager, resolve_policy
from .errors import CancellationTimeout, StepExecutionFailure, StepTransportError
from .expressions import ExpressionScope, compile_expression
from .model import InstanceOutcome, JobInstance, RunResult, Step, WorkflowRun
from .settings import Settings
from .sinks import JOB_FINISHED, JOB_STARTED, Event, Reporter
from .steps import StepResult, StepRunner

log = logging.getLogger(__name__)


@dataclass
class _Active:
    instance: JobInstance
    token: CancelToken
    deadline: float
    cancel_deadline: float | None = None
    timed_out: bool = False


class Scheduler:
    """
    Drives every JobInstance of a run from pending to a terminal state.

    The control loop is single-threaded: it owns run.outcomes, hands instances
    to a bounded thread pool and waits for completion notifications. Workers
    only return (result, reason) tuples.
    """

    def __init__(
        self,
        runner: StepRunner,
        settings: Settings | None = None,
        *,
        reporter: Reporter | None = None,
        concurrency: ConcurrencyManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        tick: float = 0.05,
    ):
        self.runner = runner
        self.settings = settings or Settings()
        self.reporter = reporter or Reporter()
        self.concurrency = concurrency or ConcurrencyManager()
        self.clock = clock
        self.tick = tick

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def run(self, run: WorkflowRun) -> Dict[str, InstanceOutcome]:
        workers = max(1, int(self.settings.workers))
        pending: Dict[str, JobInstance] = {
            i.id: i for i in sorted(run.instances, key=lambda i: i.order)
        }
        in_flight: Dict[Future, _Active] = {}
        # force-cancelled workers still occupy a pool thread until they return
        abandoned: Set[Future] = set()

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"flowgate-{run.id}")
        try:
            while pending or in_flight:
                if run.token.cancelled:
                    self._cancel_all(run, pending, in_flight)

                abandoned = {f for f in abandoned if not f.done()}
                self._schedule(run, pending, in_flight, pool, workers - len(abandoned))

                if not in_flight:
                    if pending and abandoned:
                        wait(list(abandoned), timeout=self.tick, return_when=FIRST_COMPLETED)
                        continue
                    if pending:
                        # unreachable for a validated DAG
                        raise RuntimeError(f"Run {run.id} stalled with pending jobs: {sorted(pending)}")
                    break

                done, _ = wait(
                    [*in_flight, *abandoned], timeout=self._next_timeout(in_flight), return_when=FIRST_COMPLETED
                )
                for fut in done:
                    active = in_flight.pop(fut, None)
                    if active is None:
                        continue
                    result, reason = self._collect(fut, active)
                    self._finish(run, active.instance, result, reason)
                    if result is RunResult.FAILURE:
                        self._fail_fast(run, active.instance, pending, in_flight)

                abandoned.update(self._enforce_deadlines(run, in_flight))
        finally:
            # force-cancelled workers are abandoned, not joined
            pool.shutdown(wait=False, cancel_futures=True)

        return run.outcomes

    def _schedule(
        self,
        run: WorkflowRun,
        pending: Dict[str, JobInstance],
        in_flight: Dict[Future, _Active],
        pool: ThreadPoolExecutor,
        capacity: int,
    ) -> None:
        # skips unlock dependents immediately, so loop until nothing changes
        progressed = True
        while progressed:
            progressed = False
            for iid, inst in list(pending.items()):
                preds = run.preds.get(iid, [])
                if not all(run.outcomes[p].result.terminal for p in preds):
                    continue

                go, reason = self._gate(run, inst)
                if not go:
                    del pending[iid]
                    self._finish(run, inst, RunResult.SKIPPED, reason)
                    progressed = True
                    continue

                if len(in_flight) >= capacity:
                    continue

                del pending[iid]
                fut, active = self._dispatch(run, inst, pool)
                in_flight[fut] = active
                progressed = True

    def _dispatch(
        self, run: WorkflowRun, inst: JobInstance, pool: ThreadPoolExecutor
    ) -> Tuple[Future, _Active]:
        now = self.clock()
        token = run.token.child()
        outcome = run.outcomes[inst.id]
        outcome.result = RunResult.RUNNING
        outcome.started_at = time.time()
        self.reporter.emit(
            Event(JOB_STARTED, run.id, job=inst.id, data={"display": inst.display})
        )
        active = _Active(
            instance=inst,
            token=token,
            deadline=now + float(inst.template.timeout_minutes) * 60.0,
        )
        return pool.submit(self._execute, run, inst, token), active

    def _next_timeout(self, in_flight: Dict[Future, _Active]) -> float:
        now = self.clock()
        nearest = self.tick
        for active in in_flight.values():
            limit = active.cancel_deadline if active.cancel_deadline is not None else active.deadline
            nearest = min(nearest, max(0.0, limit - now))
        return nearest

    def _collect(self, fut: Future, active: _Active) -> Tuple[RunResult, str]:
        try:
            result, reason = fut.result()
        except Exception as e:
            log.exception("job %s crashed", active.instance.id)
            return RunResult.FAILURE, f"{type(e).__name__}: {e}"

        if active.token.cancelled and result is not RunResult.SUCCESS:
            if active.timed_out:
                return RunResult.CANCELLED, f"timed out after {active.instance.template.timeout_minutes} minutes"
            return RunResult.CANCELLED, active.token.reason or reason
        return result, reason

    def _enforce_deadlines(self, run: WorkflowRun, in_flight: Dict[Future, _Active]) -> List[Future]:
        """Time out overdue instances; returns the futures forced to cancelled."""
        now = self.clock()
        grace = float(self.settings.grace_period)
        forced: List[Future] = []
        for fut, active in list(in_flight.items()):
            if active.cancel_deadline is None:
                if now >= active.deadline:
                    log.warning("job %s exceeded its %s minute timeout", active.instance.id,
                                active.instance.template.timeout_minutes)
                    active.timed_out = True
                    active.token.cancel("timeout")
                    active.cancel_deadline = now + grace
            elif now >= active.cancel_deadline:
                err = CancellationTimeout(job=active.instance.id, grace_period=grace)
                log.warning("%s; forcing cancelled", err)
                in_flight.pop(fut)
                if not fut.cancel():
                    forced.append(fut)
                self._finish(run, active.instance, RunResult.CANCELLED, str(err))
        return forced

    def _cancel_all(
        self,
        run: WorkflowRun,
        pending: Dict[str, JobInstance],
        in_flight: Dict[Future, _Active],
    ) -> None:
        reason = run.token.reason or "cancelled"
        for iid, inst in list(pending.items()):
            del pending[iid]
            self._finish(run, inst, RunResult.CANCELLED, reason)
        self._request_cancel(in_flight.values(), reason)

    def _request_cancel(self, actives, reason: str) -> None:
        deadline = self.clock() + float(self.settings.grace_period)
        for active in actives:
            if active.cancel_deadline is None:
                active.token.cancel(reason)
                active.cancel_deadline = deadline

    def _fail_fast(
        self,
        run: WorkflowRun,
        failed: JobInstance,
        pending: Dict[str, JobInstance],
        in_flight: Dict[Future, _Active],
    ) -> None:
        template = failed.template
        if not _flag(template.fail_fast, run, failed) or _flag(template.continue_on_error, run, failed):
            return
        reason = f"fail-fast: {failed.id} failed"
        for iid, inst in list(pending.items()):
            if inst.name == failed.name:
                del pending[iid]
                self._finish(run, inst, RunResult.CANCELLED, reason)
        self._request_cancel(
            [a for a in in_flight.values() if a.instance.name == failed.name], reason
        )

    def _finish(self, run: WorkflowRun, inst: JobInstance, result: RunResult, reason: str) -> None:
        outcome = run.outcomes[inst.id]
        outcome.result = result
        outcome.reason = reason
        outcome.finished_at = time.time()
        self.reporter.emit(
            Event(
                JOB_FINISHED,
                run.id,
                job=inst.id,
                data={
                    "display": inst.display,
                    "result": result.value,
                    "reason": reason,
                    "duration": outcome.duration,
                },
            )
        )

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def _gate(self, run: WorkflowRun, inst: JobInstance) -> Tuple[bool, str]:
        """
        Decide whether a ready instance runs.

        Predecessors are judged by their effective result: a continue-on-error
        failure counts as success. Without a status function in `if`, a failed or
        cancelled predecessor blocks the instance; with needs_policy="success"
        anything but success blocks. A status function (always(), failure(), ...)
        hands the decision to the expression alone.
        """
        template = inst.template
        preds = [run.outcomes[p] for p in run.preds.get(inst.id, [])]
        effective = [(o, _effective(o, run)) for o in preds]

        if template.needs_policy == "success":
            blocking = [o for o, r in effective if r is not RunResult.SUCCESS]
        else:
            blocking = [o for o, r in effective if r in (RunResult.FAILURE, RunResult.CANCELLED)]

        scope = ExpressionScope(
            context=run.context,
            matrix=inst.values,
            needs=_needs_results(preds, run),
            ok=not blocking,
            failed=any(r is RunResult.FAILURE for _o, r in effective),
            run_cancelled=run.token.cancelled,
        )

        if template.if_:
            expr = compile_expression(template.if_)
            if expr.uses_status_functions:
                if expr.evaluate(scope):
                    return True, ""
                return False, f"if: {template.if_}"
            if blocking:
                return False, _blocked_reason(blocking)
            if not expr.evaluate(scope):
                return False, f"if: {template.if_}"
            return True, ""

        if blocking:
            return False, _blocked_reason(blocking)
        return True, ""

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _execute(self, run: WorkflowRun, inst: JobInstance, token: CancelToken) -> Tuple[RunResult, str]:
        template = inst.template
        holder = f"{run.id}/{inst.id}"
        key: Optional[str] = None

        if template.concurrency is not None:
            key, cancel = resolve_policy(template.concurrency, run.context, inst.values, job=inst.id)
            acquired = self.concurrency.acquire(
                key,
                holder,
                cancel_in_progress=cancel,
                on_superseded=lambda by: token.cancel(f"superseded by {by}"),
            )
            if not acquired.granted and not self.concurrency.wait(key, holder, token):
                return RunResult.CANCELLED, token.reason or f"superseded in concurrency group {key}"

        try:
            env = {**dict(run.spec.env), **dict(template.env), **_matrix_env(inst)}
            preds = [run.outcomes[p] for p in run.preds.get(inst.id, [])]
            scope = ExpressionScope(context=run.context, matrix=inst.values, needs=_needs_results(preds, run))
            for step in template.steps:
                if token.cancelled:
                    return RunResult.CANCELLED, token.reason or "cancelled"
                if step.if_ and not compile_expression(step.if_).evaluate(scope):
                    log.debug("[%s] step '%s' skipped (if: %s)", inst.id, step.name, step.if_)
                    continue

                resolved = replace(step, env=tuple({**env, **dict(step.env)}.items()))
                try:
                    result = self._run_step(inst, resolved, token)
                except StepTransportError as e:
                    return RunResult.FAILURE, f"[{inst.id}] step '{step.name}' transport error: {e}"

                if result.cancelled or token.cancelled:
                    return RunResult.CANCELLED, token.reason or "cancelled"
                if not result.ok:
                    failure = StepExecutionFailure(
                        job=inst.id, step=step.name, cmd=step.run, exit_code=result.exit_status
                    )
                    return RunResult.FAILURE, str(failure)
            return RunResult.SUCCESS, ""
        finally:
            if key is not None:
                self.concurrency.release(key, holder)

    def _run_step(self, inst: JobInstance, step: Step, token: CancelToken) -> StepResult:
        """Run one step, retrying transport errors with exponential backoff."""
        attempt = 0
        while True:
            try:
                return self.runner.run(step, token)
            except StepTransportError as e:
                if attempt >= self.settings.step_retries:
                    raise
                delay = self.settings.retry_backoff * (2 ** attempt)
                attempt += 1
                log.warning("[%s] step '%s' transport error (%s); retry %d in %.2fs",
                            inst.id, step.name, e, attempt, delay)
                if token.wait(delay):
                    return StepResult(exit_status=-1, duration=0.0, cancelled=True)


def _flag(value: bool | str, run: WorkflowRun, inst: JobInstance) -> bool:
    """Resolve a bool-or-expression job flag for one instance."""
    if isinstance(value, str):
        scope = ExpressionScope(context=run.context, matrix=inst.values)
        return compile_expression(value).evaluate(scope)
    return bool(value)


def _effective(o: InstanceOutcome, run: WorkflowRun) -> RunResult:
    """The result dependents see; a continue-on-error failure reads as success."""
    if o.result is RunResult.FAILURE and _flag(o.instance.template.continue_on_error, run, o.instance):
        return RunResult.SUCCESS
    return o.result


def _blocked_reason(blocking: List[InstanceOutcome]) -> str:
    return "needs not satisfied: " + ", ".join(f"{o.instance.id}={o.result.value}" for o in blocking)


def _needs_results(preds: List[InstanceOutcome], run: WorkflowRun) -> Dict[str, str]:
    """Collapse predecessor instances into one effective result per job."""
    by_job: Dict[str, List[RunResult]] = {}
    for o in preds:
        by_job.setdefault(o.instance.name, []).append(_effective(o, run))

    out: Dict[str, str] = {}
    for job, results in by_job.items():
        if RunResult.FAILURE in results:
            out[job] = RunResult.FAILURE.value
        elif RunResult.CANCELLED in results:
            out[job] = RunResult.CANCELLED.value
        elif all(r is RunResult.SKIPPED for r in results):
            out[job] = RunResult.SKIPPED.value
        else:
            out[job] = RunResult.SUCCESS.value
    return out


def _matrix_env(inst: JobInstance) -> Dict[str, str]:
    return {f"MATRIX_{k.upper().replace('-', '_')}": str(v) for k, v in inst.point}
