import threading
from dataclasses import replace

import pytest
from conftest import FakeRunner, blocks_until

from flowgate.dsl import concurrency, job, sh, wf
from flowgate.engine import Engine, prepare_run
from flowgate.errors import CyclicDependency, InvalidWorkflow, NotTriggered
from flowgate.model import EventKind, RunContext, RunResult, RunStatus
from flowgate.sinks import JOB_FINISHED, RUN_FINISHED, RUN_QUEUED, RUN_STARTED, MemorySink


def started_event(behavior, started):
    def wrapped(step, token):
        started.set()
        return behavior(step, token)
    return wrapped


@pytest.fixture
def engine_for(settings, sink):
    def _engine(runner):
        return Engine(runner, settings, sinks=[sink])
    return _engine


PR = RunContext(event=EventKind.PULL_REQUEST, ref="refs/pull/42/merge", actor="octocat", number="42")


def ci(**kw):
    return wf(
        job("checks", sh("fmt", "cargo fmt --check")),
        job("test", sh("test", "cargo test"), needs=["checks"]),
        name="CI",
        on=["pull_request", "merge_group"],
        **kw,
    )


def test_run_passes_and_reports_lifecycle(engine_for, sink):
    engine = engine_for(FakeRunner())
    run = engine.run(ci(), PR, timeout=5)

    assert run.status is RunStatus.COMPLETED
    assert run.verdict.passed
    assert run.context.workflow == "CI"
    assert sink.kinds(run.id)[0] == RUN_STARTED
    assert sink.kinds(run.id)[-1] == RUN_FINISHED

    finished = sink.events[-1]
    assert finished.data["verdict"] == "pass"
    assert finished.data["workflow"] == "CI"
    assert finished.data["event"] == "pull_request"
    assert [j["job"] for j in finished.data["jobs"]] == ["checks", "test"]


def test_failing_required_check_fails_the_run(engine_for):
    engine = engine_for(FakeRunner({"cargo test": 101}))
    run = engine.run(ci(), PR, timeout=5)

    assert not run.verdict.passed
    assert run.verdict.failing == ("test",)


def test_non_required_failure_does_not_gate(engine_for):
    engine = engine_for(FakeRunner({"cargo fmt --check": 1}))
    spec = wf(
        job("checks", sh("fmt", "cargo fmt --check")),
        job("test", sh("test", "cargo test")),
        required=["test"],
    )
    run = engine.run(spec, RunContext(), timeout=5)

    assert run.results()["checks"] is RunResult.FAILURE
    assert run.verdict.passed


def test_validation_errors_have_no_side_effects(engine_for):
    runner = FakeRunner()
    engine = engine_for(runner)
    spec = wf(
        job("a", sh("a", "a"), needs=["b"]),
        job("b", sh("b", "b"), needs=["a"]),
        concurrency=concurrency("{workflow}-{number}", cancel_in_progress=True),
    )

    with pytest.raises(CyclicDependency) as exc:
        engine.submit(spec, PR)

    assert exc.value.members == ["a", "b"]
    assert engine.runs() == []
    assert runner.calls == []
    assert engine.concurrency.snapshot() == {}


def test_untriggered_event_is_rejected(engine_for):
    engine = engine_for(FakeRunner())
    with pytest.raises(NotTriggered):
        engine.submit(ci(), RunContext(event=EventKind.PUSH))
    assert engine.runs() == []


@pytest.mark.parametrize(
    "spec, message",
    [
        (wf(job("a", sh("a", "a"), if_="event ==")), "Bad if expression"),
        (wf(job("a", sh("a", "a"), needs_policy="sometimes")), "needs_policy"),
        (wf(job("a", sh("a", "a")), required=["ghost"]), "unknown jobs"),
        (wf(job("a", sh("a", "a")), concurrency=concurrency("{branch}")), "concurrency group"),
    ],
)
def test_invalid_workflows(spec, message):
    with pytest.raises(InvalidWorkflow) as exc:
        prepare_run(spec, RunContext())
    assert message in exc.value.message


def test_lowercase_function_names_validate(engine_for):
    runner = FakeRunner()
    engine = engine_for(runner)
    spec = wf(
        job(
            "test",
            sh("windows only", "windows.bat", if_="startswith(matrix.os, 'windows-x86_64')"),
            sh("everywhere", "test.sh"),
            matrix={"os": ["linux-x86_64", "windows-x86_64"]},
        ),
    )
    run = engine.run(spec, RunContext(), timeout=5)

    assert run.verdict.passed
    assert runner.calls.count("windows.bat") == 1
    assert runner.calls.count("test.sh") == 2


def test_new_run_supersedes_in_progress_run(engine_for):
    started = threading.Event()
    release = threading.Event()
    runner = FakeRunner({"cargo test": started_event(blocks_until(release), started)})
    engine = engine_for(runner)
    spec = ci(concurrency=concurrency("{workflow}-{number}", cancel_in_progress="event == 'pull_request'"))

    first = engine.submit(spec, PR)
    assert started.wait(5)
    second = engine.submit(spec, PR)

    engine.wait(first, timeout=5)
    release.set()
    engine.wait(second, timeout=5)
    old, new = engine.get(first), engine.get(second)

    assert old.status is RunStatus.CANCELLED
    assert not old.verdict.passed
    assert old.outcomes["test"].result is RunResult.CANCELLED
    assert old.outcomes["test"].reason == f"superseded by run {second}"
    assert new.verdict.passed
    assert engine.concurrency.snapshot() == {}


def test_runs_in_other_groups_are_untouched(engine_for):
    release = threading.Event()
    engine = engine_for(FakeRunner({"cargo test": blocks_until(release)}))
    spec = ci(concurrency=concurrency("{workflow}-{number}", cancel_in_progress=True))

    first = engine.submit(spec, PR)
    other = RunContext(event=EventKind.PULL_REQUEST, number="43")
    second = engine.submit(spec, other)
    release.set()

    assert engine.wait(first, timeout=5).passed
    assert engine.wait(second, timeout=5).passed


def test_merge_queue_runs_queue_instead_of_cancelling(engine_for, sink):
    started = threading.Event()
    release = threading.Event()
    engine = engine_for(FakeRunner({"cargo test": started_event(blocks_until(release), started)}))
    spec = ci(concurrency=concurrency("{workflow}-{number}", cancel_in_progress="event == 'pull_request'"))
    merge = RunContext(event=EventKind.MERGE_GROUP, number="gh-readonly-queue/main")

    first = engine.submit(spec, merge)
    assert started.wait(5)
    second = engine.submit(spec, merge)
    release.set()

    assert engine.wait(first, timeout=5).passed
    assert engine.wait(second, timeout=5).passed
    assert RUN_QUEUED in sink.kinds(second)

    kinds = [(e.run_id, e.kind) for e in sink.events]
    assert kinds.index((first, RUN_FINISHED)) < kinds.index((second, RUN_STARTED))


def test_newer_queued_run_supersedes_older_queued_run(engine_for, sink):
    started = threading.Event()
    release = threading.Event()
    engine = engine_for(FakeRunner({"cargo test": started_event(blocks_until(release), started)}))
    spec = ci(concurrency=concurrency("deploy"))

    first = engine.submit(spec, PR)
    assert started.wait(5)
    queued = engine.submit(spec, PR)
    latest = engine.submit(spec, PR)
    release.set()

    assert engine.wait(first, timeout=5).passed
    assert not engine.wait(queued, timeout=5).passed
    assert engine.get(queued).status is RunStatus.CANCELLED
    assert set(engine.get(queued).results().values()) == {RunResult.CANCELLED}
    assert sink.kinds(queued) == [RUN_QUEUED, JOB_FINISHED, JOB_FINISHED, RUN_FINISHED]
    assert [e.job for e in sink.events if e.run_id == queued and e.kind == JOB_FINISHED] == ["checks", "test"]
    assert engine.wait(latest, timeout=5).passed


def test_cancel_run(engine_for):
    started = threading.Event()
    engine = engine_for(FakeRunner({"cargo test": started_event(blocks_until(threading.Event()), started)}))

    run_id = engine.submit(ci(), PR)
    assert started.wait(5)
    assert engine.cancel(run_id) is True

    verdict = engine.wait(run_id, timeout=5)
    assert verdict is not None and not verdict.passed
    assert engine.get(run_id).outcomes["test"].reason == "cancelled by user"
    assert engine.cancel(run_id) is False


def test_unknown_run(engine_for):
    engine = engine_for(FakeRunner())
    with pytest.raises(KeyError):
        engine.get("nope")
    with pytest.raises(KeyError):
        engine.cancel("nope")


def test_forget_drops_finished_runs(engine_for):
    engine = engine_for(FakeRunner())
    run = engine.run(ci(), PR, timeout=5)
    engine.forget(run.id)
    assert engine.runs() == []


def test_finished_run_history_is_capped(settings, sink):
    engine = Engine(FakeRunner(), replace(settings, run_history=2), sinks=[sink])
    ids = [engine.run(ci(), PR, timeout=5).id for _ in range(3)]

    assert [r.id for r in engine.runs()] == ids[1:]
    with pytest.raises(KeyError):
        engine.get(ids[0])


def test_failing_sink_does_not_break_the_run(settings):
    class Broken:
        def emit(self, event):
            raise RuntimeError("sink down")

    memory = MemorySink()
    engine = Engine(FakeRunner(), settings, sinks=[Broken(), memory])
    run = engine.run(ci(), PR, timeout=5)

    assert run.verdict.passed
    assert RUN_FINISHED in memory.kinds(run.id)
