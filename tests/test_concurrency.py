import threading

import pytest

from flowgate.cancel import CancelToken
from flowgate.concurrency import ConcurrencyManager, resolve_policy
from flowgate.errors import InvalidWorkflow
from flowgate.model import ConcurrencyPolicy, EventKind, RunContext


def test_first_holder_is_granted():
    mgr = ConcurrencyManager()
    result = mgr.acquire("ci-42", "run-1")

    assert result.granted
    assert result.superseded is None
    assert mgr.holder("ci-42") == "run-1"


def test_cancel_in_progress_supersedes_holder():
    mgr = ConcurrencyManager()
    superseded_by = []
    mgr.acquire("ci-42", "run-1", on_superseded=superseded_by.append)

    result = mgr.acquire("ci-42", "run-2", cancel_in_progress=True)

    assert result.granted
    assert result.superseded == "run-1"
    assert superseded_by == ["run-2"]
    assert mgr.holder("ci-42") == "run-2"


def test_stale_release_is_a_noop():
    mgr = ConcurrencyManager()
    mgr.acquire("ci-42", "run-1")
    mgr.acquire("ci-42", "run-2", cancel_in_progress=True)

    assert mgr.release("ci-42", "run-1") is False
    assert mgr.holder("ci-42") == "run-2"
    assert mgr.release("ci-42", "run-2") is True
    assert mgr.holder("ci-42") is None


def test_queued_holder_is_promoted_on_release():
    mgr = ConcurrencyManager()
    mgr.acquire("deploy", "run-1")
    result = mgr.acquire("deploy", "run-2")

    assert not result.granted
    assert mgr.snapshot() == {"deploy": {"holder": "run-1", "queued": "run-2"}}

    granted = []
    waiter = threading.Thread(target=lambda: granted.append(mgr.wait("deploy", "run-2", poll=0.01)))
    waiter.start()
    mgr.release("deploy", "run-1")
    waiter.join(timeout=2)

    assert granted == [True]
    assert mgr.holder("deploy") == "run-2"


def test_newer_queued_holder_supersedes_older_one():
    mgr = ConcurrencyManager()
    dropped = []
    mgr.acquire("deploy", "run-1")
    mgr.acquire("deploy", "run-2", on_superseded=dropped.append)
    result = mgr.acquire("deploy", "run-3")

    assert result.superseded == "run-2"
    assert dropped == ["run-3"]
    assert mgr.wait("deploy", "run-2") is False


def test_cancelled_waiter_leaves_the_queue():
    mgr = ConcurrencyManager()
    mgr.acquire("deploy", "run-1")
    mgr.acquire("deploy", "run-2")
    token = CancelToken()
    token.cancel("user")

    assert mgr.wait("deploy", "run-2", token) is False
    assert mgr.snapshot() == {"deploy": {"holder": "run-1", "queued": None}}


def test_keys_are_independent():
    mgr = ConcurrencyManager()
    assert mgr.acquire("a", "run-1").granted
    assert mgr.acquire("b", "run-2").granted


def test_idle_slots_are_dropped():
    mgr = ConcurrencyManager()
    assert mgr.holder("ci-1") is None
    assert len(mgr) == 0

    for number in range(50):
        key = f"ci-{number}"
        mgr.acquire(key, f"run-{number}")
        mgr.release(key, f"run-{number}")
    assert len(mgr) == 0

    mgr.acquire("deploy", "run-1")
    mgr.acquire("deploy", "run-2")
    mgr.release("deploy", "run-1")
    assert len(mgr) == 1
    mgr.release("deploy", "run-2")
    assert len(mgr) == 0
    assert mgr.acquire("deploy", "run-3").granted


def test_resolve_policy_formats_group_and_evaluates_cancel():
    ctx = RunContext(event=EventKind.PULL_REQUEST, workflow="CI", number="42")
    policy = ConcurrencyPolicy("{workflow}-{number}", cancel_in_progress="event == 'pull_request'")

    assert resolve_policy(policy, ctx) == ("CI-42", True)
    merge = RunContext(event=EventKind.MERGE_GROUP, workflow="CI", number="42")
    assert resolve_policy(policy, merge) == ("CI-42", False)


def test_resolve_policy_with_matrix():
    policy = ConcurrencyPolicy("deploy-{matrix[env]}")
    assert resolve_policy(policy, RunContext(), {"env": "prod"}) == ("deploy-prod", False)


def test_resolve_policy_rejects_bad_template():
    with pytest.raises(InvalidWorkflow):
        resolve_policy(ConcurrencyPolicy("{branch}"), RunContext(), job="deploy")
