import pytest

from flowgate.dag import build_graph, instance_predecessors, topo_levels
from flowgate.dsl import job, sh
from flowgate.errors import CyclicDependency, InvalidWorkflow, UnknownDependency
from flowgate.matrix import expand_workflow


def _job(name, needs=(), **kw):
    return job(name, sh("step", f"echo {name}"), needs=list(needs), **kw)


def test_topological_order_follows_needs_and_declaration_order():
    jobs = [_job("deploy", ["test", "lint"]), _job("lint"), _job("test", ["build"]), _job("build")]
    graph = build_graph(jobs)

    assert graph.order == ["lint", "build", "test", "deploy"]
    assert graph.preds["deploy"] == ["test", "lint"]
    assert sorted(graph.succs["build"]) == ["test"]


def test_levels_group_parallel_jobs():
    jobs = [_job("a"), _job("b"), _job("c", ["a", "b"]), _job("d", ["c"])]
    assert topo_levels(build_graph(jobs)) == [["a", "b"], ["c"], ["d"]]


def test_unknown_dependency():
    with pytest.raises(UnknownDependency) as exc:
        build_graph([_job("a", ["ghost"])])

    assert exc.value.job == "a"
    assert exc.value.missing == "ghost"


def test_duplicate_names():
    with pytest.raises(InvalidWorkflow):
        build_graph([_job("a"), _job("a")])


def test_cycle_names_only_its_members():
    jobs = [_job("a"), _job("b", ["a", "d"]), _job("c", ["b"]), _job("d", ["c"]), _job("e", ["d"])]
    with pytest.raises(CyclicDependency) as exc:
        build_graph(jobs)

    assert exc.value.members == ["b", "c", "d"]


def test_self_cycle():
    with pytest.raises(CyclicDependency) as exc:
        build_graph([_job("a", ["a"])])
    assert exc.value.members == ["a"]


def test_whole_job_gating_by_default():
    jobs = [
        _job("build", matrix={"os": ["linux", "macos"]}),
        _job("test", ["build"], matrix={"os": ["linux", "macos"]}),
    ]
    instances = expand_workflow(jobs)
    preds = instance_predecessors(instances, build_graph(jobs))

    assert preds["test[os=linux]"] == ["build[os=linux]", "build[os=macos]"]


def test_matrix_scoped_needs_match_shared_axes():
    jobs = [
        _job("build", matrix={"os": ["linux", "macos"]}),
        _job("test", ["build"], matrix={"os": ["linux", "macos"], "py": ["3.12"]}, matrix_scoped_needs=True),
        _job("report", ["build"], matrix_scoped_needs=True),
    ]
    instances = expand_workflow(jobs)
    preds = instance_predecessors(instances, build_graph(jobs))

    assert preds["test[os=linux,py=3.12]"] == ["build[os=linux]"]
    assert preds["test[os=macos,py=3.12]"] == ["build[os=macos]"]
    # no shared axis: falls back to every instance
    assert preds["report"] == ["build[os=linux]", "build[os=macos]"]
