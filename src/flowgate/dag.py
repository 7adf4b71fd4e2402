# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Sequence, Set

from .errors import CyclicDependency, InvalidWorkflow, UnknownDependency
from .model import JobInstance, JobTemplate


@dataclass(frozen=True)
class JobGraph:
    """
    Job-level DAG.

    preds: job -> jobs that must finish BEFORE it
    succs: job -> jobs unlocked by it
    order: a valid topological order (declaration order among peers)
    """
    preds: Dict[str, List[str]]
    succs: Dict[str, List[str]]
    order: List[str]


def build_graph(jobs: Sequence[JobTemplate]) -> JobGraph:
    """
    Build and validate the DAG from JobTemplate.needs.

    Raises:
      InvalidWorkflow     duplicate job names
      UnknownDependency   a needs entry names no job
      CyclicDependency    the needs edges contain a cycle
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise InvalidWorkflow(f"Duplicate job names found: {dupes}")

    position = {n: i for i, n in enumerate(names)}
    preds: Dict[str, List[str]] = {n: [] for n in names}
    succs: Dict[str, List[str]] = {n: [] for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in position:
                raise UnknownDependency(job.name, need, names)
            # Edge need -> job.name (need must run before job)
            if need not in preds[job.name]:
                preds[job.name].append(need)
                succs[need].append(job.name)

    return JobGraph(preds=preds, succs=succs, order=_kahn(names, preds, succs, position))


def _kahn(
    names: List[str],
    preds: Dict[str, List[str]],
    succs: Dict[str, List[str]],
    position: Dict[str, int],
) -> List[str]:
    indeg = {n: len(preds[n]) for n in names}
    q = deque(n for n in names if indeg[n] == 0)
    order: List[str] = []

    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(succs[node], key=position.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(order) != len(names):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CyclicDependency(sorted(_cycle_members(stuck, succs), key=position.__getitem__))

    return order


def _cycle_members(stuck: Set[str], succs: Dict[str, List[str]]) -> Set[str]:
    """Peel off stuck nodes that only lead out of the stuck set (downstream of a cycle)."""
    members = set(stuck)
    changed = True
    while changed:
        changed = False
        for n in list(members):
            if not any(s in members for s in succs[n]):
                members.discard(n)
                changed = True
    return members


def topo_levels(graph: JobGraph) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    level_of: Dict[str, int] = {}
    for name in graph.order:
        level_of[name] = 1 + max((level_of[p] for p in graph.preds[name]), default=-1)

    levels: List[List[str]] = []
    for name in graph.order:
        lvl = level_of[name]
        while len(levels) <= lvl:
            levels.append([])
        levels[lvl].append(name)
    return levels


def instance_predecessors(
    instances: Sequence[JobInstance],
    graph: JobGraph,
) -> Dict[str, List[str]]:
    """
    Expand job-level edges to instance-level edges.

    Default: every instance of a needed job gates every instance of the dependent.
    With matrix_scoped_needs, only predecessor instances agreeing on the shared
    matrix axes gate the dependent point (all of them if no axis is shared).
    """
    by_job: Dict[str, List[JobInstance]] = {}
    for inst in instances:
        by_job.setdefault(inst.name, []).append(inst)

    out: Dict[str, List[str]] = {}
    for inst in instances:
        ids: List[str] = []
        for need in graph.preds[inst.name]:
            candidates = by_job.get(need, [])
            if inst.template.matrix_scoped_needs:
                candidates = _same_point(inst, candidates)
            ids.extend(c.id for c in candidates)
        out[inst.id] = ids
    return out


def _same_point(inst: JobInstance, candidates: List[JobInstance]) -> List[JobInstance]:
    mine = inst.values
    scoped = []
    for c in candidates:
        theirs = c.values
        shared = [k for k in mine if k in theirs]
        if not shared:
            return candidates
        if all(mine[k] == theirs[k] for k in shared):
            scoped.append(c)
    return scoped
