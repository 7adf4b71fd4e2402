# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, List

from .errors import InvalidMatrix
from .model import JobInstance, JobTemplate, MatrixPoint, MatrixSpec


def _matches(point: Dict[str, Any], entry: Dict[str, Any]) -> bool:
    return all(k in point and point[k] == v for k, v in entry.items())


def expand_matrix(spec: MatrixSpec, job: str | None = None) -> List[MatrixPoint]:
    """
    Expand axes into concrete points.

    Order: axis-declaration order, row-major (the last axis varies fastest).
    exclude removes every point whose values equal the entry on all of its keys.
    include merges onto each point that agrees with the entry on the base axes
    without overwriting a base value; an entry that merges nowhere is appended
    as a new point.
    """
    if spec.empty:
        return [()]

    axis_names = [name for name, _values in spec.axes]
    for name, values in spec.axes:
        if len(values) == 0:
            raise InvalidMatrix(f"Matrix axis '{name}' has no values", job=job, axis=name)

    points: List[Dict[str, Any]] = []
    if spec.axes:
        for combo in itertools.product(*(values for _name, values in spec.axes)):
            points.append(dict(zip(axis_names, combo)))

    for raw in spec.exclude:
        entry = dict(raw)
        unknown = [k for k in entry if k not in axis_names]
        if unknown:
            raise InvalidMatrix(
                f"Matrix exclude references unknown axis '{unknown[0]}'", job=job, axis=unknown[0]
            )
        points = [p for p in points if not _matches(p, entry)]

    base_count = len(points)
    extra_keys: List[str] = []
    for raw in spec.include:
        entry = dict(raw)
        if not entry:
            raise InvalidMatrix("Matrix include entry is empty", job=job)
        for k in entry:
            if k not in axis_names and k not in extra_keys:
                extra_keys.append(k)

        base_part = {k: v for k, v in entry.items() if k in axis_names}
        merged = False
        for p in points[:base_count]:
            if _matches(p, base_part):
                p.update(entry)
                merged = True
        if not merged:
            points.append(dict(entry))

    if not points:
        raise InvalidMatrix("Matrix expands to zero jobs after exclude", job=job)

    order = axis_names + extra_keys
    out: List[MatrixPoint] = []
    seen = set()
    for p in points:
        point = tuple((k, p[k]) for k in order if k in p)
        marker = repr(point)
        if marker in seen:
            continue
        seen.add(marker)
        out.append(point)
    return out


def expand_job(template: JobTemplate, start_order: int = 0) -> List[JobInstance]:
    points = expand_matrix(template.matrix, job=template.name)
    return [
        JobInstance(template=template, point=point, order=start_order + i)
        for i, point in enumerate(points)
    ]


def expand_workflow(jobs) -> List[JobInstance]:
    """Expand every template; expansion order seeds scheduling priority."""
    instances: List[JobInstance] = []
    for template in jobs:
        instances.extend(expand_job(template, start_order=len(instances)))
    return instances
