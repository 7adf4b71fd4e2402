# aggregator.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Tuple

from .model import InstanceOutcome, RunResult

PASSING = (RunResult.SUCCESS, RunResult.SKIPPED)
FAILING = (RunResult.FAILURE, RunResult.CANCELLED)


@dataclass(frozen=True)
class ResultRow:
    job: str
    instance: str
    display: str
    result: RunResult
    required: bool
    reason: str = ""
    duration: float | None = None


@dataclass(frozen=True)
class Verdict:
    passed: bool
    rows: Tuple[ResultRow, ...]
    failing: Tuple[str, ...]

    @property
    def label(self) -> str:
        return "pass" if self.passed else "fail"

    def to_dict(self) -> dict:
        return {
            "verdict": self.label,
            "failing": list(self.failing),
            "jobs": [
                {
                    "job": r.job,
                    "instance": r.instance,
                    "display": r.display,
                    "result": r.result.value,
                    "required": r.required,
                    "reason": r.reason,
                    "duration": r.duration,
                }
                for r in self.rows
            ],
        }


def aggregate(outcomes: Iterable[InstanceOutcome], required: Iterable[str]) -> Verdict:
    """
    Gate the run on its required checks.

    Passes iff every instance of every required job is success or skipped;
    failure and cancelled are treated identically. Non-required outcomes are
    reported but never change the verdict. Pure: same input, same verdict.
    """
    required_set = set(required)
    outcomes = sorted(outcomes, key=lambda o: o.instance.order)

    rows: List[ResultRow] = []
    failing: List[str] = []
    seen_jobs = set()

    for o in outcomes:
        if not o.result.terminal:
            raise ValueError(f"Cannot aggregate non-terminal result for {o.instance.id}: {o.result.value}")
        is_required = o.instance.name in required_set
        seen_jobs.add(o.instance.name)
        rows.append(
            ResultRow(
                job=o.instance.name,
                instance=o.instance.id,
                display=o.instance.display,
                result=o.result,
                required=is_required,
                reason=o.reason,
                duration=o.duration,
            )
        )
        if is_required and o.result in FAILING:
            failing.append(o.instance.id)

    # a required check that never produced a result cannot pass
    for name in sorted(required_set - seen_jobs):
        failing.append(name)

    return Verdict(passed=not failing, rows=tuple(rows), failing=tuple(failing))
