# flowgate_workflow.py
# Workflow for flowgate itself: lint, a test matrix, an advisory audit and
# the merge-queue gate that blocks on any failed or cancelled check.
from __future__ import annotations

from flowgate.dsl import concurrency, job, matrix, sh, wf

CHECKS = ["lint", "format-check", "test", "audit"]


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            title="check (ruff)",
        ),

        # Format check job - ensures code is properly formatted
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check src tests"),
            title="check (format)",
        ),

        # Test job - one instance per interpreter, coverage only on the newest
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            sh(
                "Coverage",
                "pytest -q --cov=flowgate",
                if_="matrix.coverage == 'true'",
            ),
            needs=["lint"],
            matrix=matrix("python", ["3.10", "3.11", "3.12", "3.13"])
            .include(python="3.13", coverage="true"),
            fail_fast="event == 'merge_group'",
            timeout_minutes=20,
            env={"PYTHONDONTWRITEBYTECODE": "1"},
        ),

        # Dependency audit - a new advisory must not fail the pull request
        job(
            "audit",
            sh("Advisories", "pip-audit --strict", if_="matrix.checks == 'advisories'"),
            sh("Licenses", "pip-licenses --fail-on GPL", if_="matrix.checks == 'licenses'"),
            matrix={"checks": ["advisories", "licenses"]},
            continue_on_error="matrix.checks == 'advisories'",
            title="check (audit)",
        ),

        # Block the merge if required checks fail, but only in the merge queue
        job(
            "required-checks",
            sh(
                "Block merge if required checks fail",
                "exit 1",
                if_="contains(needs.*.result, 'failure') || contains(needs.*.result, 'cancelled')",
            ),
            needs=CHECKS,
            if_="always() && event == 'merge_group'",
            title="required checks (merge queue)",
        ),

        name="ci",
        required=["lint", "format-check", "test", "required-checks"],
        on=["pull_request", "merge_group"],
        concurrency=concurrency("{workflow}-{number}", cancel_in_progress=True),
        env={"CI": "true"},
    )
