import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from flowgate.cli import cli, find_workflow_files

WORKFLOW = textwrap.dedent(
    """
    name: local
    jobs:
      build:
        steps:
          - name: compile
            run: echo compiled
      test:
        needs: [build]
        matrix:
          shard: [1, 2]
        steps:
          - name: check
            run: {command}
    """
)


@pytest.fixture
def repo(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def write(repo, command, name="flowgate.yaml"):
    (repo / name).write_text(WORKFLOW.format(command=command))


def test_plan_prints_stages(repo):
    write(repo, "'exit 0'")
    result = CliRunner().invoke(cli, ["plan", "--ref", "refs/heads/main", "--actor", "dev"])

    assert result.exit_code == 0, result.output
    assert "=== Stage 1 ===" in result.output
    assert "test (1)" in result.output
    assert "Required checks: build, test" in result.output


def test_run_exits_zero_when_required_checks_pass(repo):
    write(repo, "'exit 0'")
    result = CliRunner().invoke(cli, ["run", "--ref", "refs/heads/main", "--actor", "dev"])

    assert result.exit_code == 0, result.output
    assert "VERDICT: PASS" in result.output


def test_run_exits_one_when_a_required_check_fails(repo):
    write(repo, "'exit 1'")
    result = CliRunner().invoke(cli, ["run", "--ref", "refs/heads/main", "--actor", "dev"])

    assert result.exit_code == 1
    assert "JOB FAILED" in result.output
    assert "VERDICT: FAIL" in result.output


def test_run_archives_finished_run(repo):
    write(repo, "'exit 0'")
    url = f"sqlite:///{repo / 'runs.db'}"
    result = CliRunner().invoke(
        cli, ["run", "--ref", "refs/heads/main", "--actor", "dev", "--archive", url]
    )

    assert result.exit_code == 0, result.output
    assert (repo / "runs.db").exists()


def test_invalid_workflow_is_reported(repo):
    (repo / "flowgate.yaml").write_text(
        "jobs:\n  a:\n    needs: [b]\n    steps: [{name: s, run: 'true'}]\n"
    )
    result = CliRunner().invoke(cli, ["plan", "--ref", "r", "--actor", "a"])

    assert result.exit_code == 1
    assert "UnknownDependency" in result.output


def test_missing_workflow(repo):
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_an_explicit_choice(repo):
    write(repo, "'exit 0'")
    write(repo, "'exit 0'", name="flowgate.yml")

    assert find_workflow_files() == [Path("flowgate.yaml"), Path("flowgate.yml")]
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_explicit_workflow(repo):
    write(repo, "'exit 0'", name="ci.yaml")
    result = CliRunner().invoke(
        cli, ["run", "--workflow", "ci.yaml", "--ref", "r", "--actor", "a", "--workers", "1"]
    )
    assert result.exit_code == 0, result.output
