# cli.py
from __future__ import annotations

import json
import sys
import urllib.error
import urllib.request
from dataclasses import replace
from pathlib import Path
from urllib.parse import urljoin

import click

from flowgate.dag import build_graph, topo_levels
from flowgate.engine import Engine, prepare_run
from flowgate.errors import WorkflowValidationError
from flowgate.git_facts.git import context_defaults
from flowgate.loader import load_workflow, workflow_to_dict
from flowgate.model import EventKind, RunContext
from flowgate.settings import Settings
from flowgate.sinks import ConsoleSink
from flowgate.steps import ShellStepRunner
from flowgate.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("flowgate_workflow.py", "flowgate.yaml", "flowgate.yml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {current_dir / name for name in DEFAULT_WORKFLOW_FILES if (current_dir / name).exists()}
    found.update(current_dir.glob("*_workflow.py"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  flowgate run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOW_FILES), "  *_workflow.py"],
            suggestion="Create a workflow file:\n  flowgate_workflow.py\n\nOr specify a workflow explicitly:\n  flowgate run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  flowgate run --workflow flowgate_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _context(event: str, ref: str | None, actor: str | None, number: str) -> RunContext:
    facts = context_defaults() if ref is None or actor is None else {}
    return RunContext(
        event=EventKind(event),
        ref=ref or facts.get("ref", "HEAD"),
        actor=actor or facts.get("actor", "unknown"),
        number=number,
    )


def _validation_failed(e: WorkflowValidationError) -> None:
    details = [f"{k}={v}" for k, v in e.details.items()]
    if e.job:
        details.insert(0, f"job={e.job}")
    get_console().print_error(e.kind, e.message, details=details or None)
    sys.exit(1)


context_options = [
    click.option(
        "--event",
        type=click.Choice([e.value for e in EventKind]),
        default=EventKind.MANUAL.value,
        show_default=True,
        help="Trigger event kind for the run context",
    ),
    click.option("--ref", default=None, help="Git ref (defaults to the current branch)"),
    click.option("--actor", default=None, help="Actor (defaults to git user.name)"),
    click.option("--number", default="", help="Pull request number / merge queue head ref"),
]


def with_context_options(fn):
    for option in reversed(context_options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and engine logs)",
)
@click.pass_context
def cli(ctx, debug):
    """flowgate: DAG-driven CI workflow runner with required-check gating."""
    console = Console(debug=debug)
    console.configure_logging()
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yaml, .json)")
@click.option("--workers", default=None, type=int, help="Max parallel job instances")
@click.option("--grace", default=None, type=float, help="Seconds a cancelled job may take to stop")
@click.option("--retries", default=None, type=int, help="Transport error retries per step")
@click.option("--archive", "archive_url", default=None, help="Archive the finished run to this database URL")
@with_context_options
@click.pass_context
def run(ctx, workflow, workers, grace, retries, archive_url, event, ref, actor, number):
    """Run a workflow locally and gate on its required checks."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        spec = load_workflow(workflow_path)

        settings = Settings()
        overrides = {
            k: v
            for k, v in (("workers", workers), ("grace_period", grace), ("step_retries", retries))
            if v is not None
        }
        settings = replace(settings, **overrides)

        sinks = [ConsoleSink()]
        if archive_url:
            from flowgate.cloud.archive import ArchiveSink
            sinks.append(ArchiveSink(archive_url))

        engine = Engine(ShellStepRunner("."), settings, sinks=sinks)
        result = engine.run(spec, _context(event, ref, actor, number))

        if not result.verdict.passed:
            sys.exit(1)

    except WorkflowValidationError as e:
        _validation_failed(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yaml, .json)")
@with_context_options
@click.pass_context
def plan(ctx, workflow, event, ref, actor, number):
    """Validate a workflow and print its expanded jobs stage by stage."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        spec = load_workflow(workflow_path)
        prepared = prepare_run(spec, _context(event, ref or "HEAD", actor or "unknown", number))
        graph = build_graph(spec.jobs)

        by_job: dict[str, list[str]] = {}
        for inst in prepared.instances:
            by_job.setdefault(inst.name, []).append(inst.display)

        levels = [[d for name in level for d in by_job[name]] for level in topo_levels(graph)]

        console.print_header(f"{spec.name}: {len(prepared.instances)} job instance(s)")
        console.print_plan(levels)
        required = ", ".join(spec.required_jobs)
        console.print_info(f"\nRequired checks: {required}")
        if prepared.group:
            console.print_info(f"Concurrency group: {prepared.group}")

    except WorkflowValidationError as e:
        _validation_failed(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="Control plane base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help="Workflow file (.py, .yaml, .json)")
@with_context_options
@click.pass_context
def submit(ctx, api, workflow, event, ref, actor, number):
    """Submit a workflow run to a flowgate control plane."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        spec = load_workflow(workflow_path)
        console.print_info(f"Loaded {len(spec.jobs)} job(s) from {workflow_path}")
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        sys.exit(1)

    context = _context(event, ref, actor, number)
    request_data = {
        "workflow": workflow_to_dict(spec),
        "context": {
            "event": context.event.value,
            "ref": context.ref,
            "actor": context.actor,
            "number": context.number,
        },
    }

    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "runs")
    req = urllib.request.Request(
        url,
        data=json.dumps(request_data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
        run_id = result.get("run_id")
        if not run_id:
            console.print_error(
                "Empty API response",
                "Received a response without a run id.",
                suggestion=f"Check if the API at {base_url} is running correctly.",
            )
            sys.exit(1)
        console.print_info(f"\nSuccessfully submitted run to {base_url}")
        console.print_info(f"  Run ID: {run_id}")
        console.print_info(f"  Jobs: {', '.join(result.get('instances', []))}")
        console.print_info(f"\nFollow progress at {base_url}/runs/{run_id}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        console.print_error(
            "Invalid API response",
            "Could not parse JSON response from API.",
            details=[str(e)],
            suggestion=f"Check if the API at {base_url} is responding correctly.",
        )
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
