# cli.py
from __future__ import annotations

import signal
import sys
from contextlib import contextmanager
from pathlib import Path

import click

from kindci.cluster import KindCli
from kindci.config import DEFAULT_WORKFLOW, PipelineConfig, Settings
from kindci.errors import OrchestratorError, WorkflowError
from kindci.git_facts.git import repository_name, trigger_ref
from kindci.matrix import expand_all
from kindci.model import TriggerEvent
from kindci.provision import default_handlers
from kindci.runner import load_workflow
from kindci.scheduler import EXIT_ERROR, JobScheduler
from kindci.tools import SubprocessToolRunner
from kindci.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  kindci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_ERROR)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  kindci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_ERROR)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  kindci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(EXIT_ERROR)

    return workflow_files[0]


def _load_jobs(ctx, workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, expand_all(load_workflow(workflow_path))
    except (WorkflowError, FileNotFoundError) as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_ERROR)


@contextmanager
def _cancel_on_signals(scheduler: JobScheduler):
    """SIGINT/SIGTERM ask the scheduler to cancel; cleanup still runs."""
    def handler(signum, frame):
        get_console().print_info(f"\nReceived signal {signum}, cancelling jobs...")
        scheduler.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # not the main thread (embedded use): no signal wiring
            pass
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """kindci: matrix CI runner with ephemeral kind clusters."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.pass_context
def plan(ctx, workflow):
    """Expand the matrix and print the jobs without running them."""
    console = get_console()
    workflow_path, jobs = _load_jobs(ctx, workflow)
    console.print_header(f"PLAN: {workflow_path.name} ({len(jobs)} jobs)")
    for j in jobs:
        console.print_plan_job(j.job_id, j.runs_on, len(j.steps))


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--event", "event", default="push", show_default=True, help="Trigger event kind (push, pull_request, ...)")
@click.option("--ref", default=None, help="Git ref of the trigger (defaults to the current branch)")
@click.option("--repository", default=None, help="Repository of the trigger (defaults to the origin remote)")
@click.option("--run-id", default=None, help="Run identifier (default: random; env KINDCI_RUN_ID)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--artifact-dir", default=None, type=click.Path(path_type=Path), help="Artifact directory")
@click.option("--work-dir", default=None, type=click.Path(path_type=Path), help="Scratch directory for tools and env files")
@click.option("--step-timeout", default=None, type=float, help="Default per-step timeout in seconds")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Cancel remaining jobs after the first failure")
@click.option("--rewrite-loopback/--no-rewrite-loopback", default=False, help="Use localhost instead of 127.0.0.1 in kind kubeconfigs")
@click.pass_context
def run(ctx, workflow, event, ref, repository, run_id, workers, artifact_dir, work_dir, step_timeout, fail_fast, rewrite_loopback):
    """Run a kindci workflow."""
    console = get_console()
    workflow_path, jobs = _load_jobs(ctx, workflow)

    settings = Settings.from_env()
    trigger = TriggerEvent(
        kind=event,
        ref=ref or trigger_ref(),
        repository=repository or repository_name(),
    )
    config = PipelineConfig.from_settings(
        settings,
        trigger,
        run_id=run_id,
        max_workers=workers,
        artifact_root=artifact_dir,
        work_root=work_dir,
        step_timeout=step_timeout,
        fail_fast=fail_fast,
    )

    tools = SubprocessToolRunner()
    cluster = KindCli(
        tools,
        kubeconfig_dir=config.run_work_root / "kube",
        env=config.base_env,
        rewrite_loopback=rewrite_loopback,
    )
    scheduler = JobScheduler(config, tools=tools, handlers=default_handlers(cluster, config.work_root))

    console.print_run_started(
        run_id=config.run_id,
        workflow=workflow_path.name,
        event=trigger.kind,
        ref=trigger.ref,
        job_count=len(jobs),
    )

    try:
        with _cancel_on_signals(scheduler):
            result = scheduler.run(jobs)
    except OrchestratorError as e:
        console.print_error("Orchestrator error", str(e))
        console.print_exception(e.__cause__ or e)
        sys.exit(EXIT_ERROR)

    console.print_results(
        {j.job_id: r.status.value for j, r in result.results.items()},
        result.status.value,
    )
    for r in result.results.values():
        for err in r.teardown_errors:
            console.print_teardown_error(err)
    console.print_info(f"Artifacts: {config.run_artifact_root}")
    sys.exit(result.exit_code)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
