# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from matrixci.command import CommandRunner
from matrixci.config import Settings
from matrixci.dag import validate_dag
from matrixci.errors import ConfigurationError
from matrixci.executor import JobExecutor
from matrixci.git_facts.git import event_from_git
from matrixci.loader import load_workflow, parse_event_kind
from matrixci.log import configure_logging
from matrixci.matrix import expand
from matrixci.model import Event, WorkflowDefinition
from matrixci.report import EXIT_CONFIG_ERROR, EXIT_FAILED, report
from matrixci.scheduler import WorkflowScheduler
from matrixci.triggers import matches
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = (
    Path(".github/workflows/ci.yml"),
    Path(".github/workflows/ci.yaml"),
    Path("matrixci.yml"),
    Path("matrixci.yaml"),
    Path("matrixci_workflow.py"),
)


def find_workflow_files() -> list[Path]:
    """Default workflow files present in the current directory."""
    return [p for p in DEFAULT_WORKFLOW_FILES if p.exists()]


def discover_workflow(workflow_arg: Optional[str]) -> Path:
    """
    Resolve the workflow file from the argument or the defaults.

    Raises:
        SystemExit(2): if no workflow, or several candidate workflows, are found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run my_workflow.yml",
            )
            sys.exit(EXIT_CONFIG_ERROR)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:"] + [f"  {p}" for p in DEFAULT_WORKFLOW_FILES],
            suggestion="Specify a workflow explicitly:\n  matrixci run path/to/workflow.yml",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run {workflow_files[0]}",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    return workflow_files[0]


def load_or_exit(workflow_arg: Optional[str]) -> Tuple[Path, WorkflowDefinition]:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return workflow_path, load_workflow(workflow_path)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print_error(
            "Invalid workflow definition",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(EXIT_CONFIG_ERROR)


def parse_actions(values: Tuple[str, ...]) -> Dict[str, Optional[str]]:
    """--action REF=COMMAND (an empty COMMAND makes the action a no-op)."""
    out: Dict[str, Optional[str]] = {}
    for value in values:
        ref, sep, command = value.partition("=")
        if not sep or not ref.strip():
            raise click.BadParameter(f"expected REF=COMMAND, got {value!r}", param_hint="--action")
        out[ref.strip()] = command or None
    return out


def build_event(
    kind: str,
    branch: Optional[str],
    tag: Optional[str],
    paths: Tuple[str, ...],
    from_git: bool,
    compare_ref: str,
) -> Event:
    try:
        event_kind = parse_event_kind(kind, where="--event")
    except ConfigurationError as e:
        raise click.BadParameter(e.message, param_hint="--event") from None

    if from_git:
        try:
            git_event = event_from_git(event_kind, compare_ref=compare_ref)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise click.UsageError(f"--from-git: could not read the git repository ({e})") from None
        return Event(
            kind=event_kind,
            branch=branch or git_event.branch,
            tag=tag or git_event.tag,
            paths=tuple(paths) if paths else git_event.paths,
        )
    return Event(kind=event_kind, branch=branch, tag=tag, paths=tuple(paths) if paths else None)


def event_options(f):
    """Options describing the incoming event, shared by `run` and `plan`."""
    f = click.option("--compare-ref", default="origin/main", show_default=True,
                     help="Git ref to diff against with --from-git")(f)
    f = click.option("--from-git", is_flag=True, default=False,
                     help="Fill branch, tag and changed paths from the local git repository")(f)
    f = click.option("--path", "paths", multiple=True, help="Changed file path (repeatable)")(f)
    f = click.option("--tag", default=None, help="Tag of the event")(f)
    f = click.option("--branch", default=None, help="Branch of the event (base branch for pull_request)")(f)
    f = click.option("--event", "event_kind", default="push", show_default=True,
                     help="Event kind: push, pull_request, schedule, workflow_dispatch")(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and debug logging)",
)
@click.option("--log-format", type=click.Choice(["console", "json"]), default=None,
              help="Diagnostic log format on stderr")
@click.version_option(package_name="matrixci")
@click.pass_context
def cli(ctx, debug, log_format):
    """matrixci: run matrixed CI workflows locally."""
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        get_console().print_error("Invalid settings", e.message)
        sys.exit(EXIT_CONFIG_ERROR)

    configure_logging(
        level="DEBUG" if debug else settings.log_level,
        fmt=log_format or settings.log_format,
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("workflow", required=False)
@event_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Maximum parallel job instances")
@click.option("--timeout", "run_timeout", default=None, type=click.FloatRange(min=0, min_open=True),
              help="Run timeout in seconds; cancels everything still running")
@click.option("--tail", "tail_lines", default=None, type=click.IntRange(min=0),
              help="Output lines shown for failed steps")
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False),
              help="Workspace the steps run in")
@click.option("--action", "actions", multiple=True, metavar="REF=COMMAND",
              help="Local handler for a `uses:` action (repeatable)")
@click.option("--stream/--no-stream", default=False, help="Echo step output live")
@click.option("--quiet", is_flag=True, default=False, help="Only print the final report")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.option("--timings/--no-timings", default=True, help="Include durations in the report")
@click.pass_context
def run(ctx, workflow, event_kind, branch, tag, paths, from_git, compare_ref, workers, run_timeout,
        tail_lines, workdir, actions, stream, quiet, as_json, timings):
    """Run a workflow for an event and print the report."""
    debug = ctx.obj.get("debug", False)
    settings: Settings = ctx.obj["settings"]
    console = Console(debug=debug, stream_output=stream, quiet=quiet or as_json)
    set_console(console)

    event = build_event(event_kind, branch, tag, paths, from_git, compare_ref)
    action_overrides = parse_actions(actions)
    _path, definition = load_or_exit(workflow)

    executor = JobExecutor(
        CommandRunner(),
        workspace=Path(workdir),
        action_overrides=action_overrides,
        console=console,
    )
    scheduler = WorkflowScheduler(
        executor,
        max_workers=workers or settings.max_workers,
        run_timeout=run_timeout or settings.run_timeout,
        console=console,
    )

    try:
        workflow_run = scheduler.run_workflow(definition, event)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    rendered = report(
        workflow_run,
        tail_lines=settings.output_tail if tail_lines is None else tail_lines,
        show_timings=timings,
    )
    console.print_report(rendered.to_json() if as_json else rendered.text)
    sys.exit(rendered.exit_code)


@cli.command()
@click.argument("workflow", required=False)
def validate(workflow):
    """Load a workflow and report whether it is valid."""
    console = get_console()
    path, definition = load_or_exit(workflow)
    instances = sum(len(expand(j)) for j in definition.jobs.values())
    console.print_info(
        f"{path}: workflow '{definition.name}' is valid "
        f"({len(definition.jobs)} job(s), {instances} instance(s))"
    )


@cli.command()
@click.argument("workflow", required=False)
@event_options
def plan(workflow, event_kind, branch, tag, paths, from_git, compare_ref):
    """Show whether an event triggers the workflow and which instances would run."""
    console = get_console()
    event = build_event(event_kind, branch, tag, paths, from_git, compare_ref)
    _path, definition = load_or_exit(workflow)

    if not matches(definition.triggers, event):
        console.print_info(f"Workflow '{definition.name}' is not triggered by {event.describe()}")
        return

    console.print_info(f"Workflow '{definition.name}' triggered by {event.describe()}")
    for n, stage in enumerate(validate_dag(definition.jobs.values()), start=1):
        console.print_info(f"Stage {n}:")
        for job_id in stage:
            job = definition.jobs[job_id]
            needs = f" (needs: {', '.join(job.needs)})" if job.needs else ""
            console.print_info(f"  {job.id}{needs}")
            for inst in expand(job):
                console.print_info(f"    - {inst.name}: {len(inst.steps)} step(s)")


if __name__ == "__main__":
    cli()
