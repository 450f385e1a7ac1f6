# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from typing import Dict, Optional, Tuple

import click

from .actions import ActionRegistry
from .artifacts import ArtifactStore
from .dag import validate as validate_dag
from .engine import Engine
from .errors import DefinitionError, TriggerRejected
from .git_facts.git import get_current_ref, get_user_name, head_sha
from .history import RunHistory
from .loader import discover_definition, load_definition
from .model import EVENT_KINDS, Event, PipelineDefinition
from .report import EXIT_DEFINITION_ERROR
from .settings import Settings, load_settings
from .ui.console import Console, get_console, set_console


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, val = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        out[key.strip()] = val
    return out


def _load(definition_arg: Optional[str]) -> PipelineDefinition:
    """Discover + load, turning DefinitionError into exit code 3."""
    console = get_console()
    try:
        path = discover_definition(definition_arg)
        definition = load_definition(path)
        console.print_debug(f"Loaded {path} ({len(definition.jobs)} jobs)")
        return definition
    except DefinitionError as e:
        console.print_error(
            "Invalid pipeline definition",
            e.message,
            details=e.problems if e.problems != [e.message] else None,
            suggestion="Fix the definition and try again:\n  ciflow validate <definition>",
        )
        sys.exit(EXIT_DEFINITION_ERROR)


def _git_default(fn, what: str) -> Optional[str]:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_debug(f"Could not determine {what} from git")
        return None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """ciflow - run CI pipelines locally or as an event-driven service."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = load_settings()


def _engine(settings: Settings, *, workers: Optional[int], workspace: str, history: bool) -> Engine:
    return Engine(
        artifacts=ArtifactStore(settings.artifact_dir, retention=settings.artifact_retention),
        actions=ActionRegistry(),
        history=RunHistory(settings.history_url, retention=settings.history_retention) if history else None,
        workspace=workspace,
        max_parallel=workers or settings.max_parallel,
        protected_branches=settings.protected_branches,
        kill_grace=settings.kill_grace,
    )


@cli.command()
@click.argument("definition", required=False)
@click.option(
    "--event",
    "event_kind",
    required=True,
    type=click.Choice(sorted(EVENT_KINDS + ("workflow_dispatch",))),
    help="Event kind that triggers the run",
)
@click.option("--ref", default=None, help="Git ref (defaults to the current branch, refs/heads/<name>)")
@click.option("--draft", is_flag=True, default=False, help="Mark a pull_request event as draft")
@click.option("--action", "activity", default=None, help="Activity type, e.g. opened / synchronize")
@click.option("--base-ref", default=None, help="Target branch of a pull_request event")
@click.option("--actor", default=None, help="Who triggered the event (defaults to git user.name)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Repository variable, repeatable")
@click.option("--workers", default=None, type=int, help="Max concurrently running jobs")
@click.option("--workspace", default=".", show_default=True, help="Directory commands run in")
@click.option("--history/--no-history", default=True, show_default=True, help="Record the run in the run log")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.pass_context
def run(ctx, definition, event_kind, ref, draft, activity, base_ref, actor, sha, var_pairs, workers, workspace, history, as_json):
    """
    Run a pipeline for one event.

    Exit codes: 0 succeeded (or not started), 1 failed, 2 cancelled,
    3 definition error.
    """
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    pipeline_def = _load(definition)
    variables = _parse_vars(var_pairs)

    ref = ref or _git_default(get_current_ref, "ref")
    if not ref:
        console.print_error(
            "Could not determine git ref",
            "No --ref given and the current branch could not be read.",
            suggestion="Pass the ref explicitly:\n  ciflow run --event push --ref refs/heads/main",
        )
        sys.exit(EXIT_DEFINITION_ERROR)

    event = Event(
        kind=event_kind,
        ref=ref,
        draft=draft,
        action=activity,
        base_ref=base_ref,
        actor=actor or _git_default(get_user_name, "actor"),
        sha=sha or _git_default(head_sha, "sha"),
    )

    engine = _engine(settings, workers=workers, workspace=workspace, history=history)
    try:
        report = engine.run(pipeline_def, event, vars=variables)
    except TriggerRejected as e:
        console.print_trigger_rejected(pipeline_def.name, e.reason)
        if as_json:
            click.echo(json.dumps({"started": False, "workflow": pipeline_def.name, "reason": e.reason}))
        sys.exit(0)
    except DefinitionError as e:
        console.print_error("Invalid pipeline definition", e.message, details=e.problems)
        sys.exit(EXIT_DEFINITION_ERROR)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(report)
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    sys.exit(report.exit_code)


@cli.command()
@click.argument("definition", required=False)
@click.pass_context
def validate(ctx, definition):
    """Check a definition and print its execution stages."""
    console = get_console()
    pipeline_def = _load(definition)
    levels = validate_dag(pipeline_def.jobs)

    console.print_header(f"Pipeline: {pipeline_def.name}")
    triggers = ", ".join(sorted(pipeline_def.triggers)) or "(none)"
    console.print_info(f"Triggers: {triggers}")
    if pipeline_def.concurrency is not None:
        console.print_info(f"Concurrency group: {pipeline_def.concurrency.group}")
    for i, level in enumerate(levels, start=1):
        console.print_info(f"Stage {i}: {', '.join(level)}")
    console.print_info("\nDefinition OK")


@cli.command()
@click.option("--limit", default=20, show_default=True, type=int, help="How many runs to show")
@click.option("--run-id", default=None, help="Show one run in full (JSON)")
@click.pass_context
def history(ctx, limit, run_id):
    """Show the persisted run log."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    log = RunHistory(settings.history_url, retention=settings.history_retention)

    if run_id:
        row = log.get(run_id)
        if row is None:
            console.print_error("Run not found", f"No run with id {run_id} in {settings.history_url}")
            sys.exit(1)
        click.echo(json.dumps(row, indent=2))
        return

    console.print_history(log.recent(limit))


@cli.command()
@click.argument("definitions", nargs=-1)
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--workers", default=None, type=int, help="Max concurrently running jobs per run")
@click.option("--workspace", default=".", show_default=True, help="Directory commands run in")
@click.pass_context
def serve(ctx, definitions, host, port, workers, workspace):
    """Accept events over HTTP and run every matching pipeline."""
    import uvicorn

    from .server import create_app

    settings: Settings = ctx.obj["settings"]
    loaded = [_load(d) for d in definitions] if definitions else [_load(None)]
    engine = _engine(settings, workers=workers, workspace=workspace, history=True)
    app = create_app(engine, loaded)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
