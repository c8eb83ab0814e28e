"""
Planmend CLI - Reconcile feature plans with the filesystem and recover drift.

Commands:
    init          - Write a sample planmend.yml in the project
    report        - Recovery report for every feature
    reconcile     - Reconcile one feature's plan
    rebuild       - Rebuild one feature's agent output
    resume        - Request a resume of pending tasks
    restore-deps  - Restore dependencies lost from feature records
    timeline      - Execution timeline for one feature
    events        - Event history (list/show/clear)
    serve         - Run the local API server
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import click
from dotenv import load_dotenv

# Load .env file from current directory
load_dotenv()
load_dotenv(Path.cwd() / ".env")

from . import __version__
from .config import CONFIG_FILENAME, PlanmendConfig, ensure_state_dir, get_repo_root
from .errors import FeatureNotFoundError, NoOpError
from .events import EventEmitter
from .history import EventFilter, EventHistoryStore
from .recovery.runtime import RecoveryRuntime
from .store import FeatureStore


SAMPLE_CONFIG = """\
# Planmend Configuration

# Reconciliation and recovery policy
recovery:
  max_backups: 3              # Numbered feature.json backups kept (bak1 newest)
  concurrency: 8              # Features inspected in parallel by `planmend report`
  worktrees_dir: .worktrees   # Where per-feature workspace copies live
  candidate_preview: 5        # Dependency candidates shown per feature

# Bounded event history (.planmend/events)
# Env overrides: PLANMEND_EVENT_HISTORY_MAX_EVENTS, PLANMEND_EVENT_HISTORY_CACHE_TTL_MS
event_history:
  max_events: 1000
  cache_ttl_ms: 2000

# In-process event fan-out
# Env overrides: PLANMEND_EVENT_EMIT_BATCH_MS, PLANMEND_EVENT_EMIT_QUEUE_MAX
events:
  batch_ms: 0        # 0 = deliver synchronously
  max_queue: 1000    # Oldest queued event is dropped past this size

# Local API server
server:
  host: 127.0.0.1
  port: 8430
  # cors_origins:
  #   - http://localhost:5173
"""


def _project_path(ctx: click.Context) -> Path:
    return ctx.obj["project"]


def _build_runtime(project: Path) -> RecoveryRuntime:
    config = PlanmendConfig.load(project)
    store = FeatureStore(max_backups=config.recovery.max_backups)
    history = EventHistoryStore.from_config(config.event_history)
    emitter = EventEmitter(batch_ms=0, max_queue=config.events.max_queue)
    return RecoveryRuntime(store=store, history=history, emitter=emitter, config=config.recovery)


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--project",
    "project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="PLANMEND_PROJECT",
    default=None,
    help="Project directory (defaults to the enclosing git repository)",
)
@click.pass_context
def main(ctx: click.Context, project: Path | None):
    """Planmend - Plan reconciliation and recovery for agent-driven features."""
    ctx.ensure_object(dict)
    ctx.obj["project"] = (project or get_repo_root()).resolve()


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def init(ctx: click.Context, force: bool):
    """Initialize Planmend in the project."""
    project = _project_path(ctx)
    click.echo(f"Initializing Planmend in: {project}")

    state_dir = ensure_state_dir(project)
    click.echo(f"  Created: {state_dir}")

    config_path = project / CONFIG_FILENAME
    if not config_path.exists() or force:
        config_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
        click.echo(f"  Created: {config_path}")
    else:
        click.echo(f"  Skipped: {config_path} (already exists)")

    click.echo("\nPlanmend initialized! Next steps:")
    click.echo("  1. Run: planmend report")
    click.echo("  2. Run: planmend serve")


@main.command()
@click.option("--all", "include_all", is_flag=True, help="Include features without issues")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def report(ctx: click.Context, include_all: bool, as_json: bool):
    """Show features that need recovery actions."""
    project = _project_path(ctx)
    runtime = _build_runtime(project)
    result = asyncio.run(runtime.recovery_report(project, include_all=include_all))

    if as_json:
        _echo_json(result.to_dict())
        return

    summary = result.summary
    if not result.items:
        click.echo("No features need recovery.")
        return

    click.echo(
        f"Recovery Report ({summary.total} with issues, "
        f"{summary.incomplete_plans} incomplete plans, "
        f"{summary.missing_files} missing files, "
        f"{summary.missing_outputs} missing outputs, "
        f"{summary.missing_dependencies} missing dependencies):\n"
    )
    for item in result.items:
        progress = ""
        if item.plan:
            progress = f" [{item.plan['tasksCompleted']}/{item.plan['tasksTotal']}]"
        click.echo(f"{item.feature_id}{progress} {item.title} ({item.status})")
        for issue in item.issues or ["none"]:
            click.echo(f"    - {issue}")
        if item.missing_files:
            click.echo(f"    Missing: {', '.join(item.missing_files)}")
        if item.dependency_restore_candidates:
            click.echo(f"    Restorable deps: {', '.join(item.dependency_restore_candidates)}")


@main.command()
@click.argument("feature_id")
@click.option("--no-rebuild", is_flag=True, help="Do not rewrite the agent output")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def reconcile(ctx: click.Context, feature_id: str, no_rebuild: bool, as_json: bool):
    """Reconcile a feature's plan with the filesystem."""
    project = _project_path(ctx)
    runtime = _build_runtime(project)
    try:
        result = runtime.reconcile_plan(project, feature_id, rebuild_output=not no_rebuild)
    except (FeatureNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        _echo_json(result)
        return

    reconciled = result["reconciled"]
    if reconciled is None:
        click.echo(f"{feature_id}: no plan tasks to reconcile.")
        return
    click.echo(f"{feature_id}: {reconciled['tasksCompleted']}/{reconciled['tasksTotal']} tasks completed")
    if reconciled["currentTaskId"]:
        click.echo(f"  Current task: {reconciled['currentTaskId']}")
    for path in reconciled["missingFiles"]:
        click.echo(f"  Missing: {path}")
    if reconciled["statusAdjusted"]:
        click.echo(f"  Status reset to {result['feature']['status']}")


@main.command()
@click.argument("feature_id")
@click.pass_context
def rebuild(ctx: click.Context, feature_id: str):
    """Rebuild a feature's agent output from the filesystem."""
    project = _project_path(ctx)
    runtime = _build_runtime(project)
    try:
        result = runtime.rebuild_output(project, feature_id)
    except (FeatureNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(result["content"])


@main.command()
@click.argument("feature_id")
@click.pass_context
def resume(ctx: click.Context, feature_id: str):
    """Request a resume of a feature's pending tasks."""
    project = _project_path(ctx)
    runtime = _build_runtime(project)
    try:
        result = runtime.resume_pending(project, feature_id)
    except (FeatureNotFoundError, NoOpError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    reconciled = result["reconciled"]
    click.echo(
        f"Resume requested for {feature_id}: "
        f"{reconciled['tasksTotal'] - reconciled['tasksCompleted']} pending tasks, "
        f"next {reconciled['currentTaskId']}"
    )


@main.command("restore-deps")
@click.argument("feature_ids", nargs=-1)
@click.option("--dry-run", is_flag=True, help="Only show what would be restored")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def restore_deps(ctx: click.Context, feature_ids: tuple[str, ...], dry_run: bool, as_json: bool):
    """Restore dependencies lost from feature records (all features by default)."""
    project = _project_path(ctx)
    runtime = _build_runtime(project)
    result = runtime.restore_dependencies(project, feature_ids=list(feature_ids) or None, dry_run=dry_run)

    if as_json:
        _echo_json(result)
        return

    verb = "Would restore" if dry_run else "Restored"
    for entry in result["results"]:
        restored = entry["restoredDependencies"]
        if restored:
            click.echo(f"{entry['featureId']}: {verb.lower()} {', '.join(restored)}")
    summary = result["summary"]
    click.echo(f"Processed {summary['processed']} features; {verb.lower()} {summary['restoredCount']} dependencies.")


@main.command()
@click.argument("feature_id")
@click.option("--files", "include_files", is_flag=True, help="Include file activity from agent output")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def timeline(ctx: click.Context, feature_id: str, include_files: bool, as_json: bool):
    """Show a feature's execution timeline."""
    project = _project_path(ctx)
    runtime = _build_runtime(project)
    try:
        entries = runtime.timeline(project, feature_id, include_file_activity=include_files)
    except (FeatureNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        _echo_json([entry.to_dict() for entry in entries])
        return
    if not entries:
        click.echo("No timeline entries.")
        return
    for entry in entries:
        detail = f" - {entry.detail}" if entry.detail else ""
        click.echo(f"{entry.timestamp}  {entry.title}{detail}")


@main.group(name="events")
def events_group() -> None:
    """Event history commands."""


@events_group.command("list")
@click.option("--trigger", default=None, help="Only events with this trigger")
@click.option("--feature", "feature_id", default=None, help="Only events for this feature")
@click.option("--since", default=None, help="ISO timestamp lower bound")
@click.option("--until", default=None, help="ISO timestamp upper bound")
@click.option("--limit", default=20, type=int, help="Number of events to show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def events_list(
    ctx: click.Context,
    trigger: str | None,
    feature_id: str | None,
    since: str | None,
    until: str | None,
    limit: int,
    as_json: bool,
):
    """List stored events, newest first."""
    project = _project_path(ctx)
    history = EventHistoryStore.from_config(PlanmendConfig.load(project).event_history)
    event_filter = EventFilter(trigger=trigger, feature_id=feature_id, since=since, until=until, limit=limit)
    events = history.list_events(project, event_filter)

    if as_json:
        _echo_json(events)
        return
    if not events:
        click.echo("No events found.")
        return
    total = history.count_events(project, event_filter)
    click.echo(f"Events ({len(events)} of {total}):\n")
    for event in events:
        feature = f" [{event['featureId']}]" if event.get("featureId") else ""
        click.echo(f"{event['timestamp']}  {event['trigger']}{feature}  {event['id']}")


@events_group.command("show")
@click.argument("event_id")
@click.pass_context
def events_show(ctx: click.Context, event_id: str):
    """Show one stored event."""
    project = _project_path(ctx)
    history = EventHistoryStore.from_config(PlanmendConfig.load(project).event_history)
    event = history.get_event(project, event_id)
    if event is None:
        raise click.ClickException(f"Event not found: {event_id}")
    _echo_json(event)


@events_group.command("clear")
@click.confirmation_option(prompt="Delete all stored events for this project?")
@click.pass_context
def events_clear(ctx: click.Context):
    """Delete all stored events."""
    project = _project_path(ctx)
    history = EventHistoryStore.from_config(PlanmendConfig.load(project).event_history)
    cleared = history.clear_events(project)
    click.echo(f"Cleared {cleared} events.")


@main.command()
@click.option("--host", default=None, help="Bind address (defaults to server.host)")
@click.option("--port", default=None, type=int, help="Port (defaults to server.port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None):
    """Run the local API server."""
    from .web.server import run_server

    project = _project_path(ctx)
    os.environ["PLANMEND_PROJECT"] = str(project)
    config = PlanmendConfig.load(project)
    host = host or config.server.host
    port = port or config.server.port
    click.echo(f"Serving planmend API on http://{host}:{port}")
    try:
        run_server(host=host, port=port)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
