"""
buildbox — CLI entrypoint.

Usage:
    buildbox --help
    buildbox run
    buildbox run --local --dry-run
    python -m buildbox.main plan --dir ./services/api
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from buildbox import __version__
from buildbox.core.config.loader import RunSettings, find_definition, settings_from_env
from buildbox.core.observability.logging_config import setup_logging


def _settings(ctx: click.Context) -> RunSettings:
    return ctx.obj.get("settings") or RunSettings()


@click.group()
@click.version_option(version=__version__, prog_name="buildbox")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool) -> None:
    """buildbox — run build definitions in warm, sandboxed containers."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug

    # Environment is read here, once, and passed down explicitly
    settings = settings_from_env()
    ctx.obj["settings"] = settings

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = settings.log_level or "WARNING"

    setup_logging(
        level=level,
        log_file=settings.log_file,
        log_file_level=settings.log_file_level,
    )


# ── run ─────────────────────────────────────────────────────────


def _consent_prompt(operations: list[str]) -> str:
    """Ask whether to mount the engine socket. Returns once/always/decline."""
    click.secho("\n⚠️  Docker-in-Docker access required by:", fg="yellow", bold=True, err=True)
    for op in operations:
        click.echo(f"   • {op}", err=True)
    click.echo("   This mounts the host Docker socket into the build sandbox.", err=True)
    answer = click.prompt(
        "   Enable? (y)es for this run, (a)lways for this project, (n)o",
        type=click.Choice(["y", "a", "n"], case_sensitive=False),
        default="y",
        err=True,
    )
    return {"y": "once", "a": "always"}.get(answer.lower(), "decline")


def _resolve_definition(project_dir: str | None, file: str | None) -> tuple[Path | None, Path | None]:
    directory = Path(project_dir) if project_dir else None
    definition = None
    if file:
        definition = Path(file)
        if not definition.is_absolute() and directory is not None and not definition.exists():
            definition = directory / definition
    return directory, definition


@cli.command()
@click.option("--dir", "project_dir", type=click.Path(file_okay=False), default=None,
              help="Project directory (default: search upward from cwd).")
@click.option("--file", "-f", "file", type=click.Path(dir_okay=False), default=None,
              help="Build definition file (default: build.yml).")
@click.option("--local", is_flag=True, help="Run steps on the host instead of a sandbox.")
@click.option("--mock", is_flag=True, help="Use the mock executor (no real execution).")
@click.option("--cold", is_flag=True, help="Discard the warm sandbox and start fresh.")
@click.option("--dind", is_flag=True, help="Grant Docker-in-Docker access for this run.")
@click.option("--image", default=None, help="Sandbox image (overrides build.yml and buildbox.yml).")
@click.option("--dry-run", is_flag=True, help="Walk the plan without executing anything.")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Answer yes to the DIND prompt.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    project_dir: str | None,
    file: str | None,
    local: bool,
    mock: bool,
    cold: bool,
    dind: bool,
    image: str | None,
    dry_run: bool,
    assume_yes: bool,
    as_json: bool,
) -> None:
    """Run the build definition.

    Examples:

        buildbox run

        buildbox run --local

        buildbox run --cold --dind --image node:20
    """
    from buildbox.adapters.registry import ExecutionMode
    from buildbox.core.engine.runner import format_summary
    from buildbox.core.observability.events import EventBus, LoggingSubscriber
    from buildbox.core.use_cases.run import BuildRequest, run_build

    if local and mock:
        raise click.UsageError("--local and --mock are mutually exclusive")

    mode = ExecutionMode.MOCK if mock else ExecutionMode.HOST if local else ExecutionMode.CONTAINER
    directory, definition = _resolve_definition(project_dir, file)

    if assume_yes:
        prompt = lambda _ops: "once"  # noqa: E731
    elif not as_json and sys.stdin.isatty():
        prompt = _consent_prompt
    else:
        prompt = None

    events = EventBus()
    if not as_json:
        events.subscribe(LoggingSubscriber())

    outcome = run_build(
        BuildRequest(
            project_dir=directory,
            definition=definition,
            mode=mode,
            cold=cold,
            dind=dind,
            image=image,
            dry_run=dry_run,
        ),
        settings=_settings(ctx),
        prompt=prompt,
        events=events,
    )

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), indent=2))
        sys.exit(outcome.exit_code)

    if outcome.result is None:
        click.secho(f"❌ {outcome.error}", fg="red", err=True)
        sys.exit(outcome.exit_code)

    result = outcome.result
    if not ctx.obj.get("quiet"):
        mode_label = "[dry-run] " if dry_run else f"[{mode}] "
        click.echo()
        click.secho(f"⚡ {mode_label}{outcome.definition_path}", fg="cyan", bold=True)
        if outcome.container_id:
            click.echo(f"   Sandbox: {outcome.container_id[:12]} ({outcome.image})")
        if outcome.decision and outcome.decision.granted:
            click.echo(f"   Docker-in-Docker: {outcome.decision}")
        click.echo()
        click.echo(format_summary(result))
        click.echo()

    if result.success:
        click.secho("✅ Build succeeded", fg="green", bold=True)
    else:
        click.secho("❌ Build failed", fg="red", bold=True)
        sys.exit(outcome.exit_code)


# ── plan / scan ─────────────────────────────────────────────────


@cli.command()
@click.option("--dir", "project_dir", type=click.Path(file_okay=False), default=None,
              help="Project directory (default: search upward from cwd).")
@click.option("--file", "-f", "file", type=click.Path(dir_okay=False), default=None,
              help="Build definition file (default: build.yml).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def plan(project_dir: str | None, file: str | None, as_json: bool) -> None:
    """Print the step plan without executing it."""
    from buildbox.core.use_cases.run import BuildOutcome, BuildRequest, prepare_build

    directory, definition = _resolve_definition(project_dir, file)
    outcome = BuildOutcome()
    prepared = prepare_build(BuildRequest(project_dir=directory, definition=definition), outcome)

    if prepared is None:
        if as_json:
            click.echo(json.dumps({"error": outcome.error}, indent=2))
        else:
            click.secho(f"❌ {outcome.error}", fg="red", err=True)
        sys.exit(outcome.exit_code)

    requires = outcome.scan.requires_privileged if outcome.scan else False
    if as_json:
        click.echo(json.dumps({
            "definition": str(outcome.definition_path),
            "steps": outcome.plan,
            "requires_privileged": requires,
        }, indent=2))
        return

    click.secho(f"\n📋 {outcome.definition_path}", fg="cyan", bold=True)
    if not outcome.plan:
        click.echo("   (no steps)")
    for index, name in enumerate(outcome.plan, start=1):
        click.echo(f"   {index:>2}. {name}")
    if requires:
        click.secho("\n   Requires Docker-in-Docker access (see 'buildbox scan')", fg="yellow")
    click.echo()


@cli.command()
@click.option("--dir", "project_dir", type=click.Path(file_okay=False), default=None,
              help="Project directory (default: search upward from cwd).")
@click.option("--file", "-f", "file", type=click.Path(dir_okay=False), default=None,
              help="Build definition file (default: build.yml).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def scan(project_dir: str | None, file: str | None, as_json: bool) -> None:
    """Report whether the build needs Docker-in-Docker access, and why."""
    from buildbox.core.use_cases.run import BuildOutcome, BuildRequest, prepare_build

    directory, definition = _resolve_definition(project_dir, file)
    outcome = BuildOutcome()
    prepared = prepare_build(BuildRequest(project_dir=directory, definition=definition), outcome)

    if prepared is None:
        if as_json:
            click.echo(json.dumps({"error": outcome.error}, indent=2))
        else:
            click.secho(f"❌ {outcome.error}", fg="red", err=True)
        sys.exit(outcome.exit_code)

    report = prepared.scan
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    if not report.requires_privileged:
        click.secho("✅ No Docker-in-Docker access required", fg="green")
    else:
        click.secho("⚠️  Docker-in-Docker access required", fg="yellow", bold=True)
        if report.direct_reasons:
            click.echo("   Direct:")
            for reason in report.direct_reasons:
                click.echo(f"     • {reason}")
        if report.transitive_reasons:
            click.echo("   Through nested builds:")
            for reason in report.transitive_reasons:
                click.echo(f"     • {reason}")
    for missing in report.unreadable:
        click.secho(f"   (could not read {missing})", fg="yellow")
    click.echo(f"   Scanned: {', '.join(report.scanned) or '-'}")


# ── clean / history ─────────────────────────────────────────────


@cli.command()
@click.option("--dir", "project_dir", type=click.Path(file_okay=False), default=None,
              help="Project directory (default: search upward from cwd).")
@click.option("--container", "remove_container", is_flag=True, help="Remove the warm sandbox (default).")
@click.option("--artifacts", is_flag=True, help="Empty artifacts/ inside running sandboxes.")
@click.option("--all", "all_projects", is_flag=True, help="Remove every buildbox sandbox.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def clean(
    project_dir: str | None,
    remove_container: bool,
    artifacts: bool,
    all_projects: bool,
    as_json: bool,
) -> None:
    """Remove warm sandboxes or their artifacts."""
    from buildbox.core.use_cases.clean import clean_project

    root = _project_root(project_dir)
    containers = remove_container or all_projects or not artifacts
    result = clean_project(root, containers=containers, artifacts=artifacts, all_projects=all_projects)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.ok else 3)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(3)

    for name in result.removed:
        click.secho(f"   🗑  removed {name}", fg="green")
    for name in result.cleaned:
        click.secho(f"   🧹 cleaned artifacts in {name}", fg="green")
    if not result.removed and not result.cleaned:
        click.echo("   Nothing to clean")


@cli.command()
@click.option("--dir", "project_dir", type=click.Path(file_okay=False), default=None,
              help="Project directory (default: search upward from cwd).")
@click.option("-n", "limit", default=10, type=int, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def history(project_dir: str | None, limit: int, as_json: bool) -> None:
    """Show recent runs from the run ledger."""
    from buildbox.core.persistence.ledger import RunLedger

    ledger = RunLedger(project_root=_project_root(project_dir))
    entries = ledger.read_recent(limit)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("   No runs recorded yet")
        return

    status_colors = {"completed": "green", "aborted": "red"}
    for entry in entries:
        when = entry.timestamp[:19].replace("T", " ")
        click.echo(f"   {when}  ", nl=False)
        click.secho(f"{entry.status:<9}", fg=status_colors.get(entry.status, "white"), nl=False)
        click.echo(
            f"  {entry.mode or '-':<9} {entry.steps_run}/{entry.steps_registered} steps"
            f"  {entry.duration_ms / 1000:.1f}s"
        )
        if entry.failed_step:
            click.echo(f"      ✗ {entry.failed_step}: {entry.error or ''}")
        elif entry.error:
            click.echo(f"      {entry.error}")


def _project_root(project_dir: str | None) -> Path:
    start = Path(project_dir) if project_dir else None
    definition = find_definition(start)
    if definition is not None:
        return definition.parent
    return (start or Path.cwd()).resolve()


if __name__ == "__main__":
    cli()
