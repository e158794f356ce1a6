"""CLI entrypoint for Concord."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from src.core.exceptions import ConcordError, StateNotFoundError
from src.core.models import Phase
from src.state.store import StateStore

_PHASES = [p.value for p in Phase if p != Phase.COMPLETE]


def _setup_logging(verbose: bool = False) -> None:
    """Apply logging configuration from config/default.yaml."""
    from src.core.config import load_config

    try:
        config = load_config()
        level_name = config.logging.level
        fmt = config.logging.format
    except ConcordError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _store(project_dir: Path) -> StateStore:
    from src.core.config import load_config

    try:
        config = load_config()
    except ConcordError as exc:
        raise click.ClickException(str(exc)) from exc
    return StateStore(project_dir, config.state)


def _echo_progress(message: str) -> None:
    if "APPROVED" in message or "ARBITRATED" in message:
        click.echo(click.style(message, fg="green", bold=True))
    elif "REJECTED" in message or "PAUSED" in message:
        click.echo(click.style(message, fg="red"))
    elif "[CONSENSUS]" in message:
        click.echo(click.style(message, fg="cyan"))
    else:
        click.echo(message)


_project_option = click.option(
    "--project-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project directory holding the .concord state.",
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Concord: multi-reviewer consensus for development plans."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose=verbose)


@cli.command("init")
@click.argument("name")
@click.option("--idea", default="", help="One-line description of the project.")
@click.option("--language", default="python", show_default=True)
@_project_option
def init(name: str, idea: str, language: str, project_dir: Path) -> None:
    """Create a new project state document."""
    store = _store(project_dir)
    try:
        state = store.create_project(name, idea=idea, language=language)
    except ConcordError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created project '{state.name}' ({state.id}) in {store.state_path}")


@cli.command("status")
@_project_option
def status(project_dir: Path) -> None:
    """Show phase, progress and the next task."""
    store = _store(project_dir)
    try:
        state = store.load()
    except StateNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc

    progress = store.get_progress()
    click.echo(click.style(f"Project: {state.name}", bold=True))
    click.echo(f"  Phase:           {progress['phase']}")
    click.echo(f"  Status:          {progress['status']}")
    click.echo(f"  Milestones:      {progress['completed_milestones']}/{progress['total_milestones']}")
    click.echo(
        f"  Tasks:           {progress['completed_tasks']}/{progress['total_tasks']} "
        f"({progress['percent_complete']}%)"
    )
    if progress["failed_tasks"]:
        click.echo(click.style(f"  Failed tasks:    {progress['failed_tasks']}", fg="red"))
    if progress["paused_tasks"]:
        click.echo(click.style(f"  Paused tasks:    {progress['paused_tasks']}", fg="yellow"))
    if state.error:
        click.echo(click.style(f"  Last error:      {state.error}", fg="yellow"))

    nxt = store.get_next_task()
    if nxt is not None:
        milestone, task = nxt
        click.echo(f"  Next task:       {task.name} ({task.id}, {milestone.name})")
    click.echo(f"  Consensus rounds recorded: {len(state.consensus_history)}")


@cli.command("verify")
@_project_option
@click.option("--fix", is_flag=True, default=False, help="Reset a falsely completed project.")
def verify(project_dir: Path, fix: bool) -> None:
    """Check that a project is genuinely complete."""
    from src.state.progress import read_plan, reset_incomplete_project, verify_project_completion

    store = _store(project_dir)
    try:
        state = store.load()
    except StateNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc

    result = verify_project_completion(state, read_plan(state, project_dir))
    click.echo(result.progress.summary)
    if result.is_complete:
        click.echo(click.style("Project is complete.", fg="green", bold=True))
        return

    for issue in result.issues:
        click.echo(click.style(f"  - {issue}", fg="yellow"))
    if fix:
        state = reset_incomplete_project(store)
        click.echo(f"Project reset to phase '{state.phase.value}'.")
    else:
        sys.exit(1)


@cli.command("review")
@click.argument("plan_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_project_option
@click.option("--context", "context_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Optional file with reviewer context.")
@click.option("--lineage", default="plan", show_default=True, help="Lineage id for checkpoints.")
@click.option("--parallel/--sequential", default=None, help="Override consensus.parallel_reviews.")
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the final plan here.")
def review(
    plan_path: Path,
    project_dir: Path,
    context_path: Optional[Path],
    lineage: str,
    parallel: Optional[bool],
    env: Optional[str],
    out_path: Optional[Path],
) -> None:
    """Run a plan file through multi-reviewer consensus."""
    from src.consensus.analysis import summarize_consensus_process
    from src.core.factory import ComponentFactory

    plan = plan_path.read_text(encoding="utf-8")
    context = context_path.read_text(encoding="utf-8") if context_path else ""

    try:
        bundle = ComponentFactory.create(project_dir, env=env, progress_callback=_echo_progress)
    except ConcordError as exc:
        raise click.ClickException(str(exc)) from exc
    if parallel is not None:
        bundle.consensus_loop.config = bundle.config.consensus.model_copy(update={"parallel_reviews": parallel})
    if not bundle.store.exists():
        bundle.store.create_project(project_dir.resolve().name)

    async def _run():
        try:
            return await bundle.consensus_loop.run(plan, context, lineage_id=lineage)
        finally:
            await ComponentFactory.close(bundle)

    try:
        outcome = asyncio.run(_run())
    except ConcordError as exc:
        raise click.ClickException(
            f"{exc}\nProgress is checkpointed; re-run the same command to resume."
        ) from exc

    click.echo()
    click.echo(summarize_consensus_process(outcome))
    if out_path is not None:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(outcome.final_plan, encoding="utf-8")
        click.echo(f"Wrote final plan to {out_path}")
    if not outcome.approved:
        sys.exit(1)


@cli.command("plan")
@_project_option
@click.option("--guidance", default="", help="Extra guidance appended to the planning context.")
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
def plan(project_dir: Path, guidance: str, env: Optional[str]) -> None:
    """Run the plan phase: specification, plan consensus and task breakdown."""
    from src.core.factory import ComponentFactory

    try:
        _store(project_dir).load()
        bundle = ComponentFactory.create(project_dir, env=env, progress_callback=_echo_progress)
    except ConcordError as exc:
        raise click.ClickException(str(exc)) from exc

    async def _run():
        try:
            return await bundle.plan_workflow.run(guidance)
        finally:
            await ComponentFactory.close(bundle)

    try:
        result = asyncio.run(_run())
    except ConcordError as exc:
        raise click.ClickException(
            f"{exc}\nProgress is checkpointed; re-run the same command to resume."
        ) from exc

    if result.missing_sections:
        click.echo(click.style(f"Plan has no {', '.join(result.missing_sections)} section(s)", fg="yellow"))
    for concern in result.concerns[:5]:
        click.echo(click.style(f"  - {concern}", fg="yellow"))
    if not result.success:
        click.echo(click.style(result.error or "Plan phase failed", fg="red"))
        sys.exit(1)
    click.echo(click.style(
        f"Plan approved: {result.milestone_count} milestone(s), {result.task_count} task(s). "
        "Project is in the execution phase.",
        fg="green", bold=True,
    ))


@cli.command("reset")
@click.option("--phase", type=click.Choice(_PHASES), required=True)
@_project_option
@click.confirmation_option(prompt="This rolls back project state (a backup is taken first). Continue?")
def reset(phase: str, project_dir: Path) -> None:
    """Roll the project back to a phase."""
    store = _store(project_dir)
    try:
        store.reset_to_phase(Phase(phase))
    except ConcordError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Project reset to phase '{phase}'.")


@cli.command("backups")
@_project_option
@click.option("--cleanup", "keep", type=int, default=None, help="Keep only the newest N backups.")
def backups(project_dir: Path, keep: Optional[int]) -> None:
    """List state backups, newest first."""
    store = _store(project_dir)
    if keep is not None:
        removed = store.cleanup_backups(keep)
        click.echo(f"Removed {removed} backup(s).")
    paths = store.list_backups()
    if not paths:
        click.echo("No backups.")
        return
    for path in paths:
        click.echo(f"  {path.name}")


@cli.command("restore")
@click.argument("backup", required=False)
@_project_option
def restore(backup: Optional[str], project_dir: Path) -> None:
    """Restore state from a backup (default: the newest)."""
    store = _store(project_dir)
    paths = store.list_backups()
    if backup:
        candidate = Path(backup)
        path = candidate if candidate.is_absolute() or candidate.exists() else store.backups_dir / backup
    elif paths:
        path = paths[0]
    else:
        raise click.ClickException("No backups to restore.")

    try:
        state = store.restore_from_backup(path)
    except ConcordError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored '{state.name}' from {path.name} (phase {state.phase.value}).")


def main() -> None:
    """Entry point used by `concord` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()
