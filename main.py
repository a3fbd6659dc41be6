"""Entry point for the Life Quest task engine.

Usage:
    python main.py --once                        # Run one due-check over all tasks
    python main.py --daemon                      # Keep checking on the configured interval
    python main.py --list                        # Show tasks and the character
    python main.py --complete <uuid>             # Complete a task and pay out rewards
    python main.py --complete <uuid> --next-due "2024-03-01 08:00:00"
    python main.py --once --verbose              # Verbose logging
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime

import click

from game.config import load_config
from game.core import LifeQuest
from game.errors import InvalidTransitionError, LifeQuestError
from progression import progress_ratio
from vault.models import Task, format_timestamp, parse_timestamp


def _setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=fmt, handlers=handlers)

    # Quiet down noisy libraries
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


class ClickPromptProvider:
    """Asks on the terminal when a manual task needs its next due time."""

    async def prompt_for_timestamp(self, task: Task) -> datetime | None:
        raw = click.prompt(
            f"Next due time for {task.title} (YYYY-MM-DD HH:MM:SS, blank to decide later)",
            default="",
            show_default=False,
        )
        if not raw.strip():
            return None
        try:
            return parse_timestamp(raw, "next due time")
        except LifeQuestError as exc:
            click.echo(f"  {exc}; leaving it for later.", err=True)
            return None


async def _run_once(game: LifeQuest) -> None:
    report = await game.tick()
    click.echo(f"\n  {report.summary()}\n")
    for line in report.errors:
        click.echo(f"  ! {line}", err=True)


async def _run_daemon(game: LifeQuest) -> None:
    click.echo("Life Quest is watching your tasks. Ctrl+C to stop.\n")
    await game.scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await game.scheduler.stop()


async def _list(game: LifeQuest) -> None:
    tasks, errors = game.refresher.list_tasks()
    for task in tasks:
        due = format_timestamp(task.next_due_at) or "-"
        click.echo(f"  [{task.status.value}] {task.title}  x{task.completion_count}  next={due}  ({task.uuid})")
    for exc in errors:
        click.echo(f"  ! {exc.doc_id}: {exc}", err=True)
    try:
        hero = game.character()
    except LifeQuestError as exc:
        click.echo(f"\n  Character: {exc}", err=True)
        return
    click.echo(
        f"\n  Lv.{hero.level}  {hero.current_experience}/{hero.experience_threshold}"
        f"  ({progress_ratio(hero):.0%})"
    )


async def _complete(game: LifeQuest, task_id: str, next_due: datetime | None) -> None:
    outcome = await game.complete(task_id, next_due=next_due)
    task = outcome.task
    click.echo(f"\n  Completed {task.title} (#{task.completion_count})")
    if outcome.rewards.replayed:
        click.echo("  Rewards for this completion were already paid out.")
    for app in outcome.rewards.applied:
        line = f"  + {app.rule.amount} {app.rule.label}"
        if app.level_after is not None and app.level_after > (app.level_before or 0):
            line += f"  (Lv.{app.level_before} -> Lv.{app.level_after})"
        click.echo(line)
    if outcome.needs_input:
        click.echo("  Next due time not set yet; supply one with --next-due.")
    else:
        click.echo(f"  Next due: {format_timestamp(outcome.next_due_at) or '-'}")
    for exc in outcome.errors:
        click.echo(f"  ! {exc}", err=True)


async def _supply(game: LifeQuest, task_id: str, next_due: datetime) -> None:
    task = await game.supply_next_due(task_id, next_due)
    click.echo(f"\n  {task.title} is next due {format_timestamp(task.next_due_at)}")


async def _run(cfg: dict, action: str, task_id: str, next_due: datetime | None, interactive: bool) -> None:
    prompt = ClickPromptProvider() if interactive else None
    async with LifeQuest(config=cfg, prompt=prompt) as game:
        if action == "once":
            await _run_once(game)
        elif action == "daemon":
            await _run_daemon(game)
        elif action == "list":
            await _list(game)
        elif action == "complete":
            await _complete(game, task_id, next_due)
        elif action == "supply":
            await _supply(game, task_id, next_due)


@click.command()
@click.option("--once", is_flag=True, help="Run one due-check and exit")
@click.option("--daemon", is_flag=True, help="Run due-checks continuously")
@click.option("--list", "list_tasks", is_flag=True, help="List tasks and the character")
@click.option("--complete", "complete_id", default=None, help="Complete the task with this uuid or note path")
@click.option("--next-due", default=None, help="Next due time for a manual-refresh task")
@click.option("--task", "task_id", default=None, help="Task whose next due time --next-due sets")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--config-dir", type=click.Path(), default=None, help="Config directory")
def main(
    once: bool,
    daemon: bool,
    list_tasks: bool,
    complete_id: str | None,
    next_due: str | None,
    task_id: str | None,
    verbose: bool,
    config_dir: str | None,
) -> None:
    """Life Quest - recurring tasks, rewards and levels over a markdown vault."""

    if complete_id:
        action, target = "complete", complete_id
    elif task_id and next_due:
        action, target = "supply", task_id
    elif once:
        action, target = "once", ""
    elif daemon:
        action, target = "daemon", ""
    elif list_tasks:
        action, target = "list", ""
    else:
        click.echo("Specify --once, --daemon, --list, --complete or --task with --next-due. Use --help for details.")
        sys.exit(1)

    try:
        due = parse_timestamp(next_due, "--next-due") if next_due else None
    except LifeQuestError as exc:
        click.echo(str(exc), err=True)
        sys.exit(2)

    cfg = load_config(config_dir)

    log_file = cfg.get("storage", {}).get("log_file")
    _setup_logging(verbose=verbose, log_file=log_file)

    try:
        asyncio.run(_run(cfg, action, target, due, interactive=action == "complete"))
    except InvalidTransitionError as exc:
        click.echo(f"Refused: {exc}", err=True)
        sys.exit(1)
    except (LifeQuestError, LookupError) as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nStopped.")


if __name__ == "__main__":
    main()
