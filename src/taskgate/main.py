"""CLI entrypoint for taskgate."""

import json
import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskgate import __version__
from taskgate.dispatch.controllers import (
    QueueAddCommand,
    QueueClearCommand,
    QueueCliController,
    QueueDispatchCommand,
    QueueRunCommand,
    QueueStatusCommand,
)
from taskgate.dispatch.errors import QueueError, QueueUnavailableError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()


@click.group()
@click.version_option(version=__version__, prog_name="taskgate")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug).")
def taskgate(verbose: int) -> None:
    """Gated task queue CLI."""

    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@taskgate.group()
def queue() -> None:
    """Queue admission, status and dispatch commands."""


@queue.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--payload",
    default="{}",
    show_default=True,
    help="Task payload as JSON.",
)
@click.option(
    "--count",
    type=click.IntRange(min=1, max=10_000),
    default=1,
    show_default=True,
    help="How many tasks to admit with the same payload.",
)
def queue_add(db_path: Path | None, payload: str, count: int) -> None:
    """Admit tasks into the pending queue."""

    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as error:
        raise click.BadParameter(
            f"Payload must be valid JSON: {error}",
            param_hint="--payload",
        ) from error
    _run_lines(
        lambda: QUEUE_CONTROLLER.add(
            QueueAddCommand(db_path=db_path, payload=decoded, count=count),
        ),
    )


@queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON instead of text.")
@click.option(
    "--tail",
    type=click.IntRange(min=0, max=10_000),
    default=None,
    help="How many recently finished tasks to include (defaults to TASKGATE_COMPLETED_TAIL).",
)
def queue_status(db_path: Path | None, as_json: bool, tail: int | None) -> None:
    """Show pending, in-flight and recently finished tasks with gate utilization."""

    _run_lines(
        lambda: QUEUE_CONTROLLER.status(
            QueueStatusCommand(db_path=db_path, as_json=as_json, tail=tail),
        ),
    )


@queue.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_clear(db_path: Path | None) -> None:
    """Reset the queue to its empty state."""

    _run_lines(lambda: QUEUE_CONTROLLER.clear(QueueClearCommand(db_path=db_path)))


@queue.command("dispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--task-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Simulated task duration (defaults to TASKGATE_TASK_DURATION_SECONDS).",
)
def queue_dispatch(db_path: Path | None, task_seconds: float | None) -> None:
    """Run exactly one dispatch turn in the foreground."""

    _run_lines(
        lambda: QUEUE_CONTROLLER.dispatch(
            QueueDispatchCommand(db_path=db_path, task_seconds=task_seconds),
        ),
    )


@queue.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=256),
    default=None,
    help="Dispatch worker threads (defaults to TASKGATE_RUNNER_WORKERS).",
)
@click.option(
    "--idle-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Exit after this long without activity (defaults to TASKGATE_RUNNER_IDLE_SECONDS).",
)
@click.option(
    "--task-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Simulated task duration (defaults to TASKGATE_TASK_DURATION_SECONDS).",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop claiming new tasks after this many seconds; running tasks still finish.",
)
def queue_run(
    db_path: Path | None,
    workers: int | None,
    idle_seconds: float | None,
    task_seconds: float | None,
    max_seconds: float | None,
) -> None:
    """Drain the queue with embedded dispatch workers."""

    _run_lines(
        lambda: QUEUE_CONTROLLER.run(
            QueueRunCommand(
                db_path=db_path,
                workers=workers,
                idle_seconds=idle_seconds,
                task_seconds=task_seconds,
                max_seconds=max_seconds,
            ),
        ),
    )


def _run_lines(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except QueueUnavailableError as error:
        raise click.ClickException(f"Queue temporarily unavailable: {error}") from error
    except QueueError as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskgate()
