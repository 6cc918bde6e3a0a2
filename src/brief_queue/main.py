"""CLI entrypoint for brief-queue."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

import rich_click as click

from brief_queue import __version__
from brief_queue.config import Settings
from brief_queue.orchestrator.controllers import (
    BriefCreateCommand,
    BriefRefCommand,
    BriefSubmitCommand,
    JobCleanupCommand,
    JobListCommand,
    JobRecoverCommand,
    JobRefCommand,
    QueueCliController,
    QueueStatsCommand,
    WorkerCommand,
)
from brief_queue.orchestrator.models import JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"

_JOB_TYPE_CHOICE = click.Choice([job_type.value for job_type in JobType], case_sensitive=False)
_JOB_STATUS_CHOICE = click.Choice([status.value for status in JobStatus], case_sensitive=False)


def _db_path_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path (defaults to BRIEF_QUEUE_DB_PATH).",
    )(func)


def _usage_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Report invalid input as a CLI error instead of a traceback."""

    @wraps(func)
    def _wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValueError as error:
            raise click.ClickException(str(error)) from error

    return _wrapper


@click.group()
@click.version_option(version=__version__, prog_name="brief-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to BRIEF_QUEUE_LOG_LEVEL or INFO).",
)
def brief_queue(log_level: str | None) -> None:
    """Brief job queue CLI.

    Create briefs, attach job pipelines, run workers and inspect the queue.
    """

    level = getattr(logging, log_level.upper()) if log_level else _env_logging_level()
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


@brief_queue.group()
def brief() -> None:
    """Brief commands."""


@brief.command("create")
@_db_path_option
@click.option("--brief-id", default=None, help="Brief id (generated when omitted).")
@click.option("--external-ref", default=None, help="Reference to the brief in an upstream system.")
@click.option(
    "--media-type",
    type=click.Choice(["video", "image", "audio", "text"], case_sensitive=False),
    default=None,
    help="Media type stored in the request; picks the default pipeline.",
)
@click.option("--request-json", default=None, help="Opaque brief request as a JSON object.")
@_usage_errors
def brief_create(
    db_path: Path | None,
    brief_id: str | None,
    external_ref: str | None,
    media_type: str | None,
    request_json: str | None,
) -> None:
    """Create a brief in `analyzed` status."""

    _emit_lines(
        QUEUE_CONTROLLER.create_brief(
            BriefCreateCommand(
                db_path=db_path,
                brief_id=brief_id,
                external_ref=external_ref,
                media_type=media_type.lower() if media_type is not None else None,
                request_json=request_json,
            ),
        ),
    )


@brief.command("show")
@_db_path_option
@click.option("--brief-id", required=True, help="Brief id.")
@_usage_errors
def brief_show(db_path: Path | None, brief_id: str) -> None:
    """Show a brief with its jobs."""

    _emit_lines(QUEUE_CONTROLLER.show_brief(BriefRefCommand(db_path=db_path, brief_id=brief_id)))


@brief.command("submit")
@_db_path_option
@click.option("--brief-id", required=True, help="Brief id.")
@click.option(
    "--job-type",
    "job_types",
    multiple=True,
    type=_JOB_TYPE_CHOICE,
    help="Pipeline stage in execution order. Can be repeated.",
)
@click.option(
    "--media-type",
    type=click.Choice(["video", "image", "audio", "text"], case_sensitive=False),
    default=None,
    help="Use the preset pipeline for this media type when no --job-type is given.",
)
@click.option(
    "--priority",
    type=int,
    default=0,
    show_default=True,
    help="Base priority; higher runs first, earlier stages get a bonus.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Attempts per job including the first run (defaults to BRIEF_QUEUE_DEFAULT_MAX_ATTEMPTS).",
)
@_usage_errors
def brief_submit(  # noqa: PLR0913
    db_path: Path | None,
    brief_id: str,
    job_types: tuple[str, ...],
    media_type: str | None,
    priority: int,
    max_attempts: int | None,
) -> None:
    """Attach a job pipeline to a brief."""

    _emit_lines(
        QUEUE_CONTROLLER.submit(
            BriefSubmitCommand(
                db_path=db_path,
                brief_id=brief_id,
                job_types=tuple(job_type.lower() for job_type in job_types),
                media_type=media_type.lower() if media_type is not None else None,
                priority=priority,
                max_attempts=max_attempts,
            ),
        ),
    )


@brief.command("delete")
@_db_path_option
@click.option("--brief-id", required=True, help="Brief id.")
@_usage_errors
def brief_delete(db_path: Path | None, brief_id: str) -> None:
    """Delete a brief together with its jobs."""

    _emit_lines(
        QUEUE_CONTROLLER.delete_brief(BriefRefCommand(db_path=db_path, brief_id=brief_id)),
    )


@brief_queue.group()
def jobs() -> None:
    """Job queue inspection and control commands."""


@jobs.command("list")
@_db_path_option
@click.option("--status", type=_JOB_STATUS_CHOICE, default=None, help="Optional status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
@_usage_errors
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        QUEUE_CONTROLLER.list_jobs(JobListCommand(db_path=db_path, status=status, limit=limit)),
    )


@jobs.command("active")
@_db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
@_usage_errors
def jobs_active(db_path: Path | None, limit: int) -> None:
    """List jobs currently held by a worker."""

    _emit_lines(
        QUEUE_CONTROLLER.list_active(JobListCommand(db_path=db_path, status=None, limit=limit)),
    )


@jobs.command("inspect")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
@_usage_errors
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _emit_lines(QUEUE_CONTROLLER.inspect_job(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
@_usage_errors
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending or processing job."""

    _emit_lines(QUEUE_CONTROLLER.cancel_job(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
@_usage_errors
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Manually re-queue a failed or cancelled job with a fresh attempt budget."""

    _emit_lines(QUEUE_CONTROLLER.retry_job(JobRefCommand(db_path=db_path, job_id=job_id)))


@jobs.command("stats")
@_db_path_option
@_usage_errors
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts and durations per type and status."""

    _emit_lines(QUEUE_CONTROLLER.stats(QueueStatsCommand(db_path=db_path)))


@jobs.command("cleanup")
@_db_path_option
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window (defaults to BRIEF_QUEUE_RETENTION_DAYS).",
)
@_usage_errors
def jobs_cleanup(db_path: Path | None, older_than_days: int | None) -> None:
    """Delete completed, failed and cancelled jobs finished before the window."""

    _emit_lines(
        QUEUE_CONTROLLER.cleanup(
            JobCleanupCommand(db_path=db_path, older_than_days=older_than_days),
        ),
    )


@jobs.command("recover")
@_db_path_option
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=600,
    show_default=True,
    help="Processing jobs without a heartbeat for this long are reclaimed.",
)
@_usage_errors
def jobs_recover(db_path: Path | None, stale_after_seconds: int) -> None:
    """Return jobs abandoned by dead workers to the queue."""

    _emit_lines(
        QUEUE_CONTROLLER.recover(
            JobRecoverCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@brief_queue.command("worker")
@_db_path_option
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Exit once the queue is drained, or poll until SIGINT/SIGTERM.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Max jobs in flight (defaults to BRIEF_QUEUE_WORKER_CONCURRENCY).",
)
@_usage_errors
def worker(db_path: Path | None, until_idle: bool, concurrency: int | None) -> None:
    """Run a queue worker with the built-in demo processors."""

    _emit_lines(
        QUEUE_CONTROLLER.run_worker(
            WorkerCommand(db_path=db_path, until_idle=until_idle, concurrency=concurrency),
        ),
    )


def _env_logging_level() -> int:
    try:
        return Settings.from_env().logging_level
    except ValueError:
        return logging.INFO


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    brief_queue()
