"""Controllers for brief queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from brief_queue.config import Settings
from brief_queue.orchestrator.aggregation import StatusAggregator
from brief_queue.orchestrator.briefs import BriefRepository
from brief_queue.orchestrator.demo_processors import build_demo_registry
from brief_queue.orchestrator.models import BriefCreate, JobStatus, JobView
from brief_queue.orchestrator.repository import JobRepository
from brief_queue.orchestrator.services import QueueService
from brief_queue.orchestrator.worker import QueueWorker


@dataclass(slots=True)
class BriefCreateCommand:
    """CLI input for brief creation."""

    db_path: Path | None
    brief_id: str | None
    external_ref: str | None
    media_type: str | None
    request_json: str | None


@dataclass(slots=True)
class BriefRefCommand:
    """CLI input for commands addressing one brief."""

    db_path: Path | None
    brief_id: str


@dataclass(slots=True)
class BriefSubmitCommand:
    """CLI input for attaching a job pipeline to a brief."""

    db_path: Path | None
    brief_id: str
    job_types: tuple[str, ...]
    media_type: str | None
    priority: int
    max_attempts: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue statistics."""

    db_path: Path | None


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for inspect/retry/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobCleanupCommand:
    """CLI input for deleting old terminal jobs."""

    db_path: Path | None
    older_than_days: int | None


@dataclass(slots=True)
class JobRecoverCommand:
    """CLI input for one stale-heartbeat sweep."""

    db_path: Path | None
    stale_after_seconds: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    until_idle: bool
    concurrency: int | None = None
    max_idle_polls: int = 1


class QueueCliController:
    """Coordinates brief, job and worker CLI operations."""

    def create_brief(self, command: BriefCreateCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        request = _parse_request_json(command.request_json)
        if command.media_type:
            request["media_type"] = command.media_type
        with _repositories(settings) as (_, briefs):
            brief = briefs.create_brief(
                BriefCreate(
                    brief_id=command.brief_id,
                    external_ref=command.external_ref,
                    request=request,
                ),
            )
        return [f"Brief created: brief_id={brief.brief_id} status={brief.status.value}"]

    def show_brief(self, command: BriefRefCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, briefs):
            brief = briefs.get_brief(brief_id=command.brief_id)
            if brief is None:
                return [f"Brief not found: {command.brief_id}"]
            brief_jobs = jobs.list_by_parent(brief_id=command.brief_id)

        lines = [
            f"Brief: {brief.brief_id}",
            f"Status: {brief.status.value}",
            f"External ref: {brief.external_ref or '-'}",
            f"Request: {json.dumps(brief.request, ensure_ascii=False, sort_keys=True)}",
            f"Jobs: {len(brief_jobs)}",
        ]
        lines.extend(_job_line(job) for job in brief_jobs)
        return lines

    def submit(self, command: BriefSubmitCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, briefs):
            service = QueueService(
                jobs=jobs,
                briefs=briefs,
                default_max_attempts=settings.queue.default_max_attempts,
            )
            if command.job_types:
                job_ids = service.submit_pipeline(
                    command.brief_id,
                    command.job_types,
                    base_priority=command.priority,
                    max_attempts=command.max_attempts,
                )
            else:
                job_ids = service.attach_pipeline(
                    command.brief_id,
                    media_type=command.media_type,
                    base_priority=command.priority,
                    max_attempts=command.max_attempts,
                )
            submitted = [service.get_job(job_id) for job_id in job_ids]

        lines = [f"Jobs submitted for brief {command.brief_id}: {len(job_ids)}"]
        lines.extend(_job_line(job) for job in submitted if job is not None)
        return lines

    def delete_brief(self, command: BriefRefCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (_, briefs):
            deleted = briefs.delete_brief(brief_id=command.brief_id)
        if not deleted:
            raise ValueError(f"Brief not found: {command.brief_id}")
        return [f"Brief deleted with its jobs: {command.brief_id}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repositories(settings) as (jobs, _):
            rows = jobs.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(rows)}"]
        lines.extend(_job_line(job) for job in rows)
        return lines

    def list_active(self, command: JobListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            rows = jobs.list_active()[: command.limit]

        lines = [f"Active jobs: {len(rows)}"]
        for job in rows:
            heartbeat = job.heartbeat_at.isoformat() if job.heartbeat_at else "-"
            lines.append(f"{_job_line(job)} worker={job.worker_id or '-'} heartbeat={heartbeat}")
        return lines

    def inspect_job(self, command: JobRefCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            details = jobs.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Brief: {job.brief_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Worker: {job.worker_id or '-'}",
            f"Error: {job.error or '-'}",
            f"Result: {json.dumps(job.result, ensure_ascii=False, sort_keys=True, default=str)}",
            f"Metadata: {json.dumps(job.metadata, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_job(self, command: JobRefCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, briefs):
            service = QueueService(jobs=jobs, briefs=briefs)
            job = _require_job(service, command.job_id)
            if not service.cancel(command.job_id):
                raise ValueError(
                    f"Job {command.job_id} is {job.status.value}; "
                    "only pending or processing jobs can be cancelled.",
                )
        return [f"Job cancelled: {command.job_id}"]

    def retry_job(self, command: JobRefCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, briefs):
            service = QueueService(jobs=jobs, briefs=briefs)
            job = _require_job(service, command.job_id)
            if not service.retry(command.job_id):
                raise ValueError(
                    f"Job {command.job_id} is {job.status.value}; "
                    "only failed or cancelled jobs can be retried.",
                )
        return [f"Job re-queued: {command.job_id}"]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        """Show per (type, status) queue counts and durations."""

        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            rows = jobs.job_stats()

        lines = [f"Job groups: {len(rows)} (total jobs={sum(row.count for row in rows)})"]
        for row in rows:
            avg = (
                f"{row.avg_duration_seconds:.2f}s"
                if row.avg_duration_seconds is not None
                else "-"
            )
            lines.append(
                f"  {row.job_type}/{row.status.value} count={row.count} "
                f"avg_duration={avg} max_attempts_used={row.max_attempts_used}",
            )
        return lines

    def cleanup(self, command: JobCleanupCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        days = (
            command.older_than_days
            if command.older_than_days is not None
            else settings.queue.retention_days
        )
        with _repositories(settings) as (jobs, _):
            deleted = jobs.cleanup_old_jobs(older_than=timedelta(days=days))
        return [f"Deleted terminal jobs older than {days} day(s): {deleted}"]

    def recover(self, command: JobRecoverCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repositories(settings) as (jobs, briefs):
            recovered = jobs.recover_stale_jobs(
                stale_after=timedelta(seconds=command.stale_after_seconds),
            )
            aggregator = StatusAggregator(jobs=jobs, briefs=briefs)
            for brief_id in sorted({job.brief_id for job in recovered}):
                aggregator.refresh(brief_id)

        lines = [f"Recovered stale jobs: {len(recovered)}"]
        lines.extend(_job_line(job) for job in recovered)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        if command.concurrency is not None:
            settings.worker.concurrency = command.concurrency
        settings.validate_for_worker()
        worker_settings = settings.worker
        with _repositories(settings) as (jobs, briefs):
            worker = QueueWorker(
                repository=jobs,
                aggregator=StatusAggregator(jobs=jobs, briefs=briefs),
                registry=build_demo_registry(delay_seconds=worker_settings.demo_delay_seconds),
                worker_id=worker_settings.worker_id,
                concurrency=worker_settings.concurrency,
                poll_interval_seconds=worker_settings.poll_interval_seconds,
                job_timeout_seconds=worker_settings.job_timeout_seconds,
                shutdown_timeout_seconds=worker_settings.shutdown_timeout_seconds,
                stale_after_seconds=worker_settings.stale_after_seconds,
            )
            summary = worker.run_loop(
                max_idle_polls=command.max_idle_polls if command.until_idle else None,
            )

        return [
            "Worker summary: "
            f"worker_id={worker_settings.worker_id} claimed={summary.claimed} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"retried={summary.retried} timeouts={summary.timeouts} "
            f"discarded={summary.discarded} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls} abandoned={summary.abandoned}",
        ]


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _parse_request_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --request-json: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--request-json must be a JSON object.")
    return parsed


def _require_job(service: QueueService, job_id: str) -> JobView:
    job = service.get_job(job_id)
    if job is None:
        raise ValueError(f"Job not found: {job_id}")
    return job


def _job_line(job: JobView) -> str:
    return (
        f"  {job.job_id} brief={job.brief_id} type={job.job_type} "
        f"status={job.status.value} priority={job.priority} "
        f"attempts={job.attempts}/{job.max_attempts} error={job.error or '-'}"
    )


@contextmanager
def _repositories(settings: Settings) -> Iterator[tuple[JobRepository, BriefRepository]]:
    jobs = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    briefs = BriefRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    jobs.init_schema()
    try:
        yield jobs, briefs
    finally:
        briefs.close()
        jobs.close()
