"""Persistent job store for the brief queue.

Every state transition is one conditional ``UPDATE`` guarded by the expected
current status and checked through ``rowcount``. Losing a race is reported as
a return value (``None``/``False``/``FailOutcome.NOT_APPLICABLE``), never as an
exception; only datastore faults raise.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from brief_queue.orchestrator.models import (
    TERMINAL_JOB_STATUSES,
    FailOutcome,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatsRow,
    JobStatus,
    JobView,
    parse_job_type,
)
from brief_queue.storage.alembic_runner import upgrade_head
from brief_queue.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from brief_queue.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

HEARTBEAT_LOST_ERROR = "Worker heartbeat lost"


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        return self.create_jobs([payload])[0]

    def create_jobs(self, payloads: Sequence[JobCreate]) -> list[JobView]:
        """Create pending jobs in one transaction; either all rows land or none."""

        if not payloads:
            return []
        now = to_db_datetime(utc_now())
        rows: list[Job] = []
        with Session(self.engine) as session:
            for payload in payloads:
                job_type = parse_job_type(payload.job_type)
                if payload.max_attempts < 1:
                    raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")
                row = Job(
                    job_id=payload.job_id or str(uuid4()),
                    brief_id=payload.brief_id,
                    job_type=job_type.value,
                    status=JobStatus.PENDING.value,
                    priority=payload.priority,
                    attempts=0,
                    max_attempts=payload.max_attempts,
                    metadata_json=dump_json(payload.metadata) if payload.metadata else None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                rows.append(row)
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="enqueued",
                    status_from=None,
                    status_to=JobStatus.PENDING,
                    details={
                        "job_type": job_type.value,
                        "priority": payload.priority,
                        "max_attempts": payload.max_attempts,
                    },
                )
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_job_view(row) for row in rows]

    def list_pending(self, *, limit: int) -> list[JobView]:
        """Snapshot of claimable jobs, highest priority first then oldest first."""

        if limit <= 0:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.PENDING.value,
                    col(Job.attempts) < col(Job.max_attempts),
                )
                .order_by(col(Job.priority).desc(), col(Job.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def claim_job(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Atomically claim one pending job; ``None`` means another worker won."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                    col(Job.attempts) < col(Job.max_attempts),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=col(Job.attempts) + 1,
                    started_at=now,
                    heartbeat_at=now,
                    completed_at=None,
                    worker_id=worker_id,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            claimed = session.exec(select(Job).where(Job.job_id == job_id)).one()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.PROCESSING,
                details={"worker_id": worker_id, "attempt": claimed.attempts},
            )
            session.commit()
            session.refresh(claimed)
            return _to_job_view(claimed)

    def touch_jobs(self, *, job_ids: Sequence[str], worker_id: str) -> int:
        """Refresh heartbeat for jobs this worker still holds."""

        if not job_ids:
            return 0
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id).in_(list(job_ids)),
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.worker_id) == worker_id,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount

    def complete_job(self, *, job_id: str, worker_id: str, result: Any = None) -> bool:
        """Mark a job processing under ``worker_id`` as completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.worker_id) == worker_id,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=dump_json(result),
                    error=None,
                    completed_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        terminal: bool = False,
    ) -> FailOutcome:
        """Record a failed attempt.

        The job becomes terminally ``failed`` when ``terminal`` is set or its
        attempts are exhausted; otherwise it returns to ``pending`` for any
        worker to retry. Only applicable while the job is ``processing`` under
        ``worker_id``; a job recovered and re-claimed elsewhere is left alone.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            terminal_condition = (
                [] if terminal else [col(Job.attempts) >= col(Job.max_attempts)]
            )
            failed = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.worker_id) == worker_id,
                    *terminal_condition,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error=error,
                    completed_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if failed.rowcount == 1:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="failed",
                    status_from=JobStatus.PROCESSING,
                    status_to=JobStatus.FAILED,
                    details={"error": error, "terminal": terminal},
                )
                session.commit()
                return FailOutcome.FAILED

            requeued = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.worker_id) == worker_id,
                    col(Job.attempts) < col(Job.max_attempts),
                )
                .values(
                    status=JobStatus.PENDING.value,
                    error=error,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=now,
                ),
            )
            if requeued.rowcount != 1:
                session.rollback()
                return FailOutcome.NOT_APPLICABLE
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={"error": error},
            )
            session.commit()
            return FailOutcome.RETRY_SCHEDULED

    def cancel_job(self, *, job_id: str) -> bool:
        """Cancel a pending or processing job."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for previous in (JobStatus.PENDING, JobStatus.PROCESSING):
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == previous.value,
                    )
                    .values(
                        status=JobStatus.CANCELLED.value,
                        completed_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="cancelled",
                        status_from=previous,
                        status_to=JobStatus.CANCELLED,
                        details={},
                    )
                    session.commit()
                    return True
            session.rollback()
            return False

    def retry_job(self, *, job_id: str) -> bool:
        """Manual operator retry: re-queue a failed/cancelled job with fresh attempts."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for previous in (JobStatus.FAILED, JobStatus.CANCELLED):
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == previous.value,
                    )
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        error=None,
                        result_json=None,
                        started_at=None,
                        heartbeat_at=None,
                        completed_at=None,
                        worker_id=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="manual_retry",
                        status_from=previous,
                        status_to=JobStatus.PENDING,
                        details={},
                    )
                    session.commit()
                    return True
            session.rollback()
            return False

    def recover_stale_jobs(self, *, stale_after: timedelta) -> list[JobView]:
        """Return jobs whose worker stopped heart-beating to the queue."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            candidates = session.exec(
                select(Job.job_id).where(
                    Job.status == JobStatus.PROCESSING.value,
                    col(Job.heartbeat_at) < cutoff,
                ),
            ).all()

        recovered: list[JobView] = []
        for job_id in candidates:
            view = self._recover_one(job_id=job_id, cutoff=cutoff)
            if view is not None:
                recovered.append(view)
        if recovered:
            logger.warning("Recovered %d stale processing job(s)", len(recovered))
        return recovered

    def _recover_one(self, *, job_id: str, cutoff: datetime) -> JobView | None:
        now = to_db_datetime(utc_now())
        stale_condition = (
            col(Job.job_id) == job_id,
            col(Job.status) == JobStatus.PROCESSING.value,
            col(Job.heartbeat_at) < cutoff,
        )
        with Session(self.engine) as session:
            status_to = JobStatus.FAILED
            result = session.exec(
                sa_update(Job)
                .where(*stale_condition, col(Job.attempts) >= col(Job.max_attempts))
                .values(
                    status=JobStatus.FAILED.value,
                    error=HEARTBEAT_LOST_ERROR,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                status_to = JobStatus.PENDING
                result = session.exec(
                    sa_update(Job)
                    .where(*stale_condition, col(Job.attempts) < col(Job.max_attempts))
                    .values(
                        status=JobStatus.PENDING.value,
                        error=HEARTBEAT_LOST_ERROR,
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        updated_at=now,
                    ),
                )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="recovered",
                status_from=JobStatus.PROCESSING,
                status_to=status_to,
                details={"reason": "heartbeat_stale"},
            )
            session.commit()
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            return _to_job_view(row)

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_by_parent(self, *, brief_id: str) -> list[JobView]:
        """All jobs of one brief in creation order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.brief_id == brief_id)
                .order_by(col(Job.created_at).asc(), col(Job.priority).desc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_active(self) -> list[JobView]:
        """Jobs currently held by some worker."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.status == JobStatus.PROCESSING.value)
                .order_by(col(Job.started_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def job_stats(self) -> list[JobStatsRow]:
        """Counts, mean processing time and deepest attempt per (type, status)."""

        duration_seconds = (
            func.julianday(col(Job.completed_at)) - func.julianday(col(Job.started_at))
        ) * 86_400.0
        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    Job.job_type,
                    Job.status,
                    func.count(),
                    func.avg(duration_seconds),
                    func.max(Job.attempts),
                )
                .group_by(Job.job_type, Job.status)
                .order_by(Job.job_type, Job.status),
            ).all()
        return [
            JobStatsRow(
                job_type=job_type,
                status=JobStatus(status),
                count=int(count),
                avg_duration_seconds=float(avg) if avg is not None else None,
                max_attempts_used=int(max_attempts or 0),
            )
            for job_type, status, count, avg, max_attempts in rows
        ]

    def cleanup_old_jobs(self, *, older_than: timedelta) -> int:
        """Delete terminal jobs finished before the cutoff."""

        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.status).in_([status.value for status in TERMINAL_JOB_STATUSES]),
                    col(Job.completed_at) < cutoff,
                ),
            )
            session.commit()
            deleted = result.rowcount
        if deleted:
            logger.info("Deleted %d terminal job(s) finished before %s", deleted, cutoff)
        return deleted

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        brief_id=row.brief_id,
        job_type=row.job_type,
        status=JobStatus(row.status),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        error=row.error,
        result=load_json(row.result_json),
        metadata=load_json_object(row.metadata_json),
        worker_id=row.worker_id,
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
