from __future__ import annotations

import multiprocessing
import queue
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import age_job, create_brief

from brief_queue.orchestrator.briefs import BriefRepository
from brief_queue.orchestrator.models import FailOutcome, JobCreate, JobStatus, JobType
from brief_queue.orchestrator.repository import HEARTBEAT_LOST_ERROR, JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store Reliability"),
]


def _claim_in_process(  # pragma: no cover - executed in child process
    db_path: str,
    job_id: str,
    worker_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str]],
) -> None:
    repository = JobRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        claimed = repository.claim_job(job_id=job_id, worker_id=worker_id)
        result_queue.put((worker_id, "claimed" if claimed is not None else "lost"))
    except Exception as error:  # noqa: BLE001
        result_queue.put((worker_id, f"error: {error}"))
    finally:
        repository.close()


def _enqueue(
    jobs: JobRepository,
    brief_id: str,
    job_type: JobType = JobType.ANALYSIS,
    **kwargs,
):
    return jobs.create_job(JobCreate(brief_id=brief_id, job_type=job_type, **kwargs))


def test_claim_increments_attempts_and_records_events(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1", priority=5, metadata={"step": 1})
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.metadata == {"step": 1}

    claimed = jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
    assert claimed is not None
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at is not None
    assert claimed.heartbeat_at is not None

    assert jobs.complete_job(job_id=job.job_id, worker_id="worker-a", result={"ok": True}) is True
    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.COMPLETED
    assert details.job.result == {"ok": True}
    assert details.job.completed_at is not None
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "completed"]


def test_three_failures_exhaust_attempts(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1", max_attempts=3)

    outcomes = []
    for attempt in range(1, 4):
        claimed = jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
        assert claimed is not None
        assert claimed.attempts == attempt
        outcomes.append(
            jobs.fail_job(job_id=job.job_id, worker_id="worker-a", error=f"boom {attempt}"),
        )

    assert outcomes == [
        FailOutcome.RETRY_SCHEDULED,
        FailOutcome.RETRY_SCHEDULED,
        FailOutcome.FAILED,
    ]
    final = jobs.get_job(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.attempts == 3
    assert final.error == "boom 3"
    assert final.completed_at is not None
    assert jobs.claim_job(job_id=job.job_id, worker_id="worker-b") is None


def test_retry_keeps_last_error_and_releases_worker(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1", max_attempts=2)
    jobs.claim_job(job_id=job.job_id, worker_id="worker-a")

    outcome = jobs.fail_job(job_id=job.job_id, worker_id="worker-a", error="flaky")
    assert outcome == FailOutcome.RETRY_SCHEDULED
    pending = jobs.get_job(job_id=job.job_id)
    assert pending is not None
    assert pending.status == JobStatus.PENDING
    assert pending.error == "flaky"
    assert pending.worker_id is None
    assert pending.started_at is None
    assert [view.job_id for view in jobs.list_pending(limit=10)] == [job.job_id]


def test_terminal_failure_skips_remaining_attempts(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1", max_attempts=5)
    jobs.claim_job(job_id=job.job_id, worker_id="worker-a")

    outcome = jobs.fail_job(
        job_id=job.job_id,
        worker_id="worker-a",
        error="bad input",
        terminal=True,
    )
    assert outcome == FailOutcome.FAILED
    failed = jobs.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1


def test_claim_race_between_threads_has_single_winner(
    jobs: JobRepository,
    briefs: BriefRepository,
    db_path: Path,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1")

    start = threading.Event()
    results: queue.Queue[str | None] = queue.Queue()

    def _claim(worker_id: str) -> None:
        repository = JobRepository(db_path)
        try:
            start.wait(timeout=2)
            claimed = repository.claim_job(job_id=job.job_id, worker_id=worker_id)
            results.put(claimed.worker_id if claimed is not None else None)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim, args=(f"worker-{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    outcomes = [results.get_nowait() for _ in threads]
    winners = [worker_id for worker_id in outcomes if worker_id is not None]
    assert len(winners) == 1

    stored = jobs.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.attempts == 1
    assert stored.worker_id == winners[0]


def test_claim_race_between_processes_has_single_winner(
    jobs: JobRepository,
    briefs: BriefRepository,
    db_path: Path,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1")

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_in_process,
            args=(str(db_path), job.job_id, f"process-{index}", start_event, result_queue),
        )
        for index in range(2)
    ]
    for process in processes:
        process.start()
    start_event.set()
    outcomes = [result_queue.get(timeout=30) for _ in processes]
    for process in processes:
        process.join(timeout=30)

    statuses = sorted(status for _, status in outcomes)
    assert statuses == ["claimed", "lost"]
    stored = jobs.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PROCESSING
    assert stored.attempts == 1


def test_second_complete_is_not_applicable(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1")
    worker = "worker-a"
    jobs.claim_job(job_id=job.job_id, worker_id=worker)

    assert jobs.complete_job(job_id=job.job_id, worker_id=worker, result={"first": True}) is True
    assert jobs.complete_job(job_id=job.job_id, worker_id=worker, result={"second": True}) is False
    late = jobs.fail_job(job_id=job.job_id, worker_id=worker, error="late")
    assert late == FailOutcome.NOT_APPLICABLE

    stored = jobs.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.result == {"first": True}
    assert stored.error is None


def test_cancel_pending_job_prevents_claim(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1")

    assert jobs.cancel_job(job_id=job.job_id) is True
    assert jobs.claim_job(job_id=job.job_id, worker_id="worker-a") is None
    assert jobs.list_pending(limit=10) == []
    assert jobs.cancel_job(job_id=job.job_id) is False

    cancelled = jobs.get_job(job_id=job.job_id)
    assert cancelled is not None
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.completed_at is not None


def test_cancel_processing_job_discards_late_outcome(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1")
    worker = "worker-a"
    jobs.claim_job(job_id=job.job_id, worker_id=worker)

    assert jobs.cancel_job(job_id=job.job_id) is True
    assert jobs.complete_job(job_id=job.job_id, worker_id=worker, result={"late": True}) is False
    late = jobs.fail_job(job_id=job.job_id, worker_id=worker, error="late")
    assert late == FailOutcome.NOT_APPLICABLE

    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.CANCELLED
    assert details.job.result is None
    assert details.events[-1].event_type == "cancelled"
    assert details.events[-1].status_from == JobStatus.PROCESSING


def test_cancel_completed_job_is_not_applicable(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1")
    jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
    jobs.complete_job(job_id=job.job_id, worker_id="worker-a", result=None)

    assert jobs.cancel_job(job_id=job.job_id) is False
    stored = jobs.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED


def test_list_pending_orders_by_priority_then_age(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    low_old = _enqueue(jobs, "brief-1", priority=1)
    high = _enqueue(jobs, "brief-1", priority=10)
    low_new = _enqueue(jobs, "brief-1", priority=1)
    claimed = _enqueue(jobs, "brief-1", priority=100)
    jobs.claim_job(job_id=claimed.job_id, worker_id="worker-a")

    pending = jobs.list_pending(limit=10)
    assert [job.job_id for job in pending] == [high.job_id, low_old.job_id, low_new.job_id]
    assert [job.job_id for job in jobs.list_pending(limit=1)] == [high.job_id]
    assert jobs.list_pending(limit=0) == []


def test_create_jobs_is_all_or_nothing(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")

    with pytest.raises(ValueError, match="max_attempts"):
        jobs.create_jobs(
            [
                JobCreate(brief_id="brief-1", job_type=JobType.ANALYSIS),
                JobCreate(brief_id="brief-1", job_type=JobType.RENDER, max_attempts=0),
            ],
        )
    assert jobs.list_by_parent(brief_id="brief-1") == []


def test_unknown_job_type_is_rejected(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")

    with pytest.raises(ValueError, match="Unknown job type"):
        jobs.create_job(JobCreate(brief_id="brief-1", job_type="transcode"))  # type: ignore[arg-type]


def test_manual_retry_resets_attempt_budget(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1", max_attempts=1)
    jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
    outcome = jobs.fail_job(job_id=job.job_id, worker_id="worker-a", error="boom")
    assert outcome == FailOutcome.FAILED

    assert jobs.retry_job(job_id=job.job_id) is True
    retried = jobs.get_job(job_id=job.job_id)
    assert retried is not None
    assert retried.status == JobStatus.PENDING
    assert retried.attempts == 0
    assert retried.error is None
    assert retried.completed_at is None

    assert jobs.retry_job(job_id=job.job_id) is False
    reclaimed = jobs.claim_job(job_id=job.job_id, worker_id="worker-b")
    assert reclaimed is not None
    assert reclaimed.attempts == 1


def test_touch_jobs_only_refreshes_own_processing_jobs(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    mine = _enqueue(jobs, "brief-1")
    theirs = _enqueue(jobs, "brief-1")
    jobs.claim_job(job_id=mine.job_id, worker_id="worker-a")
    jobs.claim_job(job_id=theirs.job_id, worker_id="worker-b")
    age_job(jobs, mine.job_id, heartbeat_seconds=120)
    age_job(jobs, theirs.job_id, heartbeat_seconds=120)

    touched = jobs.touch_jobs(job_ids=[mine.job_id, theirs.job_id], worker_id="worker-a")
    assert touched == 1

    recovered = jobs.recover_stale_jobs(stale_after=timedelta(seconds=60))
    assert [job.job_id for job in recovered] == [theirs.job_id]


def test_recover_stale_jobs_requeues_or_fails(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    retryable = _enqueue(jobs, "brief-1", max_attempts=3)
    exhausted = _enqueue(jobs, "brief-1", max_attempts=1)
    fresh = _enqueue(jobs, "brief-1", max_attempts=3)
    for job in (retryable, exhausted, fresh):
        jobs.claim_job(job_id=job.job_id, worker_id="dead-worker")
    age_job(jobs, retryable.job_id, heartbeat_seconds=600)
    age_job(jobs, exhausted.job_id, heartbeat_seconds=600)

    recovered = {job.job_id: job for job in jobs.recover_stale_jobs(stale_after=timedelta(minutes=5))}

    assert set(recovered) == {retryable.job_id, exhausted.job_id}
    assert recovered[retryable.job_id].status == JobStatus.PENDING
    assert recovered[retryable.job_id].worker_id is None
    assert recovered[retryable.job_id].error == HEARTBEAT_LOST_ERROR
    assert recovered[exhausted.job_id].status == JobStatus.FAILED
    assert recovered[exhausted.job_id].error == HEARTBEAT_LOST_ERROR

    still_running = jobs.get_job(job_id=fresh.job_id)
    assert still_running is not None
    assert still_running.status == JobStatus.PROCESSING

    details = jobs.get_job_details(job_id=retryable.job_id)
    assert details is not None
    assert details.events[-1].event_type == "recovered"
    assert jobs.recover_stale_jobs(stale_after=timedelta(minutes=5)) == []


def test_recovered_job_ignores_outcomes_from_previous_holder(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    job = _enqueue(jobs, "brief-1", max_attempts=3)
    jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
    age_job(jobs, job.job_id, heartbeat_seconds=600)
    assert len(jobs.recover_stale_jobs(stale_after=timedelta(minutes=5))) == 1
    assert jobs.claim_job(job_id=job.job_id, worker_id="worker-b") is not None

    late = jobs.fail_job(job_id=job.job_id, worker_id="worker-a", error="late")
    assert late == FailOutcome.NOT_APPLICABLE
    assert jobs.complete_job(job_id=job.job_id, worker_id="worker-a", result={"late": True}) is False
    assert jobs.claim_job(job_id=job.job_id, worker_id="worker-c") is None

    held = jobs.get_job(job_id=job.job_id)
    assert held is not None
    assert held.status == JobStatus.PROCESSING
    assert held.worker_id == "worker-b"
    assert held.result is None

    assert jobs.complete_job(job_id=job.job_id, worker_id="worker-b", result={"ok": True}) is True
    completed = jobs.get_job(job_id=job.job_id)
    assert completed is not None
    assert completed.status == JobStatus.COMPLETED
    assert completed.result == {"ok": True}


def test_job_stats_groups_by_type_and_status(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    first = _enqueue(jobs, "brief-1", JobType.ANALYSIS)
    second = _enqueue(jobs, "brief-1", JobType.ANALYSIS)
    _enqueue(jobs, "brief-1", JobType.RENDER)
    for job in (first, second):
        jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
        jobs.complete_job(job_id=job.job_id, worker_id="worker-a", result={})

    stats = {(row.job_type, row.status): row for row in jobs.job_stats()}

    completed = stats[("analysis", JobStatus.COMPLETED)]
    assert completed.count == 2
    assert completed.max_attempts_used == 1
    assert completed.avg_duration_seconds is not None
    assert completed.avg_duration_seconds >= 0
    pending = stats[("render", JobStatus.PENDING)]
    assert pending.count == 1
    assert pending.avg_duration_seconds is None


def test_cleanup_removes_only_old_terminal_jobs(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    old_done = _enqueue(jobs, "brief-1")
    recent_done = _enqueue(jobs, "brief-1")
    old_pending = _enqueue(jobs, "brief-1")
    for job in (old_done, recent_done):
        jobs.claim_job(job_id=job.job_id, worker_id="worker-a")
        jobs.complete_job(job_id=job.job_id, worker_id="worker-a", result={})
    age_job(jobs, old_done.job_id, completed_seconds=10 * 86_400)

    assert jobs.cleanup_old_jobs(older_than=timedelta(days=7)) == 1
    remaining = {job.job_id for job in jobs.list_by_parent(brief_id="brief-1")}
    assert remaining == {recent_done.job_id, old_pending.job_id}


def test_delete_brief_cascades_to_jobs_and_events(
    jobs: JobRepository,
    briefs: BriefRepository,
) -> None:
    create_brief(briefs, "brief-1")
    create_brief(briefs, "brief-2")
    doomed = _enqueue(jobs, "brief-1")
    survivor = _enqueue(jobs, "brief-2")

    assert briefs.delete_brief(brief_id="brief-1") is True
    assert briefs.get_brief(brief_id="brief-1") is None
    assert jobs.get_job(job_id=doomed.job_id) is None
    assert jobs.get_job_details(job_id=doomed.job_id) is None
    assert jobs.get_job(job_id=survivor.job_id) is not None
    assert briefs.delete_brief(brief_id="brief-1") is False


def test_list_active_and_list_jobs_filters(jobs: JobRepository, briefs: BriefRepository) -> None:
    create_brief(briefs, "brief-1")
    running = _enqueue(jobs, "brief-1")
    waiting = _enqueue(jobs, "brief-1")
    jobs.claim_job(job_id=running.job_id, worker_id="worker-a")

    assert [job.job_id for job in jobs.list_active()] == [running.job_id]
    assert [job.job_id for job in jobs.list_jobs(status=JobStatus.PENDING)] == [waiting.job_id]
    assert len(jobs.list_jobs(limit=10)) == 2
