"""Queue worker that polls the job store and runs claimed jobs concurrently."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from brief_queue.orchestrator.aggregation import StatusAggregator
from brief_queue.orchestrator.models import FailOutcome, JobView
from brief_queue.orchestrator.processors import Processor, ProcessorRegistry, TerminalJobError
from brief_queue.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

MIN_DRAIN_HEARTBEAT_SECONDS = 0.1


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    discarded: int = 0
    recovered: int = 0
    idle_polls: int = 0
    abandoned: int = 0


class JobTimeoutError(RuntimeError):
    """Processor did not finish within the per-job timeout."""


def call_with_timeout(processor: Processor, job: JobView, *, timeout_seconds: float) -> object:
    """Run ``processor(job)`` on its own thread and wait at most ``timeout_seconds``.

    A timed-out processor thread is not interrupted; it is a daemon and its
    eventual result is dropped.
    """

    future: Future[object] = Future()

    def _run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(processor(job))
        except Exception as error:  # noqa: BLE001
            future.set_exception(error)

    threading.Thread(
        target=_run,
        name=f"processor-{job.job_id[:8]}",
        daemon=True,
    ).start()
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as error:
        if future.done():
            raise
        raise JobTimeoutError(f"Job timeout after {timeout_seconds:g}s") from error


class QueueWorker:
    """Claims pending jobs up to a concurrency budget and dispatches them."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        aggregator: StatusAggregator,
        registry: ProcessorRegistry,
        worker_id: str,
        concurrency: int = 5,
        poll_interval_seconds: float = 3.0,
        job_timeout_seconds: float = 300.0,
        shutdown_timeout_seconds: float = 30.0,
        stale_after_seconds: int = 0,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"Worker concurrency must be >= 1, got {concurrency}")
        self.repository = repository
        self.aggregator = aggregator
        self.registry = registry
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self._in_flight: set[str] = set()
        self._in_flight_changed = threading.Condition()
        self._stop_requested = threading.Event()
        self._stop_signal_name: str | None = None
        self._summary = WorkerRunSummary()
        self._summary_lock = threading.Lock()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def in_flight_ids(self) -> frozenset[str]:
        with self._in_flight_changed:
            return frozenset(self._in_flight)

    def summary(self) -> WorkerRunSummary:
        with self._summary_lock:
            return replace(self._summary)

    def request_stop(self, *, reason: str = "manual") -> None:
        """Stop claiming new jobs; in-flight jobs keep running until drained."""

        if not self._stop_requested.is_set():
            logger.info(
                "Shutdown requested (%s), waiting for %d in-flight job(s)",
                reason,
                len(self.in_flight_ids()),
            )
        self._stop_signal_name = reason
        self._stop_requested.set()

    def poll_once(self) -> int:
        """Run one poll cycle and return how many jobs were dispatched."""

        if self._stop_requested.is_set():
            return 0
        self._recover_stale_jobs()
        self._heartbeat()

        available_slots = self.concurrency - len(self.in_flight_ids())
        if available_slots <= 0:
            return 0

        dispatched = 0
        for candidate in self.repository.list_pending(limit=available_slots):
            if self._stop_requested.is_set():
                break
            if candidate.job_id in self.in_flight_ids():
                continue
            claimed = self.repository.claim_job(job_id=candidate.job_id, worker_id=self.worker_id)
            if claimed is None:
                logger.debug("Job %s was claimed elsewhere or is no longer eligible", candidate.job_id)
                continue
            self._dispatch(claimed)
            dispatched += 1
        return dispatched

    def run_loop(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Poll until stopped, then drain in-flight jobs.

        Args:
            max_idle_polls: Return after this many consecutive cycles with
                nothing claimed and nothing in flight (None = run until a
                stop is requested).
        """

        logger.info(
            "Worker %s started (concurrency=%d poll_interval=%.2fs job_timeout=%.1fs)",
            self.worker_id,
            self.concurrency,
            self.poll_interval_seconds,
            self.job_timeout_seconds,
        )
        consecutive_idle = 0
        with self._signal_handlers():
            try:
                while not self._stop_requested.is_set():
                    # A job re-queued for retry may still hold its slot during the poll.
                    busy_before_poll = bool(self.in_flight_ids())
                    try:
                        dispatched = self.poll_once()
                    except SQLAlchemyError:
                        logger.exception("Poll cycle failed, will retry after poll interval")
                        dispatched = 0

                    if dispatched == 0 and not busy_before_poll and not self.in_flight_ids():
                        consecutive_idle += 1
                        self._count("idle_polls")
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                    else:
                        consecutive_idle = 0
                    self._stop_requested.wait(self.poll_interval_seconds)
            finally:
                self.drain(timeout_seconds=self.shutdown_timeout_seconds)

        summary = self.summary()
        logger.info(
            "Worker %s stopped: claimed=%d succeeded=%d failed=%d retried=%d timeouts=%d",
            self.worker_id,
            summary.claimed,
            summary.succeeded,
            summary.failed,
            summary.retried,
            summary.timeouts,
        )
        return summary

    def drain(self, *, timeout_seconds: float) -> bool:
        """Wait for in-flight jobs to finish; ``False`` if some are still running.

        Jobs still running keep their heartbeat fresh while the worker waits,
        so a stale sweep elsewhere does not re-queue them.
        """

        deadline = time.monotonic() + max(0.0, timeout_seconds)
        heartbeat_every = max(self.poll_interval_seconds, MIN_DRAIN_HEARTBEAT_SECONDS)
        while True:
            with self._in_flight_changed:
                drained = self._in_flight_changed.wait_for(
                    lambda: not self._in_flight,
                    timeout=max(0.0, min(heartbeat_every, deadline - time.monotonic())),
                )
                remaining = len(self._in_flight)
            if drained or time.monotonic() >= deadline:
                break
            try:
                self._heartbeat()
            except SQLAlchemyError:
                logger.exception("Heartbeat failed while draining %d job(s)", remaining)
        if not drained:
            logger.warning(
                "Shutdown timeout reached, %d job(s) still in flight stay processing",
                remaining,
            )
            with self._summary_lock:
                self._summary.abandoned = remaining
        return drained

    def _dispatch(self, job: JobView) -> None:
        with self._in_flight_changed:
            self._in_flight.add(job.job_id)
        self._count("claimed")
        thread = threading.Thread(
            target=self._run_job,
            args=(job,),
            name=f"job-{job.job_id[:8]}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError:
            self._release(job.job_id)
            raise

    def _run_job(self, job: JobView) -> None:
        started = time.monotonic()
        try:
            self._execute(job)
        except Exception:
            logger.exception("Unexpected error processing job %s", job.job_id)
        finally:
            self._release(job.job_id)
            logger.debug("Job %s released after %.2fs", job.job_id, time.monotonic() - started)

    def _execute(self, job: JobView) -> None:
        logger.info(
            "Starting job %s (%s) brief=%s attempt=%d/%d",
            job.job_id,
            job.job_type,
            job.brief_id,
            job.attempts,
            job.max_attempts,
        )
        processor = self.registry.get(job.job_type)
        if processor is None:
            self._record_failure(job, error=f"Unknown job type: {job.job_type}", terminal=True)
        else:
            try:
                result = call_with_timeout(
                    processor,
                    job,
                    timeout_seconds=self.job_timeout_seconds,
                )
            except JobTimeoutError as error:
                self._count("timeouts")
                self._record_failure(job, error=str(error))
            except TerminalJobError as error:
                self._record_failure(job, error=_error_message(error), terminal=True)
            except Exception as error:  # noqa: BLE001
                self._record_failure(job, error=_error_message(error))
            else:
                self._record_success(job, result)
        self.aggregator.refresh(job.brief_id)

    def _record_success(self, job: JobView, result: object) -> None:
        try:
            completed = self.repository.complete_job(
                job_id=job.job_id,
                worker_id=self.worker_id,
                result=result,
            )
        except SQLAlchemyError:
            _log_lost_outcome(job, outcome="completion")
            return
        if completed:
            self._count("succeeded")
            logger.info("Completed job %s (%s)", job.job_id, job.job_type)
            return
        self._count("discarded")
        logger.info("Job %s is no longer processing, result discarded", job.job_id)

    def _record_failure(self, job: JobView, *, error: str, terminal: bool = False) -> None:
        try:
            outcome = self.repository.fail_job(
                job_id=job.job_id,
                worker_id=self.worker_id,
                error=error,
                terminal=terminal,
            )
        except SQLAlchemyError:
            _log_lost_outcome(job, outcome=f"failure ({error})")
            return
        if outcome == FailOutcome.RETRY_SCHEDULED:
            self._count("retried")
            logger.warning(
                "Job %s failed on attempt %d/%d, re-queued: %s",
                job.job_id,
                job.attempts,
                job.max_attempts,
                error,
            )
        elif outcome == FailOutcome.FAILED:
            self._count("failed")
            logger.error("Job %s failed permanently: %s", job.job_id, error)
        else:
            self._count("discarded")
            logger.info("Job %s is no longer processing, failure discarded: %s", job.job_id, error)

    def _release(self, job_id: str) -> None:
        with self._in_flight_changed:
            self._in_flight.discard(job_id)
            self._in_flight_changed.notify_all()

    def _heartbeat(self) -> None:
        job_ids = self.in_flight_ids()
        if job_ids:
            self.repository.touch_jobs(job_ids=sorted(job_ids), worker_id=self.worker_id)

    def _recover_stale_jobs(self) -> None:
        if self.stale_after_seconds <= 0:
            return
        recovered = self.repository.recover_stale_jobs(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        if not recovered:
            return
        with self._summary_lock:
            self._summary.recovered += len(recovered)
        for brief_id in sorted({job.brief_id for job in recovered}):
            self.aggregator.refresh(brief_id)

    def _count(self, counter: str) -> None:
        with self._summary_lock:
            setattr(self._summary, counter, getattr(self._summary, counter) + 1)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        try:
            original_sigint = signal.getsignal(signal.SIGINT)
            original_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _handle_signal(self, signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        self.request_stop(reason=name)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _log_lost_outcome(job: JobView, *, outcome: str) -> None:
    logger.exception(
        "Could not record %s of job %s (%s); it stays processing until "
        "recovered with `brief-queue jobs recover`",
        outcome,
        job.job_id,
        job.job_type,
    )
