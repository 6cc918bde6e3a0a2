"""Runtime configuration for the brief queue and its workers."""

from __future__ import annotations

import logging
import os
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})


@dataclass(slots=True)
class QueueSettings:
    """Producer-side queue defaults and maintenance settings."""

    default_max_attempts: int = 3
    retention_days: int = 7


@dataclass(slots=True)
class WorkerSettings:
    """Worker scheduler settings."""

    worker_id: str = field(default_factory=lambda: default_worker_id())
    concurrency: int = 5
    poll_interval_seconds: float = 3.0
    job_timeout_seconds: float = 300.0
    shutdown_timeout_seconds: float = 30.0
    stale_after_seconds: int = 0
    demo_delay_seconds: float = 0.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".brief_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("BRIEF_QUEUE_DB_PATH", ".brief_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("BRIEF_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("BRIEF_QUEUE_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                default_max_attempts=int(os.getenv("BRIEF_QUEUE_DEFAULT_MAX_ATTEMPTS", "3")),
                retention_days=int(os.getenv("BRIEF_QUEUE_RETENTION_DAYS", "7")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("BRIEF_QUEUE_WORKER_ID", "").strip() or default_worker_id(),
                concurrency=int(os.getenv("BRIEF_QUEUE_WORKER_CONCURRENCY", "5")),
                poll_interval_seconds=float(
                    os.getenv("BRIEF_QUEUE_POLL_INTERVAL_SECONDS", "3.0"),
                ),
                job_timeout_seconds=float(os.getenv("BRIEF_QUEUE_JOB_TIMEOUT_SECONDS", "300")),
                shutdown_timeout_seconds=float(
                    os.getenv("BRIEF_QUEUE_SHUTDOWN_TIMEOUT_SECONDS", "30"),
                ),
                stale_after_seconds=int(os.getenv("BRIEF_QUEUE_STALE_AFTER_SECONDS", "0")),
                demo_delay_seconds=float(os.getenv("BRIEF_QUEUE_DEMO_DELAY_SECONDS", "0")),
            ),
        )

    @property
    def logging_level(self) -> int:
        if self.log_level not in _LOG_LEVELS:
            return logging.INFO
        return getattr(logging, self.log_level)

    def validate(self) -> None:
        """Raise configuration error for values every command depends on."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("BRIEF_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"BRIEF_QUEUE_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, "
                f"got {self.log_level!r}.",
            )
        if self.queue.default_max_attempts < 1:
            raise ValueError("BRIEF_QUEUE_DEFAULT_MAX_ATTEMPTS must be >= 1.")
        if self.queue.retention_days < 0:
            raise ValueError("BRIEF_QUEUE_RETENTION_DAYS must be >= 0.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are unusable."""

        self.validate()
        worker = self.worker
        if not worker.worker_id:
            raise ValueError("BRIEF_QUEUE_WORKER_ID must not be empty.")
        if worker.concurrency < 1:
            raise ValueError("BRIEF_QUEUE_WORKER_CONCURRENCY must be >= 1.")
        if worker.poll_interval_seconds < 0:
            raise ValueError("BRIEF_QUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if worker.job_timeout_seconds <= 0:
            raise ValueError("BRIEF_QUEUE_JOB_TIMEOUT_SECONDS must be > 0.")
        if worker.shutdown_timeout_seconds < 0:
            raise ValueError("BRIEF_QUEUE_SHUTDOWN_TIMEOUT_SECONDS must be >= 0.")
        if worker.stale_after_seconds < 0:
            raise ValueError("BRIEF_QUEUE_STALE_AFTER_SECONDS must be >= 0.")
        if 0 < worker.stale_after_seconds <= worker.poll_interval_seconds:
            raise ValueError(
                "BRIEF_QUEUE_STALE_AFTER_SECONDS must exceed the poll interval, "
                "otherwise live jobs are reclaimed between heartbeats.",
            )
        if worker.demo_delay_seconds < 0:
            raise ValueError("BRIEF_QUEUE_DEMO_DELAY_SECONDS must be >= 0.")


def default_worker_id() -> str:
    """Host, pid and start time; unique per process."""

    return f"worker-{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}"
