"""Domain models for the brief job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobType(str, Enum):
    """Closed set of work kinds known to the processor registry."""

    ANALYSIS = "analysis"
    ASSET_PREP = "asset_prep"
    STORYBOARD = "storyboard"
    RENDER = "render"
    VIDEO_GENERATION = "video_generation"
    IMAGE_PROCESSING = "image_processing"
    TEXT_ANALYSIS = "text_analysis"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
)


class BriefStatus(str, Enum):
    """Coarse brief status derived from its jobs."""

    ANALYZED = "analyzed"
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class FailOutcome(str, Enum):
    """Result of reporting a failed attempt to the job store."""

    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


def parse_job_type(value: JobType | str) -> JobType:
    """Resolve a job type, rejecting values outside the closed set."""

    if isinstance(value, JobType):
        return value
    try:
        return JobType(value.strip().lower())
    except ValueError as error:
        supported = ", ".join(item.value for item in JobType)
        raise ValueError(f"Unknown job type: {value!r} (supported: {supported})") from error


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    brief_id: str
    job_type: JobType
    job_id: str | None = None
    priority: int = 0
    max_attempts: int = 3
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobView:
    """Readable job view for services, worker and processors."""

    job_id: str
    brief_id: str
    job_type: str
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    error: str | None
    result: Any
    metadata: dict[str, Any]
    worker_id: str | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class JobStatsRow:
    """Grouped queue statistics for one (type, status) pair."""

    job_type: str
    status: JobStatus
    count: int
    avg_duration_seconds: float | None
    max_attempts_used: int


@dataclass(slots=True)
class BriefCreate:
    """Input payload for creating a brief."""

    brief_id: str | None = None
    external_ref: str | None = None
    request: dict[str, Any] = field(default_factory=dict)
    analysis: dict[str, Any] | None = None
    plan: dict[str, Any] | None = None
    status: BriefStatus = BriefStatus.ANALYZED


@dataclass(slots=True)
class BriefView:
    """Stored brief aggregate."""

    brief_id: str
    external_ref: str | None
    status: BriefStatus
    request: dict[str, Any]
    analysis: dict[str, Any] | None
    plan: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BriefStatusChange:
    """Outcome of one brief status recomputation."""

    brief_id: str
    old_status: BriefStatus
    new_status: BriefStatus
    jobs_count: int

    @property
    def changed(self) -> bool:
        return self.old_status != self.new_status
