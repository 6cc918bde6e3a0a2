"""Expand an ordered list of stages into prioritized job rows for one brief.

Stage order is expressed through priority only: the first stage gets the
highest priority so workers prefer it whenever several stages of a brief are
pending at once. There are no dependency edges, so a later stage may still
start before an earlier one finishes (for example while the earlier one waits
for a retry).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from brief_queue.orchestrator.models import JobCreate, JobType, JobView, parse_job_type
from brief_queue.orchestrator.repository import JobRepository

DEFAULT_PIPELINE: tuple[JobType, ...] = (JobType.ANALYSIS,)

PIPELINES_BY_MEDIA_TYPE: dict[str, tuple[JobType, ...]] = {
    "video": (
        JobType.ANALYSIS,
        JobType.ASSET_PREP,
        JobType.VIDEO_GENERATION,
        JobType.RENDER,
    ),
    "image": (
        JobType.ANALYSIS,
        JobType.ASSET_PREP,
        JobType.IMAGE_PROCESSING,
        JobType.RENDER,
    ),
    "audio": (
        JobType.ANALYSIS,
        JobType.ASSET_PREP,
        JobType.RENDER,
    ),
    "text": (
        JobType.ANALYSIS,
        JobType.TEXT_ANALYSIS,
        JobType.RENDER,
    ),
}


def pipeline_for_media_type(media_type: str | None) -> tuple[JobType, ...]:
    """Preset stage list for a brief's media type."""

    if media_type is None:
        return DEFAULT_PIPELINE
    return PIPELINES_BY_MEDIA_TYPE.get(media_type.strip().lower(), DEFAULT_PIPELINE)


def build_pipeline_jobs(
    brief_id: str,
    job_types: Sequence[JobType | str],
    *,
    base_priority: int = 0,
    max_attempts: int = 3,
    metadata: dict[str, Any] | None = None,
) -> list[JobCreate]:
    """Build job payloads with strictly decreasing priority along the stages."""

    stages = [parse_job_type(job_type) for job_type in job_types]
    if not stages:
        raise ValueError("Pipeline requires at least one job type.")

    total_steps = len(stages)
    return [
        JobCreate(
            brief_id=brief_id,
            job_type=stage,
            priority=base_priority + total_steps - index,
            max_attempts=max_attempts,
            metadata={
                **(metadata or {}),
                "pipeline_step": index + 1,
                "total_steps": total_steps,
            },
        )
        for index, stage in enumerate(stages)
    ]


class PipelineBuilder:
    """Inserts a whole pipeline for one brief as a single batch."""

    def __init__(self, *, repository: JobRepository, default_max_attempts: int = 3) -> None:
        self.repository = repository
        self.default_max_attempts = default_max_attempts

    def build(
        self,
        brief_id: str,
        job_types: Sequence[JobType | str],
        *,
        base_priority: int = 0,
        max_attempts: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[JobView]:
        payloads = build_pipeline_jobs(
            brief_id,
            job_types,
            base_priority=base_priority,
            max_attempts=self.default_max_attempts if max_attempts is None else max_attempts,
            metadata=metadata,
        )
        return self.repository.create_jobs(payloads)
