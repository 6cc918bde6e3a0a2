"""Use-case services for the brief job queue."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from brief_queue.orchestrator.aggregation import StatusAggregator
from brief_queue.orchestrator.briefs import BriefRepository
from brief_queue.orchestrator.models import BriefView, JobCreate, JobType, JobView, parse_job_type
from brief_queue.orchestrator.pipeline import PipelineBuilder, pipeline_for_media_type
from brief_queue.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)


class QueueService:
    """Producer-facing API: submit, inspect and control jobs of a brief."""

    def __init__(
        self,
        *,
        jobs: JobRepository,
        briefs: BriefRepository,
        default_max_attempts: int = 3,
    ) -> None:
        self.jobs = jobs
        self.briefs = briefs
        self.default_max_attempts = default_max_attempts
        self.aggregator = StatusAggregator(jobs=jobs, briefs=briefs)
        self.pipelines = PipelineBuilder(
            repository=jobs,
            default_max_attempts=default_max_attempts,
        )

    def submit_job(
        self,
        job_type: JobType | str,
        brief_id: str,
        *,
        priority: int = 0,
        max_attempts: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Enqueue one job and return its id."""

        self._require_brief(brief_id)
        job = self.jobs.create_job(
            JobCreate(
                brief_id=brief_id,
                job_type=parse_job_type(job_type),
                priority=priority,
                max_attempts=self.default_max_attempts if max_attempts is None else max_attempts,
                metadata=dict(metadata or {}),
            ),
        )
        self._mark_queued(brief_id)
        logger.info(
            "Submitted job %s (%s) for brief %s",
            job.job_id,
            job.job_type,
            job.brief_id,
        )
        return job.job_id

    def submit_pipeline(
        self,
        brief_id: str,
        job_types: Sequence[JobType | str],
        *,
        base_priority: int = 0,
        max_attempts: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[str]:
        """Enqueue an ordered multi-stage pipeline in one batch; ids in stage order."""

        self._require_brief(brief_id)
        jobs = self.pipelines.build(
            brief_id,
            job_types,
            base_priority=base_priority,
            max_attempts=max_attempts,
            metadata=metadata,
        )
        self._mark_queued(brief_id)
        logger.info(
            "Submitted %d-stage pipeline for brief %s: %s",
            len(jobs),
            brief_id,
            ", ".join(job.job_type for job in jobs),
        )
        return [job.job_id for job in jobs]

    def attach_pipeline(
        self,
        brief_id: str,
        *,
        media_type: str | None = None,
        job_types: Sequence[JobType | str] | None = None,
        base_priority: int = 0,
        max_attempts: int | None = None,
    ) -> list[str]:
        """Enqueue an explicit stage list, or the preset for the brief's media type.

        Without an explicit ``media_type`` the brief request's ``media_type``
        field picks the preset.
        """

        brief = self._require_brief(brief_id)
        if job_types:
            stages: Sequence[JobType | str] = job_types
        else:
            requested = media_type or brief.request.get("media_type")
            stages = pipeline_for_media_type(requested if isinstance(requested, str) else None)
        return self.submit_pipeline(
            brief_id,
            stages,
            base_priority=base_priority,
            max_attempts=max_attempts,
            metadata={"brief_id": brief_id},
        )

    def get_job(self, job_id: str) -> JobView | None:
        return self.jobs.get_job(job_id=job_id)

    def get_jobs_for_parent(self, brief_id: str) -> list[JobView]:
        return self.jobs.list_by_parent(brief_id=brief_id)

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending or processing job; ``False`` if it already finished."""

        job = self.jobs.get_job(job_id=job_id)
        if job is None:
            return False
        cancelled = self.jobs.cancel_job(job_id=job_id)
        if cancelled:
            logger.info("Cancelled job %s", job_id)
            self.aggregator.refresh(job.brief_id)
        return cancelled

    def retry(self, job_id: str) -> bool:
        """Re-queue a failed or cancelled job with a fresh attempt budget."""

        job = self.jobs.get_job(job_id=job_id)
        if job is None:
            return False
        retried = self.jobs.retry_job(job_id=job_id)
        if retried:
            logger.info("Re-queued job %s", job_id)
            self.aggregator.refresh(job.brief_id)
        return retried

    def _require_brief(self, brief_id: str) -> BriefView:
        brief = self.briefs.get_brief(brief_id=brief_id)
        if brief is None:
            raise ValueError(f"Brief not found: {brief_id}")
        return brief

    def _mark_queued(self, brief_id: str) -> None:
        if self.briefs.mark_queued(brief_id=brief_id):
            logger.info("Brief %s queued", brief_id)
            return
        # Already past analyzed: new pending work re-derives a done/failed brief.
        self.aggregator.refresh(brief_id)
