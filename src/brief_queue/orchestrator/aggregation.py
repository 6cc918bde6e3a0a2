"""Derive a brief's coarse status from the states of its jobs."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from brief_queue.orchestrator.briefs import BriefRepository
from brief_queue.orchestrator.models import BriefStatus, BriefStatusChange, JobStatus
from brief_queue.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)


def derive_brief_status(
    job_statuses: Iterable[JobStatus],
    *,
    current: BriefStatus,
) -> BriefStatus:
    """Worst job state wins: failed, then all-completed, then in-progress.

    Without jobs, or with a mix the rules do not cover (for example completed
    plus cancelled), the current status is kept.
    """

    statuses = list(job_statuses)
    if not statuses:
        return current
    if JobStatus.FAILED in statuses:
        return BriefStatus.FAILED
    if all(status == JobStatus.COMPLETED for status in statuses):
        return BriefStatus.DONE
    if JobStatus.PROCESSING in statuses or JobStatus.PENDING in statuses:
        return BriefStatus.PROCESSING
    return current


class StatusAggregator:
    """Recomputes and persists brief status after job transitions."""

    def __init__(self, *, jobs: JobRepository, briefs: BriefRepository) -> None:
        self.jobs = jobs
        self.briefs = briefs

    def refresh(self, brief_id: str) -> BriefStatusChange | None:
        """Re-derive one brief's status; writes only when the value changes."""

        brief = self.briefs.get_brief(brief_id=brief_id)
        if brief is None:
            logger.debug("Skipping status refresh for unknown brief %s", brief_id)
            return None

        jobs = self.jobs.list_by_parent(brief_id=brief_id)
        new_status = derive_brief_status(
            (job.status for job in jobs),
            current=brief.status,
        )
        change = BriefStatusChange(
            brief_id=brief_id,
            old_status=brief.status,
            new_status=new_status,
            jobs_count=len(jobs),
        )
        if change.changed:
            self.briefs.update_status(brief_id=brief_id, status=new_status)
            logger.info(
                "Brief %s status %s -> %s",
                brief_id,
                brief.status.value,
                new_status.value,
            )
        return change
