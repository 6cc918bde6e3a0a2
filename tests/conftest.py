"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from brief_queue.orchestrator.briefs import BriefRepository
from brief_queue.orchestrator.models import BriefCreate, BriefView
from brief_queue.orchestrator.repository import JobRepository
from brief_queue.storage.common import to_db_datetime, utc_now
from brief_queue.storage.sqlmodel_models import Job


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Drop BRIEF_QUEUE_* variables leaking from the developer shell."""

    for name in list(os.environ):
        if name.startswith("BRIEF_QUEUE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def jobs(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def briefs(db_path: Path, jobs: JobRepository) -> Iterator[BriefRepository]:
    repository = BriefRepository(db_path)
    yield repository
    repository.close()


def create_brief(briefs: BriefRepository, brief_id: str, **request: object) -> BriefView:
    return briefs.create_brief(BriefCreate(brief_id=brief_id, request=dict(request)))


def age_job(
    jobs: JobRepository,
    job_id: str,
    *,
    heartbeat_seconds: float | None = None,
    completed_seconds: float | None = None,
) -> None:
    """Move heartbeat/completion timestamps into the past."""

    values: dict[str, object] = {}
    if heartbeat_seconds is not None:
        values["heartbeat_at"] = to_db_datetime(utc_now() - timedelta(seconds=heartbeat_seconds))
    if completed_seconds is not None:
        values["completed_at"] = to_db_datetime(utc_now() - timedelta(seconds=completed_seconds))
    with Session(jobs.engine) as session:
        session.exec(sa_update(Job).where(col(Job.job_id) == job_id).values(**values))
        session.commit()
