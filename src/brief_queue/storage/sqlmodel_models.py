"""SQLModel ORM tables for briefs and the job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Brief(SQLModel, table=True):
    __tablename__ = "briefs"  # type: ignore[bad-override]

    brief_id: str = Field(primary_key=True)
    external_ref: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    request_json: str | None = Field(default=None, sa_column=Column(Text))
    analysis_json: str | None = Field(default=None, sa_column=Column(Text))
    plan_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_queue", "status", "priority", "created_at"),)

    job_id: str = Field(primary_key=True)
    brief_id: str = Field(
        sa_column=Column(
            ForeignKey("briefs.brief_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=0, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    error: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
