"""Persistence for brief aggregates owning queue jobs."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from brief_queue.orchestrator.models import BriefCreate, BriefStatus, BriefView
from brief_queue.storage.alembic_runner import upgrade_head
from brief_queue.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from brief_queue.storage.sqlmodel_models import Brief


class BriefRepository:
    """Brief persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create_brief(self, payload: BriefCreate) -> BriefView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Brief(
                brief_id=payload.brief_id or f"brief-{uuid4().hex}",
                external_ref=payload.external_ref,
                status=payload.status.value,
                request_json=dump_json(payload.request),
                analysis_json=dump_json(payload.analysis) if payload.analysis is not None else None,
                plan_json=dump_json(payload.plan) if payload.plan is not None else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_brief_view(row)

    def get_brief(self, *, brief_id: str) -> BriefView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Brief).where(Brief.brief_id == brief_id)).one_or_none()
        return _to_brief_view(row) if row is not None else None

    def delete_brief(self, *, brief_id: str) -> bool:
        """Delete a brief; its jobs and their events go with it."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(Brief).where(col(Brief.brief_id) == brief_id))
            session.commit()
            return result.rowcount == 1

    def update_status(self, *, brief_id: str, status: BriefStatus) -> bool:
        """Write a new status; a no-op when the stored value already matches."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Brief)
                .where(
                    col(Brief.brief_id) == brief_id,
                    col(Brief.status) != status.value,
                )
                .values(status=status.value, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def mark_queued(self, *, brief_id: str) -> bool:
        """Move a brief that has just received its first jobs to ``queued``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Brief)
                .where(
                    col(Brief.brief_id) == brief_id,
                    col(Brief.status) == BriefStatus.ANALYZED.value,
                )
                .values(status=BriefStatus.QUEUED.value, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1


def _to_brief_view(row: Brief) -> BriefView:
    analysis = load_json(row.analysis_json)
    plan = load_json(row.plan_json)
    return BriefView(
        brief_id=row.brief_id,
        external_ref=row.external_ref,
        status=BriefStatus(row.status),
        request=load_json_object(row.request_json),
        analysis=analysis if isinstance(analysis, dict) else None,
        plan=plan if isinstance(plan, dict) else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
