from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
import logging

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .models import StepProgress, utcnow
from .schemas import LessonStatus, LessonStep, StepStatus


log = logging.getLogger(__name__)


STEP_IDS: tuple[str, ...] = tuple(s.value for s in LessonStep)
STEPS_PER_LESSON = len(STEP_IDS)


def percent(completed: int, total: int) -> int:
    """Whole percentage, halves rounded up; 0 when there is nothing to do."""
    if total <= 0:
        return 0
    completed = max(0, min(completed, total))
    return (200 * completed + total) // (2 * total)


def _status_value(status) -> str:
    return status.value if isinstance(status, StepStatus) else str(status)


def _step_value(step) -> str:
    return step.value if isinstance(step, LessonStep) else str(step)


def compute_progress(lesson_ids: Iterable[str], rows: Iterable[StepProgress]) -> int:
    """Course percentage from an in-memory step table.

    Only the five named steps count, and each (lesson, step) pair counts
    once even if the table somehow holds duplicates.
    """
    lessons = set(lesson_ids)
    done = {
        (r.lesson_id, r.step_id)
        for r in rows
        if r.lesson_id in lessons
        and r.step_id in STEP_IDS
        and _status_value(r.status) == StepStatus.COMPLETED.value
    }
    return percent(len(done), len(lessons) * STEPS_PER_LESSON)


def course_progress(session: Session, lesson_ids: list[str]) -> int:
    """Same as ``compute_progress`` but counted by the store, fresh per call."""
    if not lesson_ids:
        return 0
    stmt = (
        select(func.count())
        .select_from(StepProgress)
        .where(StepProgress.lesson_id.in_(lesson_ids))
        .where(StepProgress.step_id.in_(STEP_IDS))
        .where(StepProgress.status == StepStatus.COMPLETED.value)
    )
    completed = session.exec(stmt).one()
    return percent(int(completed), len(set(lesson_ids)) * STEPS_PER_LESSON)


def lesson_status(lesson_id: str, rows: Iterable[StepProgress]) -> LessonStatus:
    done = {
        r.step_id
        for r in rows
        if r.lesson_id == lesson_id
        and r.step_id in STEP_IDS
        and _status_value(r.status) == StepStatus.COMPLETED.value
    }
    if len(done) == STEPS_PER_LESSON:
        return LessonStatus.COMPLETED
    if done:
        return LessonStatus.IN_PROGRESS
    return LessonStatus.NOT_STARTED


def record_step(session: Session, lesson_id: str, step_id, status) -> StepProgress:
    """Insert or overwrite the row for ``(lesson_id, step_id)``.

    The unique constraint on the pair is what keeps concurrent writers from
    producing duplicates; on SQLite/PostgreSQL the write is one statement.
    """
    step = _step_value(step_id)
    value = _status_value(status)
    now = utcnow()

    dialect = session.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = insert(StepProgress).values(
            lesson_id=lesson_id, step_id=step, status=value, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["lesson_id", "step_id"],
            set_={"status": value, "updated_at": now},
        )
        session.connection().execute(stmt)
        session.commit()
    else:
        _record_step_portable(session, lesson_id, step, value, now)

    return _get_row(session, lesson_id, step)


def _get_row(session: Session, lesson_id: str, step: str) -> StepProgress:
    return session.exec(
        select(StepProgress)
        .where(StepProgress.lesson_id == lesson_id)
        .where(StepProgress.step_id == step)
    ).one()


def _record_step_portable(session: Session, lesson_id: str, step: str, value: str, now: datetime) -> None:
    existing = session.exec(
        select(StepProgress)
        .where(StepProgress.lesson_id == lesson_id)
        .where(StepProgress.step_id == step)
    ).first()
    if existing is None:
        session.add(StepProgress(lesson_id=lesson_id, step_id=step, status=value, updated_at=now))
        try:
            session.commit()
            return
        except IntegrityError:
            # Lost the race to another writer: the row exists now, update it.
            session.rollback()
            log.info("step row (%s, %s) inserted concurrently; updating", lesson_id, step)
            existing = _get_row(session, lesson_id, step)

    existing.status = value
    existing.updated_at = now
    session.add(existing)
    session.commit()


def list_progress(session: Session) -> list[StepProgress]:
    return list(session.exec(select(StepProgress).order_by(StepProgress.id)).all())
