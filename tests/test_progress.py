"""
Progress aggregation tests for CodeLoom.

Covers the percentage formula, the step upsert and the derived lesson status.
"""

import pytest
from sqlmodel import select

from codeloom.catalog import import_course
from codeloom.models import Course, StepProgress
from codeloom.progress import (
    STEP_IDS,
    STEPS_PER_LESSON,
    compute_progress,
    course_progress,
    lesson_status,
    percent,
    record_step,
)
from codeloom.schemas import LessonStatus, LessonStep, StepStatus

from conftest import two_lesson_course


def row(lesson_id, step_id, status="completed"):
    return StepProgress(lesson_id=lesson_id, step_id=step_id, status=status)


class TestPercent:
    def test_zero_total(self):
        assert percent(0, 0) == 0
        assert percent(3, 0) == 0

    def test_rounding_half_up(self):
        assert percent(1, 8) == 13
        assert percent(1, 3) == 33
        assert percent(2, 3) == 67

    def test_clamped(self):
        assert percent(12, 10) == 100
        assert percent(-1, 10) == 0


class TestComputeProgress:
    def test_step_ids_are_fixed(self):
        assert STEP_IDS == ("explanation", "example", "guided", "independent", "feedback")
        assert STEPS_PER_LESSON == 5

    def test_empty_lessons(self):
        assert compute_progress([], [row("l1", "explanation")]) == 0

    def test_no_completed_rows(self):
        rows = [row("l1", s, "not_started") for s in STEP_IDS]
        assert compute_progress(["l1"], rows) == 0

    def test_other_lessons_ignored(self):
        rows = [row("elsewhere", s) for s in STEP_IDS]
        assert compute_progress(["l1", "l2"], rows) == 0

    def test_scenario_thirty_percent(self):
        rows = [row("l1", "explanation"), row("l1", "example"), row("l2", "guided")]
        assert compute_progress(["l1", "l2"], rows) == 30

    def test_all_done(self):
        rows = [row(lid, s) for lid in ("l1", "l2") for s in STEP_IDS]
        assert compute_progress(["l1", "l2"], rows) == 100

    def test_unknown_steps_and_duplicates_not_counted(self):
        rows = [row("l1", s) for s in STEP_IDS] + [row("l1", "bonus"), row("l1", "feedback")]
        assert compute_progress(["l1", "l2"], rows) == 50

    @pytest.mark.parametrize("n_done", range(0, 11))
    def test_bounds(self, n_done):
        pairs = [(lid, s) for lid in ("l1", "l2") for s in STEP_IDS][:n_done]
        value = compute_progress(["l1", "l2"], [row(l, s) for l, s in pairs])
        assert 0 <= value <= 100
        assert value == n_done * 10


class TestLessonStatus:
    def test_tri_state(self):
        assert lesson_status("l1", []) is LessonStatus.NOT_STARTED
        assert lesson_status("l1", [row("l1", "example")]) is LessonStatus.IN_PROGRESS
        assert lesson_status("l1", [row("l1", s) for s in STEP_IDS]) is LessonStatus.COMPLETED

    def test_not_started_rows_do_not_count(self):
        assert lesson_status("l1", [row("l1", "example", "not_started")]) is LessonStatus.NOT_STARTED


class TestRecordStep:
    def _rows(self, session, lesson_id, step_id):
        return session.exec(
            select(StepProgress)
            .where(StepProgress.lesson_id == lesson_id)
            .where(StepProgress.step_id == step_id)
        ).all()

    def test_insert(self, session):
        r = record_step(session, "l1", LessonStep.EXPLANATION, StepStatus.COMPLETED)
        assert r.id is not None
        assert r.status == "completed"

    def test_idempotent(self, session):
        record_step(session, "l1", "explanation", "completed")
        record_step(session, "l1", "explanation", "completed")
        rows = self._rows(session, "l1", "explanation")
        assert len(rows) == 1
        assert rows[0].status == "completed"

    def test_later_status_wins(self, session):
        first = record_step(session, "l1", "guided", "completed")
        first_updated = first.updated_at
        second = record_step(session, "l1", "guided", "not_started")
        rows = self._rows(session, "l1", "guided")
        assert len(rows) == 1
        assert rows[0].status == "not_started"
        assert second.updated_at >= first_updated


class TestTimestamps:
    def test_defaults_carry_utc(self):
        assert StepProgress(lesson_id="l1", step_id="guided").updated_at.tzinfo is not None
        assert Course(id="c", title="T").created_at.tzinfo is not None

    def test_writes_accept_aware_timestamps(self, session):
        import_course(session, two_lesson_course())
        saved = record_step(session, "course-a-l1", "explanation", "completed")
        assert saved.updated_at is not None
        assert session.get(Course, "course-a").created_at is not None


class TestCourseProgress:
    def test_scenario(self, session):
        stats = import_course(session, two_lesson_course())
        assert stats.lessons_seen == 2
        lessons = ["course-a-l1", "course-a-l2"]

        assert course_progress(session, lessons) == 0

        for step in ("explanation", "example", "guided"):
            record_step(session, "course-a-l1", step, "completed")
        assert course_progress(session, lessons) == 30

        for lid in lessons:
            for step in STEP_IDS:
                record_step(session, lid, step, "completed")
        assert course_progress(session, lessons) == 100

    def test_not_started_lowers_progress(self, session):
        for step in STEP_IDS:
            record_step(session, "x1", step, "completed")
        assert course_progress(session, ["x1"]) == 100
        record_step(session, "x1", "feedback", "not_started")
        assert course_progress(session, ["x1"]) == 80
        assert len(session.exec(select(StepProgress)).all()) == 5

    def test_foreign_step_rows_ignored(self, session):
        session.add(StepProgress(lesson_id="x1", step_id="quiz", status="completed"))
        session.commit()
        record_step(session, "x1", "example", "completed")
        assert course_progress(session, ["x1"]) == 20

    def test_no_lessons(self, session):
        assert course_progress(session, []) == 0
