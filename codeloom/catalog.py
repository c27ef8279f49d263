from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Optional
import uuid

from pydantic import ValidationError as PydanticValidationError
from rapidfuzz import fuzz
from sqlmodel import Session, select

from .errors import ValidationError
from .models import Course, Lesson, Module
from .progress import course_progress
from .schemas import CourseIn, LessonIn, ModuleIn
from .seed import STARTER_COURSES


log = logging.getLogger(__name__)

SEARCH_CUTOFF = 75


@dataclass
class ImportStats:
    course_id: str
    modules_seen: int = 0
    lessons_seen: int = 0
    reimported: bool = False


def new_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def default_image_url(course_id: str) -> str:
    return f"https://picsum.photos/seed/{course_id}/800/450"


def parse_course_json(text: str) -> CourseIn:
    """Validate pasted/uploaded course JSON before it is sent to the server."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"invalid JSON: {e.msg} (line {e.lineno})") from e
    if not isinstance(raw, dict) or not raw.get("title") or "modules" not in raw:
        raise ValidationError("Invalid course format: expected an object with 'title' and 'modules'")
    try:
        return CourseIn.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid course format: {e.error_count()} problem(s)") from e


# -----------------------------------------------------------------------------
# Write side
# -----------------------------------------------------------------------------

def upsert_course(session: Session, payload: CourseIn) -> tuple[Course, bool]:
    course_id = payload.id or new_id("c")

    existing = session.get(Course, course_id)
    if existing:
        existing.title = payload.title
        existing.description = payload.description
        if payload.image_url:
            existing.image_url = payload.image_url
        session.add(existing)
        return existing, True

    course = Course(
        id=course_id,
        title=payload.title,
        description=payload.description,
        image_url=payload.image_url or default_image_url(course_id),
    )
    session.add(course)
    return course, False


def _drop_children(session: Session, course_id: str) -> tuple[set[str], set[str]]:
    """Delete a course's modules and lessons; return the freed ids."""
    modules = session.exec(select(Module).where(Module.course_id == course_id)).all()
    module_ids = {m.id for m in modules}
    lesson_ids: set[str] = set()
    if module_ids:
        lessons = session.exec(select(Lesson).where(Lesson.module_id.in_(module_ids))).all()
        for lesson in lessons:
            lesson_ids.add(lesson.id)
            session.delete(lesson)
    for m in modules:
        session.delete(m)
    session.flush()
    return module_ids, lesson_ids


def _pick_id(wanted: Optional[str], prefix: str, taken: set[str]) -> str:
    # Ids from extracted curricula ("m1", "l1") routinely clash with the seed.
    if wanted and wanted not in taken:
        taken.add(wanted)
        return wanted
    fresh = new_id(prefix)
    taken.add(fresh)
    return fresh


def insert_lesson(session: Session, module_id: str, lesson_id: str, payload: LessonIn, order_index: int) -> Lesson:
    lesson = Lesson(
        id=lesson_id,
        module_id=module_id,
        title=payload.title,
        concept=payload.concept,
        example=payload.example,
        practice_guided=payload.practice_guided,
        practice_independent=payload.practice_independent,
        language=payload.language,
        order_index=order_index,
    )
    session.add(lesson)
    return lesson


def insert_module(session: Session, course_id: str, module_id: str, payload: ModuleIn, order_index: int) -> Module:
    module = Module(id=module_id, course_id=course_id, title=payload.title, order_index=order_index)
    session.add(module)
    return module


def import_course(session: Session, payload: CourseIn) -> ImportStats:
    """Create a course, or replace the modules/lessons of an existing one."""
    course, reimported = upsert_course(session, payload)
    stats = ImportStats(course_id=course.id, reimported=reimported)

    if reimported:
        _drop_children(session, course.id)

    taken_modules = set(session.exec(select(Module.id)).all())
    taken_lessons = set(session.exec(select(Lesson.id)).all())

    for m_idx, mod in enumerate(payload.modules):
        stats.modules_seen += 1
        module_id = _pick_id(mod.id, "m", taken_modules)
        insert_module(session, course.id, module_id, mod, m_idx)

        for l_idx, lesson in enumerate(mod.lessons):
            stats.lessons_seen += 1
            lesson_id = _pick_id(lesson.id, "l", taken_lessons)
            insert_lesson(session, module_id, lesson_id, lesson, l_idx)

    session.commit()
    log.info(
        "imported course %s (%d modules, %d lessons, reimport=%s)",
        stats.course_id, stats.modules_seen, stats.lessons_seen, stats.reimported,
    )
    return stats


def seed_catalog(session: Session) -> Optional[ImportStats]:
    """Insert the starter courses when the catalog is empty."""
    if session.exec(select(Course.id)).first() is not None:
        return None
    stats = None
    for raw in STARTER_COURSES:
        stats = import_course(session, CourseIn.model_validate(raw))
    return stats


# -----------------------------------------------------------------------------
# Read side
# -----------------------------------------------------------------------------

def _matches(q: str, title: str) -> float:
    q, title = q.strip().lower(), title.lower()
    if q in title:
        return 100.0
    return fuzz.partial_ratio(q, title)


def course_tree(session: Session, course: Course) -> dict[str, Any]:
    modules = session.exec(
        select(Module).where(Module.course_id == course.id).order_by(Module.order_index, Module.id)
    ).all()
    module_ids = [m.id for m in modules]

    lessons_by_module: dict[str, list[dict[str, Any]]] = {mid: [] for mid in module_ids}
    lesson_ids: list[str] = []
    if module_ids:
        lessons = session.exec(
            select(Lesson).where(Lesson.module_id.in_(module_ids)).order_by(Lesson.order_index, Lesson.id)
        ).all()
        for lesson in lessons:
            lessons_by_module[lesson.module_id].append(lesson.model_dump())
            lesson_ids.append(lesson.id)

    out = course.model_dump()
    out["modules"] = [{**m.model_dump(), "lessons": lessons_by_module[m.id]} for m in modules]
    out["progress"] = course_progress(session, lesson_ids)
    return out


def list_courses(session: Session, q: Optional[str] = None) -> list[dict[str, Any]]:
    courses = session.exec(select(Course).order_by(Course.created_at, Course.id)).all()
    if q and q.strip():
        scored = [(c, _matches(q, c.title)) for c in courses]
        courses = [c for c, score in sorted(scored, key=lambda cs: cs[1], reverse=True) if score >= SEARCH_CUTOFF]
    return [course_tree(session, c) for c in courses]
