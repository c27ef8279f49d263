from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import SQLModel, Field, UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Course(SQLModel, table=True):
    __tablename__ = "courses"

    id: str = Field(primary_key=True)

    title: str = Field(index=True, nullable=False)
    description: str = Field(default="", nullable=False)
    image_url: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)


class Module(SQLModel, table=True):
    __tablename__ = "modules"

    id: str = Field(primary_key=True)

    course_id: str = Field(index=True, nullable=False, foreign_key="courses.id")
    title: str = Field(nullable=False)

    # Sort key within course
    order_index: int = Field(default=0, index=True, nullable=False)


class Lesson(SQLModel, table=True):
    __tablename__ = "lessons"

    id: str = Field(primary_key=True)

    module_id: str = Field(index=True, nullable=False, foreign_key="modules.id")
    title: str = Field(nullable=False)

    concept: str = Field(default="", nullable=False)
    example: str = Field(default="", nullable=False)
    practice_guided: str = Field(default="", nullable=False)
    practice_independent: str = Field(default="", nullable=False)

    # javascript | html | css | python, picks the code runner strategy
    language: str = Field(default="javascript", nullable=False)

    # Sort key within module
    order_index: int = Field(default=0, index=True, nullable=False)


class StepProgress(SQLModel, table=True):
    __tablename__ = "step_progress"

    id: Optional[int] = Field(default=None, primary_key=True)

    lesson_id: str = Field(index=True, nullable=False)
    step_id: str = Field(nullable=False)
    status: str = Field(default="not_started", nullable=False)

    updated_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (UniqueConstraint("lesson_id", "step_id"),)


class AppSettings(SQLModel, table=True):
    __tablename__ = "settings"

    # Singleton row
    id: int = Field(default=1, primary_key=True)

    theme: str = Field(default="dark", nullable=False)
    voice_enabled: int = Field(default=1, nullable=False)
