"""
Request/response models for CodeLoom.

Defines Pydantic models for:
- Lesson steps and progress status
- Course import payloads (REST and curriculum extraction)
- Tagged AI results validated at the service boundary
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import normalize_language


class LessonStep(str, Enum):
    EXPLANATION = "explanation"
    EXAMPLE = "example"
    GUIDED = "guided"
    INDEPENDENT = "independent"
    FEEDBACK = "feedback"


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    COMPLETED = "completed"


class LessonStatus(str, Enum):
    """Display-only tri-state derived from step rows; never persisted."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# -----------------------------------------------------------------------------
# Catalog import
# -----------------------------------------------------------------------------

class LessonIn(BaseModel):
    id: Optional[str] = None
    title: str
    concept: str = ""
    example: str = ""
    practice_guided: str = ""
    practice_independent: str = ""
    language: str = "javascript"

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, v: Any) -> str:
        return normalize_language(v)


class LessonView(LessonIn):
    """A lesson as the client sees it in ``GET /api/courses``."""

    id: str
    module_id: Optional[str] = None
    order_index: int = 0


class ModuleIn(BaseModel):
    id: Optional[str] = None
    title: str
    lessons: list[LessonIn] = Field(default_factory=list)


class CourseIn(BaseModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    image_url: Optional[str] = None
    modules: list[ModuleIn] = Field(default_factory=list)


class CurriculumDocument(CourseIn):
    """Course shape returned by document-to-curriculum extraction."""


# -----------------------------------------------------------------------------
# Progress / settings / proxy
# -----------------------------------------------------------------------------

class ProgressIn(BaseModel):
    lesson_id: str = Field(min_length=1)
    step_id: LessonStep
    status: StepStatus = StepStatus.COMPLETED


class SettingsIn(BaseModel):
    theme: str = "dark"
    voice_enabled: bool = True


class ChatProxyIn(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)


class CurriculumExtractIn(BaseModel):
    data: str = Field(min_length=1, description="base64 document body")
    mime_type: str = "text/plain"


# -----------------------------------------------------------------------------
# AI results
# -----------------------------------------------------------------------------

class TurnResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["turn"] = "turn"
    text: str
    code_update: Optional[str] = Field(default=None, alias="codeUpdate")


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["feedback"] = "feedback"
    is_correct: bool = Field(alias="isCorrect")
    feedback: str
    suggestions: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    text: str
    timestamp: float
    has_code_update: bool = False
