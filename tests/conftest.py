from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from codeloom.config import get_settings
from codeloom.db import Store
from codeloom.main import create_app
from codeloom.schemas import CourseIn, FeedbackResponse, LessonView, TurnResponse


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def app_settings(tmp_path):
    return replace(
        get_settings(),
        database_url=f"sqlite:///{tmp_path / 'codeloom-test.db'}",
        seed_catalog=False,
        modal_api_key="modal-test-key",
        gemini_api_key="gemini-test-key",
    )


@pytest.fixture
def store(app_settings):
    s = Store(app_settings.database_url)
    s.open()
    yield s
    s.close()


@pytest.fixture
def session(store):
    with store.session() as s:
        yield s


@pytest.fixture
def client(store, app_settings):
    app = create_app(store, lambda: app_settings)
    with TestClient(app) as c:
        yield c


def two_lesson_course(course_id: str = "course-a") -> CourseIn:
    return CourseIn.model_validate(
        {
            "id": course_id,
            "title": "Two Lessons",
            "description": "A course with two lessons",
            "modules": [
                {
                    "id": f"{course_id}-m1",
                    "title": "Basics",
                    "lessons": [
                        {"id": f"{course_id}-l1", "title": "One", "language": "python"},
                        {"id": f"{course_id}-l2", "title": "Two", "language": "javascript"},
                    ],
                }
            ],
        }
    )


def lesson_view(language: str = "python", lesson_id: str = "l-test") -> LessonView:
    return LessonView(
        id=lesson_id,
        title="Test Lesson",
        concept="Variables",
        example="x = 1",
        practice_guided="Make y",
        practice_independent="Make z",
        language=language,
    )


class FakeTutor:
    """Scripted stand-in for GeminiTutor."""

    def __init__(self, turns: Optional[list[Any]] = None, feedback: Any = None, speech: Any = None):
        self.turns = list(turns or [])
        self.feedback = feedback
        self.speech = speech
        self.turn_calls: list[dict[str, Any]] = []
        self.feedback_calls: list[tuple[str, str]] = []
        self.speech_calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.feedback_gate: Optional[asyncio.Event] = None
        self.speech_gate: Optional[asyncio.Event] = None

    async def turn(self, lesson, step, history, user_input=None, user_code=None):
        self.turn_calls.append(
            {"lesson": lesson.id, "step": step, "history": list(history), "user_code": user_code}
        )
        item = self.turns.pop(0) if self.turns else TurnResponse(text="Hello!")
        if self.gate is not None:
            gate, self.gate = self.gate, None
            await gate.wait()
        if isinstance(item, BaseException):
            raise item
        return item

    async def code_feedback(self, lesson, code, output):
        self.feedback_calls.append((code, output))
        if self.feedback_gate is not None:
            gate, self.feedback_gate = self.feedback_gate, None
            await gate.wait()
        if isinstance(self.feedback, BaseException):
            raise self.feedback
        return self.feedback or FeedbackResponse(is_correct=True, feedback="Nice work")

    async def synthesize_speech(self, text):
        self.speech_calls.append(text)
        if self.speech_gate is not None:
            gate, self.speech_gate = self.speech_gate, None
            await gate.wait()
        if isinstance(self.speech, BaseException):
            raise self.speech
        return self.speech
