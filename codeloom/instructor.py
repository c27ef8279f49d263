from __future__ import annotations

from collections.abc import Callable
import logging
import time
from typing import Any, Optional

import httpx

from .catalog import parse_course_json
from .client import CodeloomClient
from .errors import UpstreamQuotaExceeded, ValidationError
from .runner import CodeRunner, RunResult
from .schemas import ChatMessage, CourseIn, LessonStep, LessonView, StepStatus
from .speech import SpeechController


log = logging.getLogger(__name__)

STEPS: list[LessonStep] = list(LessonStep)

APOLOGY_QUOTA_INITIAL = "I'm a bit overwhelmed with requests right now! Please wait a moment and try again."
APOLOGY_INITIAL = "I encountered an error while trying to respond. Please try refreshing the page."
APOLOGY_QUOTA = "I'm sorry, I've reached my limit for a moment. Can we try again in a few seconds?"
APOLOGY = "Something went wrong on my end. Could you try sending that again?"

IMPORT_QUOTA = "The AI is currently at its limit. Please wait a minute before trying to upload another document."
IMPORT_FAILED = "We couldn't process this file. Please ensure it's a valid PDF or Text file."


class EditorBuffer:
    """The code editor's contents, shared by the instructor and the runner."""

    def __init__(self, text: str = ""):
        self.text = text
        self.version = 0

    def set(self, text: str) -> None:
        self.text = text
        self.version += 1


class InstructorSession:
    """Conversation with the tutor for one (lesson, step) at a time.

    Responses are tagged with the (lesson, step, generation) they were
    requested for; anything that lands after the session moved on is
    dropped without touching the transcript, editor or audio.
    """

    def __init__(
        self,
        tutor: Any,
        editor: EditorBuffer,
        api: Optional[CodeloomClient] = None,
        speech: Optional[SpeechController] = None,
        voice_enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.tutor = tutor
        self.editor = editor
        self.api = api
        self.speech = speech
        self.voice_enabled = voice_enabled
        self._clock = clock

        self.lesson: Optional[LessonView] = None
        self.step: LessonStep = LessonStep.EXPLANATION
        self.transcript: list[ChatMessage] = []
        self.loading = False
        self._generation = 0

    @property
    def key(self) -> Optional[tuple[str, LessonStep, int]]:
        if self.lesson is None:
            return None
        return (self.lesson.id, self.step, self._generation)

    def _stop_speech(self) -> None:
        if self.speech is not None:
            self.speech.stop()

    async def enter(self, lesson: LessonView, step: LessonStep = LessonStep.EXPLANATION) -> Optional[ChatMessage]:
        self._stop_speech()
        self.lesson = lesson
        self.step = LessonStep(step)
        self.transcript = []
        self._generation += 1
        return await self._request_turn(initial=True)

    async def send(self, text: str) -> Optional[ChatMessage]:
        if self.lesson is None or not text.strip() or self.loading:
            return None
        self.transcript.append(ChatMessage(role="user", text=text, timestamp=self._clock()))
        return await self._request_turn(initial=False)

    async def _request_turn(self, initial: bool) -> Optional[ChatMessage]:
        key = self.key
        history = list(self.transcript)
        code = None if initial else self.editor.text

        self.loading = True
        try:
            response = await self.tutor.turn(self.lesson, self.step, history, user_code=code)
        except Exception as e:
            if key != self.key:
                return None
            log.exception("instructor turn failed for %s", key)
            quota = isinstance(e, UpstreamQuotaExceeded)
            if initial:
                text = APOLOGY_QUOTA_INITIAL if quota else APOLOGY_INITIAL
            else:
                text = APOLOGY_QUOTA if quota else APOLOGY
            msg = ChatMessage(role="model", text=text, timestamp=self._clock())
            self.transcript.append(msg)
            return msg
        finally:
            if key == self.key:
                self.loading = False

        if key != self.key:
            log.debug("discarding stale instructor response for %s", key)
            return None

        msg = ChatMessage(
            role="model",
            text=response.text,
            timestamp=self._clock(),
            has_code_update=bool(response.code_update),
        )
        self.transcript.append(msg)
        if response.code_update:
            self.editor.set(response.code_update)

        if self.voice_enabled and self.speech is not None:
            try:
                await self.speech.speak(
                    msg.text, int(msg.timestamp * 1000), is_current=lambda: self.key == key
                )
            except Exception:
                log.exception("speech playback failed")
        return msg

    async def go_to_step(self, step: LessonStep) -> Optional[ChatMessage]:
        step = LessonStep(step)
        if self.lesson is None or step == self.step:
            return None
        return await self.enter(self.lesson, step)

    async def advance(self) -> LessonStep:
        """Mark the current step completed, then move one step on (no wrap)."""
        if self.lesson is None:
            return self.step
        current = self.step
        nxt = STEPS[min(STEPS.index(current) + 1, len(STEPS) - 1)]

        if self.api is not None:
            try:
                await self.api.record_step(self.lesson.id, current, StepStatus.COMPLETED)
                await self.api.refresh()
            except httpx.HTTPError:
                log.exception("progress write failed for %s/%s", self.lesson.id, current.value)

        if nxt != current:
            await self.enter(self.lesson, nxt)
        return nxt

    def close(self) -> None:
        self._generation += 1
        self.loading = False
        if self.speech is not None:
            self.speech.close()


class Classroom:
    """Lesson selection glue: one editor shared by instructor and runner."""

    def __init__(self, api: CodeloomClient, instructor: InstructorSession, runner: CodeRunner):
        self.api = api
        self.instructor = instructor
        self.runner = runner
        self.editor = instructor.editor

    async def load(self) -> None:
        view = await self.api.refresh(include_settings=True)
        self.instructor.voice_enabled = view.voice_enabled

    async def select_course(self, course_id: str) -> Optional[ChatMessage]:
        lesson = self.api.view.first_lesson(course_id)
        if lesson is None:
            return None
        return await self.select_lesson(lesson.id)

    async def select_lesson(self, lesson_id: str) -> Optional[ChatMessage]:
        lesson = self.api.view.find_lesson(lesson_id)
        if lesson is None:
            return None
        self.editor.set(lesson.example)
        self.runner.prepare(lesson)
        return await self.instructor.enter(lesson, LessonStep.EXPLANATION)

    async def import_json(self, text: str) -> str:
        """Validate and save pasted course JSON; returns a status line."""
        try:
            course = parse_course_json(text)
        except ValidationError as e:
            return f"Failed. {e}"
        return await self._save(course)

    async def import_document(self, data: str, mime_type: str) -> str:
        """Turn an uploaded document into a course via the tutor service."""
        try:
            course = await self.api.extract_curriculum(data, mime_type)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                return IMPORT_QUOTA
            return IMPORT_FAILED
        except httpx.HTTPError:
            log.exception("curriculum extraction request failed")
            return IMPORT_FAILED
        return await self._save(course)

    async def _save(self, course: CourseIn) -> str:
        try:
            await self.api.save_course(course)
        except httpx.HTTPError:
            log.exception("saving course %r failed", course.title)
            return "Failed. The server did not accept the course."
        return "Imported!"

    def reset_code(self) -> None:
        if self.instructor.lesson is not None:
            self.editor.set(self.instructor.lesson.example)

    async def run_code(self) -> Optional[RunResult]:
        if self.instructor.lesson is None:
            return None
        return await self.runner.run(self.instructor.lesson, self.editor.text)

    def close(self) -> None:
        self.runner.close()
        self.instructor.close()
