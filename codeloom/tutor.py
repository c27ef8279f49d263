"""
Client for the generative-AI tutor service (Gemini ``generateContent``).

Four calls, each validated into a tagged result at the boundary:

- ``turn``: one instructor turn -> ``TurnResponse``
- ``code_feedback``: review of a code run -> ``FeedbackResponse``
- ``extract_curriculum``: document -> ``CurriculumDocument``
- ``synthesize_speech``: text -> base64 16-bit PCM (24 kHz)

Quota-class failures are retried with doubling delay; everything else
propagates on the first failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import json
import logging
from typing import Any, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .config import Settings, get_settings
from .errors import ConfigurationError, UpstreamError, UpstreamQuotaExceeded
from .schemas import (
    ChatMessage,
    CurriculumDocument,
    FeedbackResponse,
    LessonStep,
    LessonView,
    TurnResponse,
)


log = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

GEMINI_API = "https://generativelanguage.googleapis.com/v1beta/models/"
PCM_SAMPLE_RATE = 24000
VOICE_NAME = "Kore"


INSTRUCTOR_PROMPT = """You are an expert AI Coding Instructor named "Loom".
Your goal is to teach the student effectively using micro-steps.
Current Lesson: {lesson.title}
Current Step: {step}

Behavior Guidelines:
- Teach in short, digestible chunks.
- Ask reflection questions to ensure understanding.
- If the student is confused, offer hints before giving answers.
- Praise correct answers and reframe mistakes constructively.
- Maintain a warm, encouraging, and professional tone.
- Do NOT just give the code unless it's the 'example' step or explicitly requested after multiple hints.

Step Context:
- explanation: Explain the concept clearly.
- example: Show the worked example provided in the lesson data.
- guided: Guide them through the practice task.
- independent: Let them solve the problem on their own.
- feedback: Analyze their code and provide constructive feedback.

Lesson Data:
Concept: {lesson.concept}
Example: {lesson.example}
Guided Task: {lesson.practice_guided}
Independent Task: {lesson.practice_independent}
Language: {lesson.language}

IMPORTANT: Your response MUST be in JSON format:
{{
  "text": "Your verbal response to the student. Keep this as pure teaching text, no large code blocks.",
  "codeUpdate": "Optional: the FULL code for the student's editor when you show or correct code."
}}
"""

FEEDBACK_PROMPT = """Analyze this code for the lesson "{lesson.title}".
Language: {lesson.language}
Task: {lesson.practice_independent}
User Code:
```{lesson.language}
{code}
```
Execution Output:
{output}

Provide feedback in JSON format:
{{
  "isCorrect": boolean,
  "feedback": "string",
  "suggestions": ["string"],
  "hints": ["string"]
}}
"""

CURRICULUM_PROMPT = """You are an expert curriculum designer.
Analyze the provided document and extract a structured "Learn to Code" curriculum.
The output MUST be a JSON object matching this structure:
{
  "title": "Curriculum Title",
  "description": "Brief description",
  "modules": [
    {
      "id": "m1",
      "title": "Module Title",
      "lessons": [
        {
          "id": "l1",
          "title": "Lesson Title",
          "concept": "Clear explanation of the concept",
          "example": "A worked code example",
          "practice_guided": "A guided practice task description",
          "practice_independent": "An independent practice problem description",
          "language": "javascript | html | css | python"
        }
      ]
    }
  ]
}

Ensure the content is educational, follows a logical progression, and includes practical coding tasks.
"""

TURN_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "text": {"type": "STRING"},
        "codeUpdate": {"type": "STRING", "nullable": True},
    },
    "required": ["text"],
}

FEEDBACK_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "isCorrect": {"type": "BOOLEAN"},
        "feedback": {"type": "STRING"},
        "suggestions": {"type": "ARRAY", "items": {"type": "STRING"}},
        "hints": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["isCorrect", "feedback"],
}


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``fn``; on quota errors wait and retry, doubling the delay."""
    for attempt in range(1, retries + 1):
        try:
            return await fn()
        except UpstreamQuotaExceeded:
            if attempt == retries:
                raise
            log.warning("AI quota exceeded, retrying in %.1fs (attempt %d/%d)", delay, attempt, retries)
            await sleep(delay)
            delay *= 2
    raise UpstreamError("max retries exceeded")


def _raise_for_upstream(r: httpx.Response) -> None:
    if not r.is_error:
        return
    body = r.text
    if r.status_code == 429 or "RESOURCE_EXHAUSTED" in body or "quota" in body.lower():
        raise UpstreamQuotaExceeded(f"quota exceeded ({r.status_code})", status_code=r.status_code)
    raise UpstreamError(f"AI service error {r.status_code}: {body[:300]}", status_code=r.status_code)


def _first_part(data: dict[str, Any]) -> dict[str, Any]:
    try:
        return data["candidates"][0]["content"]["parts"][0]
    except (KeyError, IndexError, TypeError) as e:
        raise UpstreamError("AI response has no content") from e


def parse_result(text: str, model: type[M]) -> M:
    """Validate a JSON payload into one of the tagged result models."""
    try:
        raw = json.loads(text or "{}")
    except json.JSONDecodeError as e:
        raise UpstreamError(f"malformed JSON from AI service: {e.msg}") from e
    if not isinstance(raw, dict):
        raise UpstreamError("AI service returned a non-object JSON payload")
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise UpstreamError(f"unexpected {model.__name__} shape: {e.error_count()} problem(s)") from e


class GeminiTutor:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-3-flash-preview",
        tts_model: str = "gemini-2.5-flash-preview-tts",
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.model = model
        self.tts_model = tts_model
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=60.0))
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "GeminiTutor":
        settings = settings or get_settings()
        return cls(settings.gemini_api_key, settings.gemini_model, settings.gemini_tts_model, **kwargs)

    async def _generate(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY is not configured.")
        url = f"{GEMINI_API}{model}:generateContent"
        try:
            async with self._client_factory() as client:
                r = await client.post(url, json=payload, headers={"x-goog-api-key": self.api_key})
        except httpx.HTTPError as e:
            raise UpstreamError(f"AI service unreachable: {e}") from e
        _raise_for_upstream(r)
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamError("AI service returned a non-JSON body") from e

    async def _generate_json(self, payload: dict[str, Any], result: type[M]) -> M:
        async def call() -> M:
            data = await self._generate(self.model, payload)
            return parse_result(_first_part(data).get("text") or "", result)

        return await with_retry(call, sleep=self._sleep)

    async def turn(
        self,
        lesson: LessonView,
        step: LessonStep,
        history: Sequence[ChatMessage],
        user_input: Optional[str] = None,
        user_code: Optional[str] = None,
    ) -> TurnResponse:
        step = LessonStep(step)
        contents = [{"role": m.role, "parts": [{"text": m.text}]} for m in history]

        if user_input or user_code:
            prompt = user_input or ""
            if user_code:
                prompt += f"\n\nUser's current code:\n```{lesson.language}\n{user_code}\n```"
            contents.append({"role": "user", "parts": [{"text": prompt}]})
        elif not history:
            contents.append({"role": "user", "parts": [{"text": f"Start the {step.value} step for this lesson."}]})

        payload = {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": INSTRUCTOR_PROMPT.format(lesson=lesson, step=step.value)}]},
            "generationConfig": {
                "temperature": 0.7,
                "responseMimeType": "application/json",
                "responseSchema": TURN_SCHEMA,
            },
        }
        return await self._generate_json(payload, TurnResponse)

    async def code_feedback(self, lesson: LessonView, code: str, output: str) -> FeedbackResponse:
        prompt = FEEDBACK_PROMPT.format(lesson=lesson, code=code, output=output)
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json", "responseSchema": FEEDBACK_SCHEMA},
        }
        return await self._generate_json(payload, FeedbackResponse)

    async def extract_curriculum(self, data: str, mime_type: str) -> CurriculumDocument:
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inlineData": {"data": data, "mimeType": mime_type}},
                        {"text": CURRICULUM_PROMPT},
                    ],
                }
            ],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        return await self._generate_json(payload, CurriculumDocument)

    async def synthesize_speech(self, text: str) -> str:
        """Base64 PCM for ``text``; raises on failure so callers can fall back."""
        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": VOICE_NAME}}},
            },
        }

        async def call() -> str:
            data = await self._generate(self.tts_model, payload)
            audio = (_first_part(data).get("inlineData") or {}).get("data")
            if not audio:
                raise UpstreamError("speech response carried no audio")
            return audio

        return await with_retry(call, retries=3, delay=1.5, sleep=self._sleep)
