from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .schemas import CourseIn, CurriculumDocument, LessonStep, LessonView, StepStatus


@dataclass
class CatalogView:
    """Client-side snapshot of courses, raw step rows and preferences."""

    courses: list[dict[str, Any]] = field(default_factory=list)
    progress: list[dict[str, Any]] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)

    @property
    def voice_enabled(self) -> bool:
        return self.settings.get("voice_enabled", 1) == 1

    def find_course(self, course_id: str) -> Optional[dict[str, Any]]:
        return next((c for c in self.courses if c["id"] == course_id), None)

    def find_lesson(self, lesson_id: str) -> Optional[LessonView]:
        for course in self.courses:
            for mod in course.get("modules", []):
                for lesson in mod.get("lessons", []):
                    if lesson["id"] == lesson_id:
                        return LessonView.model_validate(lesson)
        return None

    def first_lesson(self, course_id: str) -> Optional[LessonView]:
        course = self.find_course(course_id)
        if not course:
            return None
        for mod in course.get("modules", []):
            if mod.get("lessons"):
                return LessonView.model_validate(mod["lessons"][0])
        return None


class CodeloomClient:
    """Async client for the CodeLoom REST API."""

    def __init__(self, base_url: str = "http://localhost:3000", transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=30.0)
        self.view = CatalogView()

    async def __aenter__(self) -> "CodeloomClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str, **params: Any) -> Any:
        r = await self._http.get(path, params=params or None)
        r.raise_for_status()
        return r.json()

    async def _post(self, path: str, body: Any) -> Any:
        r = await self._http.post(path, json=body)
        r.raise_for_status()
        return r.json()

    async def fetch_courses(self, q: Optional[str] = None) -> list[dict[str, Any]]:
        return await self._get("/api/courses", **({"q": q} if q else {}))

    async def fetch_progress(self) -> list[dict[str, Any]]:
        return await self._get("/api/progress")

    async def fetch_settings(self) -> dict[str, Any]:
        return await self._get("/api/settings")

    async def save_settings(self, theme: str, voice_enabled: bool) -> None:
        await self._post("/api/settings", {"theme": theme, "voice_enabled": voice_enabled})
        self.view.settings = {**self.view.settings, "theme": theme, "voice_enabled": 1 if voice_enabled else 0}

    async def save_course(self, course: CourseIn) -> str:
        data = await self._post("/api/courses", course.model_dump(exclude_none=True))
        await self.refresh()
        return data["id"]

    async def extract_curriculum(self, data: str, mime_type: str) -> CurriculumDocument:
        raw = await self._post("/api/curriculum/extract", {"data": data, "mime_type": mime_type})
        return CurriculumDocument.model_validate(raw)

    async def record_step(self, lesson_id: str, step: LessonStep, status: StepStatus = StepStatus.COMPLETED) -> None:
        await self._post(
            "/api/progress",
            {"lesson_id": lesson_id, "step_id": LessonStep(step).value, "status": StepStatus(status).value},
        )

    async def refresh(self, include_settings: bool = False) -> CatalogView:
        """Re-read catalog and progress (and settings) concurrently."""
        if include_settings:
            courses, progress, settings = await asyncio.gather(
                self.fetch_courses(), self.fetch_progress(), self.fetch_settings()
            )
            self.view.settings = settings
        else:
            courses, progress = await asyncio.gather(self.fetch_courses(), self.fetch_progress())
        self.view.courses = courses
        self.view.progress = progress
        return self.view
