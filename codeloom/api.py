from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlmodel import Session

from .catalog import import_course, list_courses
from .config import Settings
from .errors import ConfigurationError, UpstreamError, UpstreamQuotaExceeded
from .modal_proxy import proxy_chat
from .models import AppSettings
from .progress import list_progress, record_step
from .schemas import ChatProxyIn, CourseIn, CurriculumExtractIn, ProgressIn, SettingsIn
from .tutor import GeminiTutor


log = logging.getLogger(__name__)


def get_or_create_settings(session: Session) -> AppSettings:
    row = session.get(AppSettings, 1)
    if row is None:
        row = AppSettings(id=1)
        session.add(row)
        session.commit()
        session.refresh(row)
    return row


def build_api_router(
    *,
    get_session_dep: Callable[[], Session],
    settings_func: Callable[[], Settings],
    http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> APIRouter:
    """JSON API routes.

    - Catalog read (with computed progress) and import
    - Step progress log (raw rows, upsert)
    - Singleton settings row
    - Chat-completion proxy and curriculum extraction

    Kept as a router factory so the app can inject the store and upstream
    HTTP clients.
    """

    r = APIRouter(prefix="/api")

    @r.get("/courses")
    def get_courses(q: Optional[str] = None, session: Session = Depends(get_session_dep)):
        return list_courses(session, q)

    @r.post("/courses")
    def post_course(payload: CourseIn, session: Session = Depends(get_session_dep)):
        stats = import_course(session, payload)
        return {"id": stats.course_id}

    @r.get("/progress")
    def get_progress(session: Session = Depends(get_session_dep)):
        return list_progress(session)

    @r.post("/progress")
    def post_progress(payload: ProgressIn, session: Session = Depends(get_session_dep)):
        record_step(session, payload.lesson_id, payload.step_id, payload.status)
        return {"success": True}

    @r.get("/settings")
    def get_settings_row(session: Session = Depends(get_session_dep)):
        return get_or_create_settings(session)

    @r.post("/settings")
    def post_settings(payload: SettingsIn, session: Session = Depends(get_session_dep)):
        row = get_or_create_settings(session)
        row.theme = payload.theme
        row.voice_enabled = 1 if payload.voice_enabled else 0
        session.add(row)
        session.commit()
        return {"success": True}

    @r.post("/modal-chat")
    async def modal_chat(payload: ChatProxyIn) -> Any:
        try:
            return await proxy_chat(payload.messages, settings_func(), http_client_factory)
        except ConfigurationError as e:
            return JSONResponse({"error": str(e)}, status_code=500)
        except UpstreamError as e:
            if e.status_code is None:
                return JSONResponse(
                    {"error": "Internal server error when proxying to Modal API"}, status_code=500
                )
            return JSONResponse(
                {"error": "Failed to get response from Modal API", "details": str(e)},
                status_code=e.status_code,
            )

    @r.post("/curriculum/extract")
    async def extract_curriculum(payload: CurriculumExtractIn):
        tutor = GeminiTutor.from_settings(settings_func(), client_factory=http_client_factory)
        try:
            doc = await tutor.extract_curriculum(payload.data, payload.mime_type)
        except ConfigurationError as e:
            raise HTTPException(500, str(e))
        except UpstreamQuotaExceeded:
            raise HTTPException(
                429,
                "The AI is currently at its limit. Please wait a minute before uploading another document.",
            )
        except UpstreamError as e:
            log.warning("curriculum extraction failed: %s", e)
            raise HTTPException(502, "We couldn't process this file. Please ensure it's a valid PDF or text file.")
        return doc.model_dump(exclude={"id"})

    return r
