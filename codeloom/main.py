from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlmodel import Session

from .api import build_api_router, get_or_create_settings
from .catalog import list_courses, seed_catalog
from .config import Settings, get_settings
from .db import Store


templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


log = logging.getLogger(__name__)


def create_app(
    store: Optional[Store] = None,
    settings_func: Callable[[], Settings] = get_settings,
    http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> FastAPI:
    store = store or Store(settings_func().database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.open()

        # Seed the starter catalog on first launch.
        # If it fails, we don't want to crash the whole app; courses can be imported.
        if settings_func().seed_catalog:
            try:
                with store.session() as s:
                    stats = seed_catalog(s)
                    if stats:
                        log.info("seeded starter catalog")
            except Exception:
                log.exception("seeding starter catalog failed (database_url=%s)", store.database_url)
        yield
        store.close()

    app = FastAPI(title="CodeLoom", lifespan=lifespan)
    app.state.store = store

    app.include_router(
        build_api_router(
            get_session_dep=store.get_session,
            settings_func=settings_func,
            http_client_factory=http_client_factory,
        )
    )

    @app.get("/", response_class=HTMLResponse)
    def home(request: Request, q: Optional[str] = None, session: Session = Depends(store.get_session)):
        """Course dashboard page."""
        courses = list_courses(session, q)
        prefs = get_or_create_settings(session)
        return templates.TemplateResponse(
            request, "home.html", {"courses": courses, "q": q or "", "theme": prefs.theme}
        )

    return app


app = create_app()


def run() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("codeloom.main:app", host="0.0.0.0", port=3000)
