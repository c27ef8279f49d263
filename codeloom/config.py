from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: str
    seed_catalog: bool

    modal_api_key: Optional[str]
    modal_api_url: str
    modal_model: str

    gemini_api_key: Optional[str]
    gemini_model: str
    gemini_tts_model: str

    python_executable: str
    node_executable: str
    run_timeout_s: float


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off", ""}


def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "sqlite:///./codeloom.db").strip()

    # Keys stay optional here; the endpoints that need them fail loudly.
    modal_api_key = os.getenv("MODAL_API_KEY", "").strip() or None
    gemini_api_key = os.getenv("GEMINI_API_KEY", "").strip() or None

    return Settings(
        database_url=database_url,
        seed_catalog=_flag("CODELOOM_SEED", "1"),
        modal_api_key=modal_api_key,
        modal_api_url=os.getenv(
            "MODAL_API_URL", "https://api.us-west-2.modal.direct/v1/chat/completions"
        ).strip(),
        modal_model=os.getenv("MODAL_MODEL", "zai-org/GLM-5-FP8").strip(),
        gemini_api_key=gemini_api_key,
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-3-flash-preview").strip(),
        gemini_tts_model=os.getenv("GEMINI_TTS_MODEL", "gemini-2.5-flash-preview-tts").strip(),
        python_executable=os.getenv("CODELOOM_PYTHON", "").strip() or sys.executable,
        node_executable=os.getenv("CODELOOM_NODE", "node").strip(),
        run_timeout_s=float(os.getenv("CODELOOM_RUN_TIMEOUT", "10")),
    )
