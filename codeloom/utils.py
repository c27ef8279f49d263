from __future__ import annotations

import re
from typing import Optional

from rapidfuzz import fuzz, process

from .errors import ValidationError


LANGUAGES = ("javascript", "html", "css", "python")

# Labels the curriculum extractor tends to produce.
_LANGUAGE_ALIASES = {
    "javascript": "javascript",
    "js": "javascript",
    "node": "javascript",
    "nodejs": "javascript",
    "ecmascript": "javascript",
    "html": "html",
    "html5": "html",
    "markup": "html",
    "css": "css",
    "css3": "css",
    "stylesheet": "css",
    "python": "python",
    "py": "python",
    "python3": "python",
}

_CODE_BLOCK = re.compile(r"```[\s\S]*?```")


def normalize_language(raw: Optional[str], default: str = "javascript") -> str:
    """Map a free-form language label onto one of ``LANGUAGES``.

    Empty labels fall back to ``default``; anything that doesn't match an
    alias closely enough is rejected.
    """
    label = (raw or "").strip().lower()
    if not label:
        return default
    label = re.sub(r"[\s._-]+", "", label)
    if label in _LANGUAGE_ALIASES:
        return _LANGUAGE_ALIASES[label]

    match = process.extractOne(label, list(_LANGUAGE_ALIASES), scorer=fuzz.ratio, score_cutoff=80)
    if match is None:
        raise ValidationError(f"unsupported lesson language: {raw!r}")
    return _LANGUAGE_ALIASES[match[0]]


def strip_code_blocks(text: str) -> str:
    """Drop fenced code blocks; they are shown in the editor, not spoken."""
    return _CODE_BLOCK.sub("", text).strip()
