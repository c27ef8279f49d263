from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any, Optional

import httpx

from .config import Settings
from .errors import ConfigurationError, UpstreamError


log = logging.getLogger(__name__)

MAX_TOKENS = 500


def default_client(timeout_s: float = 60.0) -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True, timeout=timeout_s)


async def proxy_chat(
    messages: list[dict[str, Any]],
    settings: Settings,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> Any:
    """Forward a chat transcript to the hosted completion endpoint.

    Returns the upstream JSON untouched. Raises ``ConfigurationError`` when
    no key is set and ``UpstreamError`` (carrying the upstream status, if
    any) when the call fails.
    """
    if not settings.modal_api_key:
        raise ConfigurationError("MODAL_API_KEY is not configured.")

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {settings.modal_api_key}",
    }
    body = {"model": settings.modal_model, "messages": messages, "max_tokens": MAX_TOKENS}

    factory = client_factory or default_client
    try:
        async with factory() as client:
            r = await client.post(settings.modal_api_url, json=body, headers=headers)
    except httpx.HTTPError as e:
        log.exception("chat proxy transport failure")
        raise UpstreamError(f"transport failure: {e}") from e

    if r.is_error:
        log.error("chat proxy upstream error: %s %s", r.status_code, r.text)
        raise UpstreamError(r.text, status_code=r.status_code)

    try:
        return r.json()
    except ValueError as e:
        log.exception("chat proxy got a non-JSON body (%s)", r.status_code)
        raise UpstreamError("upstream returned non-JSON body") from e
