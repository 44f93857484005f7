from __future__ import annotations

import json
import re
import time
from typing import Any

import httpx

from ledger_recon.core.config import settings
from ledger_recon.core.errors import ProviderError
from ledger_recon.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)


def ai_available() -> bool:
    return bool(settings.ai_enabled and settings.openai_api_key)


def chat_json(
    *,
    purpose: str,
    system: str,
    user: str,
    timeout: float | None = None,
    max_tokens: int | None = None,
) -> dict[str, Any]:
    """Run one chat completion that must answer with a JSON object.

    Raises ProviderError on timeouts, HTTP errors (429 marked retryable), refusals
    and unparseable content.
    """
    if not ai_available():
        raise ProviderError("AI provider is not configured", provider="openai")

    payload: dict[str, Any] = {
        "model": settings.openai_model,
        "temperature": 0,
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
    }
    if max_tokens:
        payload["max_tokens"] = max_tokens

    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    start = time.monotonic()
    try:
        resp = httpx.post(
            url,
            headers=headers,
            json=payload,
            timeout=float(timeout or settings.ai_timeout_seconds or 20.0),
            follow_redirects=True,
        )
        resp.raise_for_status()
    except httpx.TimeoutException as e:
        _log_failure(purpose, "timeout", start)
        raise ProviderError(f"{purpose}: timed out", provider="openai", retryable=True) from e
    except httpx.HTTPStatusError as e:
        code = e.response.status_code if e.response is not None else None
        _log_failure(purpose, f"http_{code}", start)
        raise ProviderError(
            f"{purpose}: HTTP {code}", provider="openai", retryable=code == 429
        ) from e
    except httpx.HTTPError as e:
        _log_failure(purpose, type(e).__name__, start)
        raise ProviderError(f"{purpose}: {e}", provider="openai") from e

    try:
        raw = resp.json()
        msg = raw["choices"][0]["message"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        _log_failure(purpose, "malformed_envelope", start)
        raise ProviderError(f"{purpose}: malformed response", provider="openai") from e

    if not isinstance(msg, dict) or msg.get("refusal"):
        _log_failure(purpose, "refusal", start)
        raise ProviderError(f"{purpose}: refused", provider="openai")

    obj = _parse_json_object(str(msg.get("content") or ""))
    if not isinstance(obj, dict):
        _log_failure(purpose, "malformed_json", start)
        raise ProviderError(f"{purpose}: response was not a JSON object", provider="openai")

    log_event(logger, "ai.request.success", purpose=purpose, duration_ms=monotonic_ms(start))
    return obj


def _log_failure(purpose: str, reason: str, start: float) -> None:
    log_event(
        logger,
        "ai.request.failure",
        purpose=purpose,
        reason=reason,
        duration_ms=monotonic_ms(start),
    )


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Models sometimes wrap the object in prose or a code fence.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None


def truncate_text(text: str, *, max_chars: int) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ").strip()
    if max_chars <= 0 or len(t) <= max_chars:
        return t
    return t[: max_chars - 20].rstrip() + "\n\n[TRUNCATED]"
