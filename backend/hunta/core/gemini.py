import asyncio
import json
import logging
import os
import random
import re
from typing import Any, Dict, Optional

import httpx

from hunta.core.config import settings
from hunta.core.errors import GeminiRateLimitError, GeminiRequestError
from hunta.core.fetch import client_scope, redact_key

logger = logging.getLogger(__name__)

# Service endpoint for Gemini API (v1beta)
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Retry behavior for 429/503
MAX_RETRIES = int(os.environ.get("GEMINI_MAX_RETRIES", "2"))
MAX_BACKOFF_SECONDS = float(os.environ.get("GEMINI_MAX_BACKOFF_SECONDS", "20"))
TIMEOUT_SECONDS = 60


def _model_path(name: str) -> str:
    name = (name or "").strip()
    return name if name.startswith("models/") else f"models/{name}"


def _extract_json_best_effort(text: str) -> Dict[str, Any]:
    """
    Robust JSON extraction (handles fenced blocks, extra text, etc.).
    Returns the first valid JSON object found.
    """
    # 1) Prefer fenced ```json ... ```
    fenced = re.search(r"```json\s*(\{.*?\})\s*```", text, re.DOTALL | re.IGNORECASE)
    if fenced:
        return json.loads(fenced.group(1).strip())

    # 2) Try non-greedy blocks
    blocks = re.findall(r"\{.*?\}", text, re.DOTALL)
    for b in blocks:
        try:
            return json.loads(b.strip())
        except ValueError:
            continue

    # 3) Greedy fallback
    m = re.search(r"\{.*\}", text, re.DOTALL)
    if not m:
        raise ValueError("No JSON object found in model output")
    return json.loads(m.group(0))


def _retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    retry_after = resp.headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


async def _sleep_for_retry(resp: httpx.Response, attempt: int) -> None:
    """
    Respect Retry-After header when present; otherwise exponential backoff with jitter.
    """
    wait = _retry_after_seconds(resp)
    if wait is not None:
        await asyncio.sleep(max(0.5, min(wait, MAX_BACKOFF_SECONDS)))
        return

    # Exponential backoff with jitter
    base = min(MAX_BACKOFF_SECONDS, (2 ** attempt))
    jitter = random.uniform(0.0, 0.5)
    await asyncio.sleep(base + jitter)


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Dict[str, Any],
    json_payload: Dict[str, Any],
    max_retries: int = MAX_RETRIES,
) -> httpx.Response:
    """
    POST with retries for 429/503.
    """
    last_resp: Optional[httpx.Response] = None

    for attempt in range(max_retries + 1):
        resp = await client.post(url, params=params, json=json_payload)
        last_resp = resp

        if resp.status_code in (429, 503):
            # If we still have retries left, back off and try again
            if attempt < max_retries:
                logger.warning("Gemini returned %d, retry %d/%d", resp.status_code, attempt + 1, max_retries)
                await _sleep_for_retry(resp, attempt)
                continue

        return resp

    # Should never hit here, but just in case:
    return last_resp  # type: ignore[return-value]


async def generate_json(
    prompt: str,
    *,
    schema: Optional[Dict[str, Any]] = None,
    temperature: float = 0.6,
    max_retries: int = MAX_RETRIES,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Sends a text prompt to Gemini and returns the parsed JSON object from the answer.

    - Uses Structured Output (response_mime_type + response_json_schema) when a schema is given
    - Retries 429/503 with backoff
    - Raises GeminiRateLimitError / GeminiRequestError, never leaking the API key
    """
    api_key = (getattr(settings, "GEMINI_API_KEY", "") or "").strip()
    if not api_key:
        raise GeminiRequestError("GEMINI_API_KEY is not set")

    url = f"{API_BASE}/{_model_path(settings.GEMINI_MODEL)}:generateContent"

    generation_config: Dict[str, Any] = {
        "response_mime_type": "application/json",
        "temperature": temperature,
    }
    if schema is not None:
        generation_config["response_json_schema"] = schema

    payload = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": generation_config,
    }

    try:
        async with client_scope(client, TIMEOUT_SECONDS) as c:
            r = await _post_with_retry(c, url, params={"key": api_key}, json_payload=payload, max_retries=max_retries)
    except httpx.HTTPError as e:
        raise GeminiRequestError(f"Gemini request failed: {type(e).__name__}: {redact_key(str(e))}") from e

    if r.status_code == 429:
        raise GeminiRateLimitError(
            "Gemini rate limit exceeded",
            retry_after_seconds=_retry_after_seconds(r),
            body=redact_key(r.text)[:2000],
        )

    if r.status_code >= 400:
        raise GeminiRequestError(
            f"Gemini request failed: {r.status_code}",
            status_code=r.status_code,
            body=redact_key(r.text)[:2000],
        )

    try:
        data = r.json()
    except ValueError as e:
        raise GeminiRequestError("Gemini returned a non-JSON body", status_code=r.status_code) from e

    # Preferred structured output location
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as e:
        raise GeminiRequestError(f"Unexpected Gemini response shape; raw={json.dumps(data)[:2000]}") from e

    # 1) Strict JSON parse first
    try:
        obj = json.loads(text)
    except ValueError:
        # 2) Best-effort extraction
        try:
            obj = _extract_json_best_effort(text)
        except ValueError as e:
            raise GeminiRequestError(f"Gemini output is not JSON: {text[:200]}") from e

    if not isinstance(obj, dict):
        raise GeminiRequestError("Gemini output is not a JSON object")
    return obj
