import asyncio
import logging
import random
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import httpx

from hunta.core.config import settings
from hunta.core.errors import FetchError, RateLimitedError

logger = logging.getLogger(__name__)

# Rendering proxy (runs page scripts, rotates IPs)
SCRAPINGBEE_BASE = "https://app.scrapingbee.com/api/v1/"
PROXY_TIMEOUT_SECONDS = 30.0

Sleep = Callable[[float], Awaitable[Any]]


@asynccontextmanager
async def client_scope(
    client: Optional[httpx.AsyncClient], timeout: float = PROXY_TIMEOUT_SECONDS
) -> AsyncIterator[httpx.AsyncClient]:
    """Use the caller's client when given, otherwise a short-lived one for this call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own_client:
        yield own_client


def redact_key(s: str) -> str:
    """
    Redact 'key=...' / 'api_key=...' in URLs or text so we never leak API keys in logs/errors.
    """
    if not s:
        return s
    return re.sub(r"(key=)([^&\s]+)", r"\1REDACTED", s)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff used by every outbound GET:
      - 429: rate_limit_delay * 2^(attempt-1) + uniform(0, jitter)
      - anything else: base_delay * attempt
    The first attempt is followed by up to `max_retries` retries.
    """

    max_retries: int = 5
    base_delay: float = 1.0
    rate_limit_delay: float = 10.0
    jitter: float = 1.0

    def rate_limit_wait(self, attempt: int) -> float:
        return self.rate_limit_delay * (2 ** (attempt - 1)) + random.uniform(0.0, self.jitter)

    def failure_wait(self, attempt: int) -> float:
        return self.base_delay * attempt


def default_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.FETCH_MAX_RETRIES,
        base_delay=settings.FETCH_BASE_DELAY_SECONDS,
        rate_limit_delay=settings.FETCH_RATE_LIMIT_DELAY_SECONDS,
    )


async def get_with_backoff(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    policy: Optional[RetryPolicy] = None,
    label: Optional[str] = None,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """
    GET with retries. Returns the first 2xx response, raises FetchError
    (RateLimitedError when the last failure was a 429) once retries are exhausted.
    """
    policy = policy or default_policy()
    label = redact_key(label or url)
    attempt = 0

    while True:
        attempt += 1
        status: Optional[int] = None
        detail = ""
        try:
            resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            detail = f"{type(e).__name__}: {e}"
        else:
            if resp.is_success:
                if attempt > 1:
                    logger.info("GET %s succeeded on attempt %d", label, attempt)
                return resp
            status = resp.status_code
            detail = redact_key(resp.text[:200])

        exhausted = attempt > policy.max_retries

        if status == 429:
            if exhausted:
                logger.error("GET %s still rate limited after %d attempts", label, attempt)
                raise RateLimitedError(
                    f"Rate limited after {attempt} attempts", status_code=status, url=label
                )
            wait = policy.rate_limit_wait(attempt)
            logger.warning("GET %s attempt %d rate limited - waiting %.1fs", label, attempt, wait)
        else:
            if exhausted:
                logger.error("GET %s failed after %d attempts (status=%s)", label, attempt, status)
                raise FetchError(
                    f"Request failed after {attempt} attempts (status={status}): {detail}",
                    status_code=status,
                    url=label,
                )
            wait = policy.failure_wait(attempt)
            logger.warning(
                "GET %s attempt %d failed (status=%s) - %s - retrying in %.1fs",
                label,
                attempt,
                status,
                detail,
                wait,
            )

        await sleep(wait)


async def fetch_page(
    url: str,
    *,
    max_retries: Optional[int] = None,
    cookies: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Sleep = asyncio.sleep,
) -> str:
    """
    Fetches `url` through the rendering proxy with JS rendering + premium (rotating) proxies
    and returns the raw page content.
    """
    api_key = (settings.SCRAPINGBEE_API_KEY or "").strip()
    if not api_key:
        raise FetchError("SCRAPINGBEE_API_KEY is not set", url=url)

    params: Dict[str, Any] = {
        "api_key": api_key,
        "url": url,
        "render_js": "true",
        "premium_proxy": "true",
    }
    if cookies:
        params["cookies"] = ";".join(f"{k}={v}" for k, v in cookies.items())

    policy = policy or default_policy()
    if max_retries is not None:
        policy = replace(policy, max_retries=max_retries)

    async with client_scope(client, PROXY_TIMEOUT_SECONDS) as c:
        resp = await get_with_backoff(c, SCRAPINGBEE_BASE, params=params, policy=policy, label=url, sleep=sleep)

    html = resp.text
    logger.info("fetch_page success for %s (length=%d)", url, len(html))
    return html
