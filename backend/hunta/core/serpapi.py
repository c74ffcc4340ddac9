from typing import Any, Dict, Optional

import httpx

from hunta.core.config import settings
from hunta.core.errors import SourceError
from hunta.core.fetch import RetryPolicy, client_scope, get_with_backoff

SERPAPI_BASE = "https://serpapi.com/search.json"


def serpapi_key() -> str:
    return (getattr(settings, "SERPAPI_API_KEY", "") or "").strip()


async def shopping_search(
    q: str,
    gl: str = "uk",
    hl: str = "en",
    num: int = 20,
    client: Optional[httpx.AsyncClient] = None,
    policy: Optional[RetryPolicy] = None,
) -> Dict[str, Any]:
    """
    Calls SerpAPI Google Shopping and returns the raw JSON response.
    Transient failures are retried by get_with_backoff; an error payload becomes SourceError.
    """
    api_key = serpapi_key()
    if not api_key:
        raise SourceError("google_shopping", "SERPAPI_API_KEY is not set")

    # SerpAPI Google Shopping engine
    params: Dict[str, Any] = {
        "engine": "google_shopping",
        "q": q,
        "api_key": api_key,
        "gl": gl,
        "hl": hl,
    }

    # Best-effort: request more results so the aggregator can score/filter
    try:
        params["num"] = max(1, min(int(num), 100))
    except (TypeError, ValueError):
        params["num"] = 20

    async with client_scope(client, 30) as c:
        r = await get_with_backoff(c, SERPAPI_BASE, params=params, policy=policy, label=f"serpapi:{q}")

    try:
        data = r.json()
    except ValueError as e:
        raise SourceError("google_shopping", "SerpAPI returned a non-JSON body") from e

    if not isinstance(data, dict):
        raise SourceError("google_shopping", "SerpAPI returned an unexpected payload")

    # Normalize: if the engine returns an error payload, surface it clearly
    error = data.get("error")
    if error:
        # "Google hasn't returned any results for this query." is an empty result, not a failure
        if "returned any results" in str(error):
            return {}
        raise SourceError("google_shopping", f"SerpAPI error: {error}")

    return data
