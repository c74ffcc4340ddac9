import asyncio
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request

from hunta.core.aggregator import Aggregator
from hunta.core.config import settings
from hunta.core.currency import CURRENCY_SYMBOLS
from hunta.core.errors import SearchError
from hunta.core.quota import QuotaGate
from hunta.schemas.search import SearchRequest, SearchResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["search"])

SEARCH_FAILED = {"error": "Search failed"}


def caller_identity(request: Request) -> str:
    # Network identity only: client-supplied ids are not trusted for metering
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def _is_privileged(api_key: Optional[str]) -> bool:
    if not api_key:
        return False
    return any(secrets.compare_digest(api_key, k) for k in settings.privileged_keys())


@router.post("/search", response_model=SearchResponse)
async def search(
    body: SearchRequest,
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
):
    """
    Quota first, then the aggregation pipeline.
      - 429 + Retry-After when the daily allowance is used up (pipeline not started)
      - 200 with status "no_results" when every source came back empty
      - 500 with a generic body on internal faults or timeout (details only in logs)
    """
    term = body.search_term.strip()
    if not term:
        raise HTTPException(status_code=400, detail={"error": "Invalid search term"})

    currency = (body.currency or "").strip().upper()
    if currency not in CURRENCY_SYMBOLS:
        raise HTTPException(
            status_code=400,
            detail={"error": "Unsupported currency", "supported": sorted(CURRENCY_SYMBOLS)},
        )
    location = (body.location or "").strip() or "UK"

    gate: QuotaGate = request.app.state.quota
    decision = gate.check_and_consume(caller_identity(request), _is_privileged(x_api_key))
    if not decision.allowed:
        retry_after = decision.retry_after_seconds
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Daily limit exceeded",
                "reset_time": decision.reset_at.isoformat(),
                "retry_after_seconds": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )

    aggregator: Aggregator = request.app.state.aggregator
    try:
        listings = await asyncio.wait_for(
            aggregator.search(term, location, currency),
            timeout=settings.SEARCH_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("Search for %r timed out after %.0fs", term, settings.SEARCH_TIMEOUT_SECONDS)
        raise HTTPException(status_code=500, detail=SEARCH_FAILED)
    except SearchError:
        # Already logged with traceback by the aggregator
        raise HTTPException(status_code=500, detail=SEARCH_FAILED)

    return SearchResponse(
        status="ok" if listings else "no_results",
        listings=listings,
        searches_remaining=decision.remaining,
        reset_time=decision.reset_at,
    )
