import os
import time

from fastapi import APIRouter, Request

from hunta.api.routes_search import caller_identity
from hunta.core.config import settings
from hunta.core.quota import QuotaGate

router = APIRouter(tags=["meta"])

STARTED_AT = time.monotonic()


def _configured(*values: str) -> str:
    return "configured" if all((v or "").strip() for v in values) else "missing"


@router.get("/health")
def health(request: Request):
    gate: QuotaGate = request.app.state.quota
    # Caller's own allowance; peek never consumes
    quota = gate.peek(caller_identity(request))
    return {
        "status": "healthy",
        "uptime_seconds": round(time.monotonic() - STARTED_AT, 1),
        "services": {
            "gemini": _configured(settings.GEMINI_API_KEY),
            "scrapingbee": _configured(settings.SCRAPINGBEE_API_KEY),
            "serpapi": _configured(settings.SERPAPI_API_KEY),
            "ebay_api": _configured(settings.EBAY_CLIENT_ID, settings.EBAY_CLIENT_SECRET),
        },
        "sources": settings.source_names(),
        "quota": {
            "daily_limit": gate.daily_limit,
            "searches_remaining": quota.remaining,
            "reset_time": quota.reset_at.isoformat(),
        },
    }


@router.get("/version")
def version():
    return {
        "version": settings.APP_VERSION,
        "build": settings.BUILD_ID,
        "git_commit": os.environ.get("RENDER_GIT_COMMIT"),
    }
