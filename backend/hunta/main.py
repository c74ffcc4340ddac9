"""
Hunta Search API - FastAPI Main Entry

✅ LOCAL:
    cd backend
    python -m uvicorn hunta.main:app --reload --host 0.0.0.0 --port 8000

✅ TEST:
    curl -i http://127.0.0.1:8000/health
    curl -i http://127.0.0.1:8000/version
    curl -i -X POST http://127.0.0.1:8000/v1/search \
        -H 'Content-Type: application/json' \
        -d '{"search_term": "vintage camera", "location": "UK", "currency": "GBP"}'

✅ PRODUCTION:
    Start Command:
        python -m uvicorn hunta.main:app --host 0.0.0.0 --port $PORT
"""

import logging
from typing import Optional

from fastapi import FastAPI

from hunta.api.routes_ebay import router as ebay_router
from hunta.api.routes_meta import router as meta_router
from hunta.api.routes_search import router as search_router
from hunta.core.aggregator import Aggregator, scoring_from_settings
from hunta.core.config import settings
from hunta.core.enhancer import QueryEnhancer
from hunta.core.quota import QuotaGate
from hunta.core.sources import build_sources


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_aggregator() -> Aggregator:
    return Aggregator(
        enhancer=QueryEnhancer(cache=settings.ENHANCER_CACHE),
        sources=build_sources(),
        scoring=scoring_from_settings(),
        phrase_delay=settings.PHRASE_DELAY_SECONDS,
        source_timeout=settings.SOURCE_TIMEOUT_SECONDS,
        enhance_timeout=settings.ENHANCER_TIMEOUT_SECONDS,
    )


def create_app(quota: Optional[QuotaGate] = None, aggregator: Optional[Aggregator] = None) -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="Hunta Search API",
        version=settings.APP_VERSION,
        description="Aggregated second-hand marketplace search",
    )

    # ✅ Stateful services live on app.state (fresh ones per app, injectable in tests)
    app.state.quota = quota or QuotaGate(daily_limit=settings.DAILY_SEARCH_LIMIT)
    app.state.aggregator = aggregator or build_aggregator()

    # ✅ Root (GET /)
    @app.get("/")
    def root():
        return {
            "name": "Hunta Search API",
            "status": "ok",
            "docs": "/docs",
            "health": "/health",
            "version": "/version",
        }

    # ✅ Mount routers
    app.include_router(meta_router)
    app.include_router(search_router)
    app.include_router(ebay_router)

    return app


app = create_app()
