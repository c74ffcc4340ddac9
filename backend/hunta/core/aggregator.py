import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from hunta.core.config import settings
from hunta.core.currency import normalize_currency
from hunta.core.enhancer import QueryEnhancer, fallback_enhancement
from hunta.core.errors import FetchError, SearchError, SourceError
from hunta.core.sources import SourceFetcher
from hunta.schemas.search import EnhancedQuery, Listing

logger = logging.getLogger(__name__)

MAX_PHRASES = 5


@dataclass(frozen=True)
class ScoringConfig:
    """
    Additive relevance heuristic. The weights are empirical defaults, tunable
    through settings; keep them as-is unless ranking is re-evaluated.
    """

    base: float = 0.05
    term_in_title: float = 0.30
    term_in_description: float = 0.10
    phrase_in_title: float = 0.20
    phrase_in_description: float = 0.05
    full_term_in_title: float = 0.40
    has_image: float = 0.05
    short_title_penalty: float = 0.20
    short_title_length: int = 20
    primary_bonus: float = 0.10
    primary_source: str = "ebay_api"
    min_score: float = 0.30
    max_results: int = 30


def scoring_from_settings() -> ScoringConfig:
    return ScoringConfig(
        short_title_length=settings.SHORT_TITLE_LENGTH,
        primary_source=settings.PRIMARY_SOURCE,
        min_score=settings.MIN_SCORE,
        max_results=settings.MAX_RESULTS,
    )


def dedupe_key(listing: Listing) -> str:
    title = re.sub(r"\s+", " ", listing.title.lower()).strip()
    price = listing.price.lower().strip()
    return f"{title}-{price}"


def dedupe(listings: Iterable[Listing]) -> List[Listing]:
    """First occurrence per normalized title+price wins; incomplete listings are dropped."""
    seen = set()
    out: List[Listing] = []
    for listing in listings:
        if not (listing.title and listing.price and listing.link):
            continue
        key = dedupe_key(listing)
        if key in seen:
            continue
        seen.add(key)
        out.append(listing)
    return out


def score_listing(listing: Listing, term: str, phrases: Sequence[str], cfg: ScoringConfig) -> float:
    title = listing.title.lower()
    description = (listing.description or "").lower()
    query = term.lower().strip()
    score = cfg.base

    for token in query.split():
        if token in title:
            score += cfg.term_in_title
        if token in description:
            score += cfg.term_in_description

    for phrase in phrases:
        phrase = phrase.lower().strip()
        if not phrase:
            continue
        if phrase in title:
            score += cfg.phrase_in_title
        if phrase in description:
            score += cfg.phrase_in_description

    if query and query in title:
        score += cfg.full_term_in_title
    if listing.image:
        score += cfg.has_image
    if len(listing.title) < cfg.short_title_length:
        score -= cfg.short_title_penalty
    if listing.source == cfg.primary_source:
        score += cfg.primary_bonus

    score = min(1.0, max(0.0, score))
    # half-up to 2dp
    return math.floor(score * 100 + 0.5) / 100


def score_listings(
    listings: Iterable[Listing], term: str, phrases: Sequence[str], cfg: ScoringConfig
) -> List[Listing]:
    return [l.model_copy(update={"score": score_listing(l, term, phrases, cfg)}) for l in listings]


def rank(listings: Iterable[Listing], cfg: ScoringConfig) -> List[Listing]:
    """Highest score first (stable for ties), drop below min_score, keep max_results."""
    ordered = sorted(listings, key=lambda l: l.score or 0.0, reverse=True)
    return [l for l in ordered if (l.score or 0.0) >= cfg.min_score][: cfg.max_results]


def search_phrases(term: str, expansions: Sequence[str], limit: int = MAX_PHRASES) -> List[str]:
    """Original term first, then expansions; case-insensitive repeats are fetched once."""
    phrases: List[str] = []
    seen = set()
    for p in [term, *expansions]:
        key = p.lower().strip()
        if not key or key in seen:
            continue
        seen.add(key)
        phrases.append(p.strip())
    return phrases[:limit]


class Aggregator:
    """
    Runs one search: expand the term, fan out to every source per phrase,
    then dedupe -> score -> rank -> currency-normalize.

    Phrases are fetched one after another with `phrase_delay` between them;
    sources for a single phrase run concurrently and are joined before moving on.
    Each source call is bounded by `source_timeout`; an overrun counts as zero
    results from that source. `enhance_timeout` bounds the expansion step the
    same way (overrun -> fallback phrases). None disables either bound.
    """

    def __init__(
        self,
        enhancer: QueryEnhancer,
        sources: Sequence[SourceFetcher],
        scoring: ScoringConfig = ScoringConfig(),
        phrase_delay: float = 1.5,
        max_phrases: int = MAX_PHRASES,
        source_timeout: Optional[float] = None,
        enhance_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.enhancer = enhancer
        self.sources = list(sources)
        self.scoring = scoring
        self.phrase_delay = phrase_delay
        self.max_phrases = max_phrases
        self.source_timeout = source_timeout
        self.enhance_timeout = enhance_timeout
        self._sleep = sleep

    async def search(self, term: str, location: str = "UK", currency: str = "GBP") -> List[Listing]:
        try:
            return await self._search(term, location, currency)
        except Exception as e:
            logger.exception("Search failed for %r", term)
            raise SearchError("Search failed") from e

    async def _search(self, term: str, location: str, currency: str) -> List[Listing]:
        started = time.perf_counter()
        logger.info("Starting search for %r in %s with %s", term, location, currency)

        enhanced = await self._enhance(term)
        phrases = search_phrases(term, enhanced.search_terms, self.max_phrases)

        working: List[Listing] = []
        for i, phrase in enumerate(phrases):
            if i:
                await self._sleep(self.phrase_delay)
            working.extend(await self._fetch_phrase(phrase, location))

        if not working:
            logger.warning("No results found on any marketplace for %r", term)
            return []

        unique = dedupe(working)
        logger.info("Found %d unique results (%d raw)", len(unique), len(working))

        scored = score_listings(unique, term, enhanced.search_terms, self.scoring)
        ranked = rank(scored, self.scoring)
        converted = normalize_currency(ranked, currency)

        logger.info(
            "Returning %d results for %r in %.2f seconds", len(converted), term, time.perf_counter() - started
        )
        return converted

    async def _fetch_phrase(self, phrase: str, location: str) -> List[Listing]:
        tasks = [self._fetch_source(source, phrase, location) for source in self.sources]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        out: List[Listing] = []
        for source, result in zip(self.sources, results):
            name = getattr(source.name, "value", source.name)
            if isinstance(result, (FetchError, SourceError)):
                logger.warning("%s search failed for %r: %s", name, phrase, result.message)
            elif isinstance(result, Exception):
                logger.error("%s search crashed for %r", name, phrase, exc_info=result)
            elif isinstance(result, BaseException):
                raise result
            else:
                logger.info("%s returned %d results for %r", name, len(result), phrase)
                out.extend(l for l in result if isinstance(l, Listing))
        return out

    async def _enhance(self, term: str) -> EnhancedQuery:
        if self.enhance_timeout is None:
            return await self.enhancer.enhance(term)
        try:
            return await asyncio.wait_for(self.enhancer.enhance(term), timeout=self.enhance_timeout)
        except asyncio.TimeoutError:
            logger.warning("Query enhancement timed out after %.1fs; using fallback", self.enhance_timeout)
            return fallback_enhancement(term)

    async def _fetch_source(self, source: SourceFetcher, phrase: str, location: str) -> List[Listing]:
        if self.source_timeout is None:
            return await source.fetch(phrase, location)
        try:
            return await asyncio.wait_for(source.fetch(phrase, location), timeout=self.source_timeout)
        except asyncio.TimeoutError:
            name = getattr(source.name, "value", source.name)
            logger.warning("%s timed out after %.1fs for %r", name, self.source_timeout, phrase)
            return []
