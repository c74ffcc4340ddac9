import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from hunta.core import gemini
from hunta.core.config import settings
from hunta.core.errors import GeminiRequestError
from hunta.schemas.search import EnhancedQuery

logger = logging.getLogger(__name__)

Generate = Callable[..., Awaitable[Dict[str, Any]]]

PROMPT = (
    "Generate a JSON object with a \"search_terms\" array containing 5 concise, relevant "
    "alternative search phrases a second-hand marketplace shopper might use for:\n"
    "\"{term}\"\n"
    "Return ONLY valid JSON. No markdown. No extra text.\n"
)


def _expansion_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "search_terms": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["search_terms"],
        "additionalProperties": False,
    }


def fallback_enhancement(term: str) -> EnhancedQuery:
    """Deterministic variants used whenever the generative service can't help."""
    return EnhancedQuery(search_terms=[term, f"{term} rare", f"used {term}"])


def _parse_search_terms(obj: Dict[str, Any]) -> Optional[List[str]]:
    terms = obj.get("search_terms")
    if not isinstance(terms, list) or not all(isinstance(t, str) for t in terms):
        return None
    return [t.strip() for t in terms if t.strip()]


class QueryEnhancer:
    """
    Expands one search phrase into related phrases via Gemini.

    enhance() never raises: network errors, non-2xx answers and malformed
    output all resolve to fallback_enhancement(term).
    With cache=True successful expansions are memoized per term for the
    lifetime of the instance (fallbacks are not).
    """

    def __init__(self, generate: Optional[Generate] = None, cache: bool = True) -> None:
        self._generate = generate or gemini.generate_json
        self._cache: Optional[Dict[str, EnhancedQuery]] = {} if cache else None

    def _configured(self) -> bool:
        # A custom generator (tests, alternative providers) doesn't need the Gemini key
        if self._generate is not gemini.generate_json:
            return True
        return bool((settings.GEMINI_API_KEY or "").strip())

    async def enhance(self, term: str) -> EnhancedQuery:
        if self._cache is not None and term in self._cache:
            return self._cache[term]

        if not self._configured():
            logger.warning("GEMINI_API_KEY not set; using fallback expansion for %r", term)
            return fallback_enhancement(term)

        logger.info("Enhancing query %r", term)
        try:
            obj = await self._generate(PROMPT.format(term=term), schema=_expansion_schema())
        except GeminiRequestError as e:
            logger.warning("Query enhancement failed (%s); using fallback", e.message)
            return fallback_enhancement(term)
        except Exception:
            logger.exception("Unexpected query enhancement error; using fallback")
            return fallback_enhancement(term)

        terms = _parse_search_terms(obj)
        if terms is None:
            logger.warning("Enhancer output has no usable search_terms; using fallback")
            return fallback_enhancement(term)

        enhanced = EnhancedQuery(search_terms=terms)
        if self._cache is not None:
            self._cache[term] = enhanced
        return enhanced
