"""
Marketplace source fetchers.

Every source exposes the same coroutine, `fetch(term, location) -> list[Listing]`:
  - an empty list means "nothing found"
  - FetchError / SourceError mean the source failed; the aggregator counts it as zero results

Proxy-rendered sites are PageSource records (URL builder + parser); API-backed
sources are small classes with the same fetch signature.
"""

import asyncio
import base64
import html as html_lib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence
from urllib.parse import unquote, urlencode

import httpx
from pydantic import ValidationError

from hunta.core import serpapi
from hunta.core.config import settings
from hunta.core.currency import format_price
from hunta.core.errors import SourceError
from hunta.core.fetch import client_scope, fetch_page, get_with_backoff
from hunta.schemas.search import Listing, SourceName

logger = logging.getLogger(__name__)

PageFetcher = Callable[[str], Awaitable[str]]


class SourceFetcher(Protocol):
    name: SourceName

    async def fetch(self, term: str, location: str = "UK") -> List[Listing]:
        ...


def build_listing(source: SourceName, **fields: Any) -> Optional[Listing]:
    """Listing or None; candidates without title/price/link are dropped here, not raised."""
    try:
        return Listing(source=source, **fields)
    except ValidationError:
        logger.warning(
            "Skipping incomplete %s item. title=%r link=%r price=%r",
            source.value,
            fields.get("title"),
            fields.get("link"),
            fields.get("price"),
        )
        return None


def _clean_text(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    text = re.sub(r"<[^>]+>", " ", raw)
    text = html_lib.unescape(text)
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


def _search(pattern: str, text: str, group: int = 1, flags: int = 0) -> Optional[str]:
    m = re.search(pattern, text, flags)
    if not m:
        return None
    value = m.group(group)
    return value.strip() if value else None


def _build_url(base: str, params: Dict[str, str]) -> str:
    return f"{base}?{urlencode(params)}"


@dataclass(frozen=True)
class PageSource:
    """A site fetched through the rendering proxy and parsed from its HTML."""

    name: SourceName
    build_url: Callable[[str, str], str]
    parse: Callable[[str], List[Listing]]
    page_fetcher: PageFetcher = fetch_page

    async def fetch(self, term: str, location: str = "UK") -> List[Listing]:
        url = self.build_url(term, location)
        logger.info("Searching %s for %r", self.name.value, term)
        html = await self.page_fetcher(url)
        if not html:
            logger.warning("%s: empty page for %r", self.name.value, term)
            return []
        items = self.parse(html)
        logger.info("%s: parsed %d listings for %r", self.name.value, len(items), term)
        return items


# -----------------------------------------------------------------------------
# eBay UK (scraped)
# -----------------------------------------------------------------------------
def ebay_search_url(term: str, location: str = "UK") -> str:
    # _sop=12: "Best Match"
    return _build_url("https://www.ebay.co.uk/sch/i.html", {"_nkw": term, "_sop": "12"})


def parse_ebay_html(html: str) -> List[Listing]:
    items: List[Listing] = []
    for block in re.findall(r'<li class="s-item.*?</li>', html, re.DOTALL):
        title = _clean_text(_search(r"<h3[^>]*>(.*?)</h3>", block, flags=re.DOTALL))
        link = _search(r'href="(https://www\.ebay\.co\.uk/itm/[^"]+)"', block)
        price = _search(r"(£[\d,.]+)", block)
        image = _search(r'<img[^>]+src="([^"]+)"', block)

        if link:
            # Drop tracking params so one item keeps one URL
            link = html_lib.unescape(link).split("?")[0]

        listing = build_listing(SourceName.EBAY, title=title, price=price, link=link, image=image)
        if listing is not None:
            items.append(listing)
    return items


def ebay_page_source(page_fetcher: PageFetcher = fetch_page) -> PageSource:
    return PageSource(SourceName.EBAY, ebay_search_url, parse_ebay_html, page_fetcher)


# -----------------------------------------------------------------------------
# eBay Browse API (official; the primary marketplace)
# -----------------------------------------------------------------------------
EBAY_MARKETPLACES = {
    "UK": "EBAY_GB",
    "GB": "EBAY_GB",
    "US": "EBAY_US",
    "DE": "EBAY_DE",
    "FR": "EBAY_FR",
    "IE": "EBAY_IE",
}
EBAY_SCOPE = "https://api.ebay.com/oauth/api_scope"
# Refresh a little before eBay says the token expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass
class EbayApiSource:
    """
    eBay Browse API `item_summary/search`.

    - Auth: OAuth client-credentials token, cached until shortly before expiry.
    - Unconfigured credentials mean "no results", not an error.
    """

    client_id: str = ""
    client_secret: str = ""
    base_url: str = "https://api.ebay.com"
    limit: int = 20
    client: Optional[httpx.AsyncClient] = None
    name: SourceName = SourceName.EBAY_API
    _token: Optional[str] = field(default=None, init=False, repr=False)
    _token_expires_at: float = field(default=0.0, init=False, repr=False)
    _token_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def _access_token(self, c: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at - TOKEN_EXPIRY_MARGIN_SECONDS:
                return self._token

            basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode("utf-8")).decode("ascii")
            try:
                r = await c.post(
                    f"{self.base_url.rstrip('/')}/identity/v1/oauth2/token",
                    data={"grant_type": "client_credentials", "scope": EBAY_SCOPE},
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Authorization": f"Basic {basic}",
                    },
                )
            except httpx.HTTPError as e:
                raise SourceError(self.name.value, f"token request failed: {type(e).__name__}") from e

            if r.status_code >= 400:
                raise SourceError(self.name.value, f"token request failed: {r.status_code}")

            payload = r.json()
            token = payload.get("access_token")
            if not token:
                raise SourceError(self.name.value, "token response has no access_token")

            self._token = token
            self._token_expires_at = time.monotonic() + float(payload.get("expires_in") or 0)
            logger.info("eBay API access token retrieved")
            return token

    async def fetch(self, term: str, location: str = "UK") -> List[Listing]:
        if not self.configured():
            logger.warning("EBAY_CLIENT_ID / EBAY_CLIENT_SECRET not set; skipping eBay API")
            return []

        marketplace = EBAY_MARKETPLACES.get((location or "").upper(), "EBAY_GB")
        async with client_scope(self.client, 30) as c:
            token = await self._access_token(c)
            r = await get_with_backoff(
                c,
                f"{self.base_url.rstrip('/')}/buy/browse/v1/item_summary/search",
                params={"q": term, "limit": self.limit},
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "X-EBAY-C-MARKETPLACE-ID": marketplace,
                },
                label=f"ebay_api:{term}",
            )

        items = parse_ebay_api_items(r.json())
        logger.info("eBay API returned %d results for %r", len(items), term)
        return items


def parse_ebay_api_items(payload: Dict[str, Any]) -> List[Listing]:
    items: List[Listing] = []
    for item in payload.get("itemSummaries") or []:
        price = item.get("price") or {}
        image = (item.get("image") or {}).get("imageUrl")
        if not image:
            thumbs = item.get("thumbnailImages") or []
            image = thumbs[0].get("imageUrl") if thumbs else None

        listing = build_listing(
            SourceName.EBAY_API,
            title=item.get("title"),
            price=format_price(price.get("value"), price.get("currency")),
            link=item.get("itemWebUrl"),
            image=image or None,
            description=item.get("shortDescription"),
        )
        if listing is not None:
            items.append(listing)
    return items


# -----------------------------------------------------------------------------
# Google Shopping (SerpAPI)
# -----------------------------------------------------------------------------
def _extract_link(r: dict) -> Optional[str]:
    for k in ("link", "product_link", "productLink", "merchant_link"):
        v = r.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def _extract_source(r: dict) -> Optional[str]:
    for k in ("source", "merchant", "seller", "store"):
        v = r.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def parse_shopping_results(raw: Dict[str, Any]) -> List[Listing]:
    items: List[Listing] = []
    for r in raw.get("shopping_results", []) or []:
        merchant = _extract_source(r)
        description = r.get("snippet") or (f"Sold by {merchant}" if merchant else None)
        listing = build_listing(
            SourceName.GOOGLE_SHOPPING,
            title=r.get("title"),
            price=r.get("price"),
            link=_extract_link(r),
            image=r.get("thumbnail"),
            description=description,
        )
        if listing is not None:
            items.append(listing)
    return items


@dataclass
class GoogleShoppingSource:
    client: Optional[httpx.AsyncClient] = None
    num: int = 20
    name: SourceName = SourceName.GOOGLE_SHOPPING

    async def fetch(self, term: str, location: str = "UK") -> List[Listing]:
        if not serpapi.serpapi_key():
            logger.warning("SERPAPI_API_KEY not set; skipping Google Shopping")
            return []
        gl = "uk" if (location or "").upper() in ("UK", "GB", "") else location.lower()
        raw = await serpapi.shopping_search(q=term, gl=gl, num=self.num, client=self.client)
        items = parse_shopping_results(raw)
        logger.info("Google Shopping returned %d results for %r", len(items), term)
        return items


# -----------------------------------------------------------------------------
# Niche marketplaces (Google search -> allow-listed domains -> listing pages)
# -----------------------------------------------------------------------------
def extract_result_links(html: str, domains: Sequence[str]) -> List[str]:
    urls: List[str] = []
    for raw in re.findall(r'<a href="/url\?q=([^"&]+)&amp;', html):
        url = unquote(raw)
        if any(d in url for d in domains) and url not in urls:
            urls.append(url)
    return urls


def parse_listing_page(url: str, html: str) -> Optional[Listing]:
    title = _clean_text(_search(r"<title>([^<]+)</title>", html, flags=re.IGNORECASE))
    price = _search(r"(£[\d,.]+)", html)
    image = _search(
        r'<img[^>]+src="([^"]+)"[^>]*(?:class="[^"]*product-image[^"]*"|alt="[^"]*product[^"]*")',
        html,
        flags=re.IGNORECASE,
    )
    return build_listing(SourceName.NICHE, title=title, price=price, link=url, image=image)


@dataclass
class NicheSource:
    domains: Sequence[str] = ()
    page_fetcher: PageFetcher = fetch_page
    name: SourceName = SourceName.NICHE

    async def fetch(self, term: str, location: str = "UK") -> List[Listing]:
        if not self.domains:
            return []
        search_url = _build_url("https://www.google.com/search", {"q": term})
        html = await self.page_fetcher(search_url)
        links = extract_result_links(html or "", self.domains)
        logger.info("Found %d niche marketplace links for %r", len(links), term)

        items: List[Listing] = []
        for url in links:
            # One bad page must not cost the others
            try:
                page = await self.page_fetcher(url)
            except Exception as e:
                logger.warning("Failed to scrape %s: %s", url, e)
                continue
            listing = parse_listing_page(url, page or "")
            if listing is not None:
                items.append(listing)
        return items


def build_sources(names: Optional[Sequence[str]] = None) -> List[SourceFetcher]:
    """Instantiate the configured sources (SOURCES setting) in order; unknown names are skipped."""
    names = list(names) if names is not None else settings.source_names()
    out: List[SourceFetcher] = []
    for name in names:
        if name == SourceName.EBAY.value:
            out.append(ebay_page_source())
        elif name == SourceName.EBAY_API.value:
            out.append(
                EbayApiSource(
                    client_id=settings.EBAY_CLIENT_ID.strip(),
                    client_secret=settings.EBAY_CLIENT_SECRET.strip(),
                    base_url=settings.EBAY_API_BASE,
                )
            )
        elif name == SourceName.GOOGLE_SHOPPING.value:
            out.append(GoogleShoppingSource())
        elif name == SourceName.NICHE.value:
            out.append(NicheSource(domains=settings.niche_domains()))
        else:
            logger.warning("Unknown source %r in SOURCES; ignoring", name)
    return out
