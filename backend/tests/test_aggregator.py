from __future__ import annotations

import asyncio

import pytest

from hunta.core.aggregator import (
    Aggregator,
    ScoringConfig,
    dedupe,
    rank,
    score_listing,
    search_phrases,
)
from hunta.core.currency import ensure_currency_format, normalize_currency
from hunta.core.enhancer import QueryEnhancer
from hunta.core.errors import FetchError, GeminiRequestError, SearchError
from hunta.schemas.search import EnhancedQuery, Listing, SourceName

CFG = ScoringConfig()


def make(title: str, price: str = "£10.00", link: str | None = None, **kw) -> Listing:
    return Listing(
        title=title,
        price=price,
        link=link or f"https://example.com/{abs(hash((title, price)))}",
        source=kw.pop("source", SourceName.EBAY),
        **kw,
    )


class FakeSource:
    def __init__(self, name: SourceName, results=None, error: Exception | None = None) -> None:
        self.name = name
        self.results = results or {}
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def fetch(self, term: str, location: str = "UK") -> list[Listing]:
        self.calls.append((term, location))
        if self.error is not None:
            raise self.error
        return list(self.results.get(term, []))


class StaticEnhancer:
    def __init__(self, terms: list[str]) -> None:
        self.terms = terms

    async def enhance(self, term: str) -> EnhancedQuery:
        return EnhancedQuery(search_terms=list(self.terms))


class Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


async def unreachable(prompt: str, **kwargs):
    raise GeminiRequestError("Gemini request failed: ConnectError")


# -----------------------------------------------------------------------------
# dedupe
# -----------------------------------------------------------------------------
def test_dedupe_first_seen_wins() -> None:
    a = make("Canon  AE-1 35mm Film Camera", "£45.00", source=SourceName.EBAY, image="a.jpg")
    b = make("canon ae-1 35mm film camera", " £45.00 ", source=SourceName.GOOGLE_SHOPPING)
    c = make("Canon AE-1 35mm Film Camera", "£46.00")

    out = dedupe([a, b, c])

    assert out == [a, c]
    assert out[0].image == "a.jpg"


def test_dedupe_is_idempotent() -> None:
    items = [make("Item one title here"), make("Item one title here"), make("Item two title here")]
    once = dedupe(items)
    assert dedupe(once) == once


def test_dedupe_drops_incomplete_listings() -> None:
    broken = Listing.model_construct(title="", price="£1", link="https://x", source=SourceName.EBAY)
    ok = make("A perfectly fine listing")
    out = dedupe([broken, ok])
    assert out == [ok]
    assert all(l.title and l.price and l.link for l in out)


# -----------------------------------------------------------------------------
# scoring
# -----------------------------------------------------------------------------
def test_score_components() -> None:
    listing = make(
        "Vintage camera Canon AE-1 boxed",
        image="https://img/1.jpg",
        description="a rare vintage piece",
        source=SourceName.EBAY_API,
    )
    # base .05 + tokens in title (.3 + .3) + "vintage" in description (.1)
    # + full term in title (.4) + image (.05) + primary (.1) -> clamped to 1
    assert score_listing(listing, "vintage camera", [], CFG) == 1.0

    plain = make("Canon AE-1 35mm Film Camera")
    # base .05 + "camera" token in title .3
    assert score_listing(plain, "vintage camera", [], CFG) == 0.35
    # enhanced phrase "canon ae-1" in title +.2
    assert score_listing(plain, "vintage camera", ["Canon AE-1"], CFG) == 0.55


def test_each_weight_on_its_own() -> None:
    title = "Canon AE-1 35mm Film Camera"
    # baseline: base .05 + "camera" token in title .3
    assert score_listing(make(title), "vintage camera", [], CFG) == 0.35
    # token in description +.1
    assert score_listing(make(title, description="a vintage find"), "vintage camera", [], CFG) == 0.45
    # enhanced phrase in description only +.05
    assert score_listing(make(title, description="boxed with strap"), "vintage camera", ["boxed"], CFG) == 0.4
    # image +.05
    assert score_listing(make(title, image="https://img/1.jpg"), "vintage camera", [], CFG) == 0.4
    # primary source +.1
    assert score_listing(make(title, source=SourceName.EBAY_API), "vintage camera", [], CFG) == 0.45
    # full term +.4 with the short-title penalty -.2
    assert score_listing(make("Camera body"), "camera", [], CFG) == 0.55


def test_short_unmatched_title_scores_zero_and_is_filtered() -> None:
    listing = make("Camera")
    score = score_listing(listing, "polaroid", ["instant film"], CFG)
    assert score == 0.0

    scored = listing.model_copy(update={"score": score})
    assert rank([scored], CFG) == []


def test_scores_are_bounded_and_deterministic() -> None:
    listings = [
        make("x"),
        make("Vintage camera vintage camera vintage camera", image="i", description="vintage camera"),
        make("Something entirely unrelated to the query", source=SourceName.EBAY_API),
    ]
    phrases = ["vintage camera", "vintage camera rare", "used vintage camera"]
    for l in listings:
        s1 = score_listing(l, "vintage camera", phrases, CFG)
        s2 = score_listing(l, "vintage camera", phrases, CFG)
        assert s1 == s2
        assert 0.0 <= s1 <= 1.0
        assert round(s1, 2) == s1


def test_rank_orders_filters_and_truncates() -> None:
    items = [make(f"listing number {i:02d}").model_copy(update={"score": 0.3 + i / 100}) for i in range(40)]
    items.append(make("too low to keep").model_copy(update={"score": 0.29}))

    ranked = rank(items, CFG)

    assert len(ranked) == 30
    assert ranked[0].title == "listing number 39"
    assert all(r.score >= 0.3 for r in ranked)
    assert [r.score for r in ranked] == sorted((r.score for r in ranked), reverse=True)


def test_search_phrases_keeps_original_first_and_caps_at_five() -> None:
    phrases = search_phrases("lego", ["LEGO", "lego technic", "lego star wars", "lego city", "lego bulk", "x"])
    assert phrases == ["lego", "lego technic", "lego star wars", "lego city", "lego bulk"]


# -----------------------------------------------------------------------------
# currency
# -----------------------------------------------------------------------------
def test_bare_number_gets_gbp_symbol() -> None:
    out = normalize_currency([make("Some listing title here", "25.00")], "GBP")
    assert [l.price for l in out] == ["£25.00"]


def test_gbp_keeps_pound_and_symbol_less_prices_only() -> None:
    items = [
        make("pound priced listing", "£12.50"),
        make("dollar priced listing", "$12.50"),
        make("euro priced listing", "€12.50"),
        make("code priced listing", "GBP 7.99"),
        make("other code listing", "USD 7.99"),
        make("no number at all", "Offers"),
    ]
    out = normalize_currency(items, "GBP")
    assert [l.price for l in out] == ["£12.50", "£7.99"]


def test_non_gbp_requires_matching_symbol() -> None:
    items = [make("pound priced listing", "£12.50"), make("dollar priced listing", "$12.50"), make("bare", "12.50")]
    assert [l.price for l in normalize_currency(items, "USD")] == ["$12.50"]
    assert normalize_currency(items, "EUR") == []


def test_currency_codes_match_whole_words_only() -> None:
    items = [make("pallet of lenses", "EUROPALLET 12"), make("tagged in euros", "EUR 12.00")]
    assert [l.price for l in normalize_currency(items, "GBP")] == ["£12"]
    assert [l.price for l in normalize_currency(items, "EUR")] == ["€12.00"]


def test_ensure_currency_format() -> None:
    assert ensure_currency_format("£5", "£") == "£5"
    assert ensure_currency_format("1,299.99 ono", "£") == "£1,299.99"
    assert ensure_currency_format("$5", "£") == "$5"
    assert ensure_currency_format("free", "£") == "free"


# -----------------------------------------------------------------------------
# end to end
# -----------------------------------------------------------------------------
def test_all_sources_empty_and_enhancer_unreachable_returns_empty() -> None:
    srcs = [FakeSource(SourceName.EBAY), FakeSource(SourceName.EBAY_API), FakeSource(SourceName.GOOGLE_SHOPPING)]
    sleeps = Sleeps()
    agg = Aggregator(QueryEnhancer(generate=unreachable), srcs, sleep=sleeps)

    result = asyncio.run(agg.search("vintage camera", "UK", "GBP"))

    assert result == []
    # fallback phrases: term, "term rare", "used term"
    assert [c[0] for c in srcs[0].calls] == ["vintage camera", "vintage camera rare", "used vintage camera"]
    assert sleeps.calls == [1.5, 1.5]


def test_cross_source_duplicates_collapse_to_one() -> None:
    title, price = "Canon AE-1 35mm Film Camera", "£45.00"
    ebay = FakeSource(
        SourceName.EBAY,
        {"vintage camera": [make(title, price, link="https://www.ebay.co.uk/itm/1", source=SourceName.EBAY)]},
    )
    shopping = FakeSource(
        SourceName.GOOGLE_SHOPPING,
        {"vintage camera": [make(title, price, link="https://shop/1", source=SourceName.GOOGLE_SHOPPING)]},
    )
    agg = Aggregator(StaticEnhancer([]), [ebay, shopping], sleep=Sleeps())

    result = asyncio.run(agg.search("vintage camera"))

    assert len(result) == 1
    assert result[0].link == "https://www.ebay.co.uk/itm/1"
    assert result[0].score == 0.35


def test_failing_source_does_not_block_others() -> None:
    good = FakeSource(
        SourceName.EBAY_API,
        {"lego technic": [make("LEGO Technic 42100 Liebherr excavator", "£300.00", source=SourceName.EBAY_API)]},
    )
    bad = FakeSource(SourceName.EBAY, error=FetchError("Rate limited", status_code=429))
    crashing = FakeSource(SourceName.GOOGLE_SHOPPING, error=KeyError("price"))
    agg = Aggregator(StaticEnhancer(["lego technic"]), [bad, good, crashing], sleep=Sleeps())

    result = asyncio.run(agg.search("lego technic"))

    assert [l.title for l in result] == ["LEGO Technic 42100 Liebherr excavator"]
    assert len(bad.calls) == 1


def test_results_from_every_phrase_are_merged_and_ranked() -> None:
    src = FakeSource(
        SourceName.EBAY,
        {
            "film camera": [make("Pentax film camera with 50mm lens", "£60.00")],
            "pentax k1000": [make("Pentax K1000 SLR with film winder", "£90.00")],
        },
    )
    agg = Aggregator(StaticEnhancer(["pentax k1000"]), [src], phrase_delay=0.0, sleep=Sleeps())

    result = asyncio.run(agg.search("film camera", "UK", "GBP"))

    assert [l.title for l in result] == ["Pentax film camera with 50mm lens", "Pentax K1000 SLR with film winder"]
    assert result[0].score > result[1].score


def test_currency_filter_applies_to_target() -> None:
    src = FakeSource(
        SourceName.GOOGLE_SHOPPING,
        {"nintendo switch": [
            make("Nintendo Switch OLED console white", "$299.00", source=SourceName.GOOGLE_SHOPPING),
            make("Nintendo Switch Lite turquoise", "£149.00", source=SourceName.GOOGLE_SHOPPING),
        ]},
    )
    agg = Aggregator(StaticEnhancer([]), [src], sleep=Sleeps())

    usd = asyncio.run(agg.search("nintendo switch", "US", "USD"))
    assert [l.price for l in usd] == ["$299.00"]
    assert src.calls[0] == ("nintendo switch", "US")


def test_internal_fault_is_wrapped() -> None:
    class BrokenEnhancer:
        async def enhance(self, term: str) -> EnhancedQuery:
            raise RuntimeError("secret internals")

    agg = Aggregator(BrokenEnhancer(), [FakeSource(SourceName.EBAY)], sleep=Sleeps())

    with pytest.raises(SearchError) as exc:
        asyncio.run(agg.search("anything"))
    assert "secret internals" not in str(exc.value)
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_source_overrunning_its_deadline_counts_as_empty() -> None:
    class Slow(FakeSource):
        async def fetch(self, term: str, location: str = "UK") -> list[Listing]:
            self.calls.append((term, location))
            await asyncio.sleep(5)
            return [make("never arrives in time at all")]

    fast = FakeSource(
        SourceName.EBAY_API,
        {"lego technic": [make("LEGO Technic 42100 Liebherr excavator", "£300.00", source=SourceName.EBAY_API)]},
    )
    slow = Slow(SourceName.EBAY)
    agg = Aggregator(StaticEnhancer([]), [slow, fast], source_timeout=0.05, sleep=Sleeps())

    result = asyncio.run(agg.search("lego technic"))

    assert [l.title for l in result] == ["LEGO Technic 42100 Liebherr excavator"]
    assert len(slow.calls) == 1


def test_slow_enhancer_falls_back_to_default_phrases() -> None:
    class SlowEnhancer:
        async def enhance(self, term: str) -> EnhancedQuery:
            await asyncio.sleep(5)
            return EnhancedQuery(search_terms=["never used"])

    src = FakeSource(SourceName.EBAY)
    agg = Aggregator(SlowEnhancer(), [src], enhance_timeout=0.05, sleep=Sleeps())

    assert asyncio.run(agg.search("teapot")) == []
    assert [c[0] for c in src.calls] == ["teapot", "teapot rare", "used teapot"]
