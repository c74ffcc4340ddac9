from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class SourceName(str, Enum):
    EBAY = "ebay"
    EBAY_API = "ebay_api"
    GOOGLE_SHOPPING = "google_shopping"
    NICHE = "niche"


class Listing(BaseModel):
    title: str
    price: str                           # raw, currency tagged, e.g. "£12.50"
    link: str
    image: Optional[str] = None
    source: SourceName
    description: Optional[str] = None
    score: Optional[float] = None        # set by the aggregator only

    @field_validator("title", "price", "link")
    @classmethod
    def _required_text(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class EnhancedQuery(BaseModel):
    search_terms: List[str] = Field(default_factory=list)


class SearchRequest(BaseModel):
    search_term: str
    location: str = "UK"
    currency: str = "GBP"


class SearchResponse(BaseModel):
    status: str                          # "ok" | "no_results"
    listings: List[Listing]
    searches_remaining: Union[int, str]
    reset_time: Optional[datetime] = None
