import re
from typing import Dict, List, Optional

from hunta.schemas.search import Listing

CURRENCY_SYMBOLS: Dict[str, str] = {"GBP": "£", "USD": "$", "EUR": "€"}

# GBP is the home market: prices without any currency mark are read as GBP
DEFAULT_CURRENCY = "GBP"

_NUMBER = re.compile(r"\d[\d,]*(?:\.\d{1,2})?")
_CODE = re.compile(r"\b(" + "|".join(CURRENCY_SYMBOLS) + r")\b")


def format_price(value: object, currency: Optional[str]) -> Optional[str]:
    """
    Render an API price ({value, currency}) the way scraped prices look: "£12.50".
    Unknown currencies keep their code: "CHF 12.50".
    """
    if value is None or str(value).strip() == "":
        return None
    code = (currency or "").strip().upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{value}"
    return f"{code} {value}".strip()


def _has_code(price: str, code: str) -> bool:
    return re.search(rf"\b{re.escape(code)}\b", price.upper()) is not None


def has_currency_mark(price: str) -> bool:
    return any(s in price for s in CURRENCY_SYMBOLS.values()) or bool(_CODE.search(price.upper()))


def matches_currency(price: str, target: str) -> bool:
    target = target.upper()
    symbol = CURRENCY_SYMBOLS.get(target)
    if symbol is None:
        return _has_code(price, target)
    if symbol in price or _has_code(price, target):
        return True
    if target == DEFAULT_CURRENCY:
        return not has_currency_mark(price) and bool(_NUMBER.search(price))
    return False


def ensure_currency_format(price: str, symbol: str) -> str:
    """Prefix `symbol` onto the number when the price carries no symbol at all."""
    if not price or not symbol or symbol in price:
        return price
    if any(s in price for s in CURRENCY_SYMBOLS.values()):
        return price
    m = _NUMBER.search(price)
    if m:
        return f"{symbol}{m.group(0)}"
    return price


def normalize_currency(listings: List[Listing], target: str) -> List[Listing]:
    """Keep listings priced in `target` and make their prices carry its symbol. Order is kept."""
    target = (target or DEFAULT_CURRENCY).upper()
    symbol = CURRENCY_SYMBOLS.get(target, "")
    out: List[Listing] = []
    for listing in listings:
        if not matches_currency(listing.price, target):
            continue
        price = ensure_currency_format(listing.price, symbol)
        out.append(listing if price == listing.price else listing.model_copy(update={"price": price}))
    return out
