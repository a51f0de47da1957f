"""Product extraction: card summaries and the price-disambiguation heuristic.

Prices are read from the rendered detail page in two halves. A page script
snapshots every visible element whose text carries a currency-marked number;
the filtering, scoring and selection below run on that snapshot, so the
heuristic behaves identically for any browser backend.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup, Tag

from .browser_automation import BrowserSession
from .models import (
    CardSummary,
    PriceCandidate,
    PriceElement,
    PriceResult,
    Product,
    SiteConfig,
    compute_discount,
)

logger = structlog.get_logger()

# Plausible price range; numbers outside it are ratings, weights or noise.
MIN_PRICE = Decimal("10")
MAX_PRICE = Decimal("50000")

# Tried in order; the first match is the product detail region.
DETAIL_REGION_SELECTORS = [
    "main",
    "article",
    "[role='main']",
    "[class*='product-detail']",
    "[class*='productDetail']",
    "[class*='item-detail']",
    "[class*='itemDetail']",
    "[class*='price']",
    "[data-testid*='price']",
]

# Rupee marks followed by an amount with optional Indian or western digit
# grouping and optional paise.
CURRENCY_PATTERN = re.compile(
    r"(?:₹|\bRs\.?|\bINR)\s*(\d{1,3}(?:,\d{2,3})+|\d{1,6})(?:\.(\d{1,2}))?(?!\d)"
)

UNIT_PATTERN = re.compile(
    r"(?<![a-z])(?:kg|kgs|kilogram|kilograms|g|gm|gms|gram|grams|ml|l|ltr|liter|"
    r"litre|liters|litres|pc|pcs|piece|pieces|pack|packs|bunch|dozen|combo)(?![a-z])"
)
UNIT_WINDOW = 20
UNIT_DISTANCE = 15

ELEMENT_DELIVERY_WORDS = (
    "free delivery",
    "delivery on orders",
    "orders above",
    "minimum order",
    "delivery charge",
    "shipping",
)
MATCH_DELIVERY_WORDS = ("free delivery", "orders above", "minimum", "delivery on")
CANDIDATE_DELIVERY_WORDS = (
    "free delivery",
    "orders above",
    "minimum",
    "delivery on",
    "delivery charge",
)

PRICE_ELEMENTS_SCRIPT = """
(detailSelectors) => {
  let region = null;
  for (const selector of detailSelectors) {
    try { region = document.querySelector(selector); } catch (e) { region = null; }
    if (region) break;
  }
  const root = region || document.body;
  const currency = /(₹|\\bRs\\.?|\\bINR)\\s*\\d/;
  const isStruck = (node) => {
    const style = window.getComputedStyle(node);
    return (style.textDecorationLine || style.textDecoration || '').includes('line-through')
      || ['S', 'DEL', 'STRIKE'].includes(node.tagName);
  };
  const out = [];
  for (const el of root.querySelectorAll('*')) {
    if (['SCRIPT', 'STYLE', 'NOSCRIPT'].includes(el.tagName)) continue;
    if (el.closest('header, footer, nav')) continue;
    const text = (el.textContent || '').replace(/\\s+/g, ' ').trim();
    if (!text || text.length > 300 || !currency.test(text)) continue;
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    if (style.display === 'none' || style.visibility === 'hidden'
        || rect.width === 0 || rect.height === 0) continue;
    let struck = false;
    for (let node = el; node && node !== document.body; node = node.parentElement) {
      if (isStruck(node)) { struck = true; break; }
    }
    const struckText = Array.from(el.querySelectorAll('*'))
      .filter(isStruck)
      .map(node => node.textContent || '')
      .join(' ');
    const className = typeof el.className === 'string' ? el.className : (el.getAttribute('class') || '');
    out.push({
      text: text,
      className: className,
      fontSize: parseFloat(style.fontSize) || 16,
      isStrikethrough: struck,
      inDetailRegion: region !== null,
      struckText: struckText,
    });
  }
  return out;
}
"""

NAME_PRICE_PATTERN = re.compile(r"(?:₹|\bRs\.?)\s*\d[\d,]*(?:\.\d+)?")
NAME_DISCOUNT_PATTERN = re.compile(r"\d+\s*%\s*OFF", re.IGNORECASE)
NAME_ACTION_PATTERN = re.compile(
    r"\b(?:Add|Get|Code|OFF|Flat|Rs|Buy|Cart|MINS|mins|Sold Out|Out of Stock)\b",
    re.IGNORECASE,
)
QUANTITY_PATTERN = re.compile(
    r"(\d+(?:\.\d+)?\s*(?:x\s*\d+\s*)?(?:kg|g|gm|ml|ltr|l|litre|pcs|pieces|piece|combo|pack|bunch|dozen))\b",
    re.IGNORECASE,
)
OUT_OF_STOCK_PATTERN = re.compile(r"\b(?:sold out|out of stock|currently unavailable)\b", re.IGNORECASE)


def _mentions(text: str, words: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in words)


def parse_amount(digits: str, paise: Optional[str] = None) -> Optional[Decimal]:
    """Convert a matched amount ("1,299", "45" + "50") to a Decimal."""
    try:
        value = Decimal(digits.replace(",", ""))
        if paise:
            value += Decimal(paise.ljust(2, "0")) / 100
    except InvalidOperation:
        return None
    return value


def currency_values(text: str) -> list[Decimal]:
    """All currency-marked amounts in a text, in order of appearance."""
    values = []
    for match in CURRENCY_PATTERN.finditer(text):
        value = parse_amount(match.group(1), match.group(2))
        if value is not None:
            values.append(value)
    return values


def is_near_unit(text: str, match_start: int, match_end: int) -> bool:
    """Whether a match sits next to a weight or quantity unit token.

    Looks in a window of UNIT_WINDOW characters on each side of the match;
    a unit token starting within UNIT_DISTANCE characters of the match
    start marks the number as a package size.
    """
    start = max(0, match_start - UNIT_WINDOW)
    end = min(len(text), match_end + UNIT_WINDOW)
    context = text[start:end].lower()
    offset = match_start - start
    for unit in UNIT_PATTERN.finditer(context):
        if abs(unit.start() - offset) < UNIT_DISTANCE:
            return True
    return False


def score(element: PriceElement) -> int:
    """Priority of a price seen in an element; higher is more likely the product price."""
    priority = 0
    if element.in_detail_region:
        priority += 10

    class_name = element.class_name.lower()
    if "price" in class_name and "delivery" not in class_name and "shipping" not in class_name:
        priority += 5

    if element.font_size > 20:
        priority += 3
    elif element.font_size > 16:
        priority += 1
    if element.font_size < 12:
        priority -= 2

    return priority


def collect_candidates(elements: Sequence[PriceElement]) -> list[PriceCandidate]:
    """Turn an element snapshot into price candidates.

    Applies the element-level and match-level delivery filters, the
    plausible range and the unit-adjacency check.
    """
    candidates: list[PriceCandidate] = []

    for element in elements:
        text = element.text
        if not text or _mentions(text, ELEMENT_DELIVERY_WORDS):
            continue

        priority = score(element)
        struck_values = set(currency_values(element.struck_text))

        for match in CURRENCY_PATTERN.finditer(text):
            value = parse_amount(match.group(1), match.group(2))
            if value is None or value < MIN_PRICE or value >= MAX_PRICE:
                continue
            if is_near_unit(text, match.start(), match.end()):
                continue
            context = text[max(0, match.start() - 30):match.start() + 50]
            if _mentions(context, MATCH_DELIVERY_WORDS):
                continue

            candidates.append(
                PriceCandidate(
                    value=value,
                    is_strikethrough=element.is_strikethrough or value in struck_values,
                    priority=priority,
                    source_text=text,
                )
            )

    return candidates


def dedupe_candidates(candidates: Iterable[PriceCandidate]) -> list[PriceCandidate]:
    """Keep one candidate per value: highest priority, then shortest source text.

    Returns:
        Candidates sorted by priority (descending), then value (ascending).
    """
    by_value: dict[Decimal, PriceCandidate] = {}
    for candidate in candidates:
        existing = by_value.get(candidate.value)
        if (
            existing is None
            or candidate.priority > existing.priority
            or (
                candidate.priority == existing.priority
                and len(candidate.source_text) < len(existing.source_text)
            )
        ):
            by_value[candidate.value] = candidate
    return sorted(by_value.values(), key=lambda c: (-c.priority, c.value))


def choose_prices(candidates: Sequence[PriceCandidate]) -> PriceResult:
    """Pick the current price and MRP from deduplicated candidates."""
    if not candidates:
        return PriceResult()

    filtered = [c for c in candidates if not _mentions(c.source_text, CANDIDATE_DELIVERY_WORDS)]

    if not filtered:
        # Every candidate looked delivery-related; fall back to the raw set.
        logger.warning("price_candidates_all_delivery_related", count=len(candidates))
        struck = [c.value for c in candidates if c.is_strikethrough]
        regular = [c.value for c in candidates if not c.is_strikethrough]
        return PriceResult(
            price=min(regular) if regular else None,
            mrp=max(struck) if struck else None,
        )

    struck = sorted(
        (c for c in filtered if c.is_strikethrough), key=lambda c: (-c.priority, -c.value)
    )
    regular = sorted(
        (c for c in filtered if not c.is_strikethrough), key=lambda c: (-c.priority, c.value)
    )

    mrp = struck[0].value if struck else None
    if regular:
        return PriceResult(price=regular[0].value, mrp=mrp)

    by_value = sorted(filtered, key=lambda c: c.value)
    price = by_value[0].value
    if len(by_value) > 1 and mrp is None:
        mrp = by_value[-1].value
    return PriceResult(price=price, mrp=mrp)


def disambiguate(elements: Sequence[PriceElement]) -> PriceResult:
    """Run the whole heuristic over an element snapshot."""
    return choose_prices(dedupe_candidates(collect_candidates(elements)))


async def extract_prices(
    session: BrowserSession,
    detail_selectors: Optional[Sequence[str]] = None,
) -> PriceResult:
    """Extract {price, mrp} from the page currently loaded in the session.

    A page without any currency-marked text yields an empty result; that is
    a valid outcome (out of stock or unlisted), not an error.

    Args:
        session: Browser session showing a product detail page.
        detail_selectors: Selectors for the detail region, tried in order.

    Returns:
        PriceResult with price and MRP as Decimals, or None where unknown.
    """
    selectors = list(detail_selectors or DETAIL_REGION_SELECTORS)
    snapshot = await session.execute(PRICE_ELEMENTS_SCRIPT, selectors)
    elements = [PriceElement.from_dict(item) for item in snapshot or []]
    result = disambiguate(elements)
    logger.debug(
        "prices_extracted",
        url=session.current_url,
        elements=len(elements),
        price=str(result.price) if result.price is not None else None,
        mrp=str(result.mrp) if result.mrp is not None else None,
    )
    return result


def clean_name(raw: str) -> str:
    """Strip prices, discount badges and button labels from a card title."""
    name = NAME_PRICE_PATTERN.sub("", raw)
    name = NAME_DISCOUNT_PATTERN.sub("", name)
    name = NAME_ACTION_PATTERN.sub("", name)
    return re.sub(r"\s+", " ", name).strip()


def _absolute(url: Optional[str], base_url: str) -> Optional[str]:
    if not url:
        return None
    url = url.strip()
    if not url or url.startswith(("data:", "javascript:")):
        return None
    return urljoin(base_url + "/", url)


def _select_text(root: Tag, selector: Optional[str]) -> Optional[str]:
    if not selector or selector.startswith("xpath="):
        return None
    element = root.select_one(selector)
    if element is None:
        return None
    text = re.sub(r"\s+", " ", element.get_text(" ", strip=True)).strip()
    return text or None


def _fallback_name(root: Tag) -> Optional[str]:
    for tag in ("h1", "h2", "h3", "h4"):
        heading = root.find(tag)
        if heading is not None and heading.get_text(strip=True):
            return heading.get_text(" ", strip=True)
    image = root.find("img", alt=True)
    if image is not None and image["alt"].strip():
        return image["alt"]
    return None


def parse_card_summary(html: str, site: SiteConfig) -> CardSummary:
    """Parse a product card's markup into its summary fields.

    Args:
        html: Outer HTML of the card.
        site: Site whose card selectors and base URL apply.

    Returns:
        CardSummary; ``name`` is empty when no usable title was found.
    """
    soup = BeautifulSoup(html, "html.parser")
    root = soup.find(True) or soup

    raw_name = _select_text(root, site.selector("card_name")) or _fallback_name(root) or ""
    name = clean_name(raw_name)

    image_url = None
    image = root.find("img")
    if image is not None:
        image_url = _absolute(image.get("src") or image.get("data-src"), site.base_url)

    product_url = None
    link_selector = site.selector("card_link")
    link = None
    if root.name == "a" and root.get("href"):
        link = root
    elif link_selector and not link_selector.startswith("xpath="):
        link = root.select_one(link_selector)
    if link is None:
        link = root.find("a", href=True)
    if link is not None:
        product_url = _absolute(link.get("href"), site.base_url)

    quantity = _select_text(root, site.selector("card_quantity"))
    if quantity:
        match = QUANTITY_PATTERN.search(quantity)
        if match:
            quantity = match.group(1)

    badges: list[str] = []
    for selector in site.selector_list("card_badges"):
        text = _select_text(root, selector)
        if text and text not in badges:
            badges.append(text)

    return CardSummary(
        name=name,
        image_url=image_url,
        product_url=product_url,
        quantity=quantity,
        delivery_time=_select_text(root, site.selector("card_delivery")),
        badges=tuple(badges) if badges else None,
        description=_select_text(root, site.selector("card_description")),
        is_out_of_stock=bool(OUT_OF_STOCK_PATTERN.search(root.get_text(" "))),
    )


def build_product(
    summary: CardSummary,
    prices: PriceResult,
    product_url: Optional[str] = None,
) -> Product:
    """Combine a card summary with detail-page prices into a Product."""
    discount, discount_amount = compute_discount(prices.price, prices.mrp)
    return Product(
        name=summary.name,
        price=prices.price,
        mrp=prices.mrp,
        discount=discount,
        discount_amount=discount_amount,
        is_out_of_stock=summary.is_out_of_stock,
        image_url=summary.image_url,
        product_url=product_url or summary.product_url,
        quantity=summary.quantity,
        delivery_time=summary.delivery_time,
        badges=summary.badges,
        description=summary.description,
    )


def to_json_products(products: Iterable[Product]) -> list[dict[str, Any]]:
    return [p.to_dict() for p in products]
