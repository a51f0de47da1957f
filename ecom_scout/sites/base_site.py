"""Base site adapter for grocery storefront navigation."""
import re
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote_plus

import structlog

from ..browser_automation import BrowserSession
from ..models import AutomationConfig, SiteConfig

logger = structlog.get_logger()


def location_variants(name: str) -> list[str]:
    """Spellings of a location name to try against suggestion lists.

    Order is exact, no-space, lower-case, upper-case, title-case; duplicates
    are dropped keeping the first occurrence.
    """
    exact = name.strip()
    candidates = [
        exact,
        re.sub(r"\s+", "", exact),
        exact.lower(),
        exact.upper(),
        exact.title(),
    ]
    variants: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def matches_location(text: str, variant: str) -> bool:
    """Case-insensitive containment, also tried with whitespace removed."""
    haystack = text.lower()
    needle = variant.lower().strip()
    if not needle:
        return False
    if needle in haystack:
        return True
    return re.sub(r"\s+", "", needle) in re.sub(r"\s+", "", haystack)


def xpath_literal(value: str) -> str:
    """Quote a string for use inside an XPath expression."""
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    parts = value.split("'")
    return "concat(" + ", \"'\", ".join(f"'{part}'" for part in parts) + ")"


class SiteAdapter(ABC):
    """Base class for all site adapters.

    An adapter binds one site's configuration to one browser session and
    exposes the same navigation contract for every site. Adapters keep no
    state of their own; everything mutable lives in the session.
    """

    def __init__(
        self,
        site: SiteConfig,
        session: BrowserSession,
        config: Optional[AutomationConfig] = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            site: Site configuration (URLs and selectors).
            session: Browser session this adapter drives.
            config: Automation configuration settings.
        """
        self.site = site
        self.session = session
        self.config = config or AutomationConfig()

    @property
    def key(self) -> str:
        return self.site.key

    def search_url(self, query: str) -> str:
        """Build the search results URL for a product query."""
        return self.site.search_url.replace("{query}", quote_plus(query.strip()))

    def is_detail_url(self, url: str) -> bool:
        """Check whether a URL is a product detail page on this site."""
        return any(pattern in url for pattern in self.site.detail_url_patterns)

    @property
    def marker_selector(self) -> Optional[str]:
        """Selector whose presence means search results have rendered."""
        return self.site.selector("product_marker") or self.site.selector("product_card")

    @abstractmethod
    async def select_location(self, name: str) -> None:
        """Set the delivery location.

        Raises:
            LocationNotFound: If no variant of the name matched a suggestion.
        """

    @abstractmethod
    async def navigate_to_search(self, query: str) -> None:
        """Open the search results for a query.

        Raises:
            NavigationTimeout: If product markers did not appear in time.
        """

    @abstractmethod
    async def list_product_cards(self) -> list[Any]:
        """Return the currently rendered product cards, in page order."""

    @abstractmethod
    async def open_card(self, card: Any, fallback_url: Optional[str] = None) -> Optional[str]:
        """Enter a card's detail view.

        Returns:
            The detail page URL, or None if the detail view did not open.
        """

    async def card_markup(self, card: Any) -> str:
        return await self.session.outer_html(card)

    async def wait_for_price_text(self) -> bool:
        """Wait (bounded) until currency-marked text is rendered."""
        return await self.session.wait_until(
            self.session.has_currency_text, timeout_ms=self.config.price_wait_ms
        )

    async def recover(self, fallback_url: Optional[str] = None) -> bool:
        """Run error-page recovery, waiting for this site's product markers."""
        return await self.session.detect_and_recover_error_page(
            fallback_url=fallback_url, marker_selector=self.marker_selector
        )
