"""Site adapter driven entirely by the selector mapping in sites.yaml."""
from typing import Any, Optional

import structlog

from ..exceptions import LocationNotFound, NavigationTimeout, SessionFault
from .base_site import SiteAdapter, location_variants, matches_location, xpath_literal

logger = structlog.get_logger()

# Suggestions for transit hubs share city names but are not delivery areas.
SKIPPED_SUGGESTION_WORDS = ("airport", "railway")

# Clicks the card body with its add-to-cart buttons made non-interactive, so
# the click opens the product instead of adding it to the cart.
OPEN_CARD_SCRIPT = """
(card, addSelector) => {
  let buttons = [];
  if (addSelector) {
    try { buttons = Array.from(card.querySelectorAll(addSelector)); } catch (e) { buttons = []; }
  }
  const saved = buttons.map(b => b.style.pointerEvents);
  buttons.forEach(b => { b.style.pointerEvents = 'none'; });
  const link = card.matches('a[href]') ? card : card.querySelector('a[href]');
  (link || card).click();
  try {
    buttons.forEach((b, i) => { b.style.pointerEvents = saved[i]; });
  } catch (e) {}
}
"""


class ConfiguredSiteAdapter(SiteAdapter):
    """Implements the navigation protocol from a site's selector roles.

    Roles used: ``location_trigger``, ``location_input``,
    ``location_suggestion`` (with a ``{text}`` placeholder),
    ``location_confirm``, ``product_card``, ``product_marker`` and
    ``card_add_button``.
    """

    @property
    def entry_url(self) -> str:
        """Page the location picker is opened from."""
        return self.site.home_url or self.site.base_url

    async def _first_visible(self, selectors: list[str]) -> Optional[Any]:
        for selector in selectors:
            try:
                elements = await self.session.find_all(selector)
            except SessionFault as e:
                logger.debug("selector_query_failed", site=self.key, selector=selector, error=str(e))
                continue
            for element in elements:
                if await self.session.is_visible(element):
                    return element
        return None

    async def _click_first(self, role: str) -> bool:
        element = await self._first_visible(self.site.selector_list(role))
        if element is None:
            return False
        await self.session.scroll_into_view(element)
        await self.session.click(element)
        return True

    async def open_location_picker(self) -> None:
        """Load the entry page and open the location dialog."""
        await self.session.navigate(self.entry_url)
        await self.session.settle()
        await self.recover(fallback_url=self.entry_url)

        if await self._click_first("location_trigger"):
            logger.debug("location_trigger_clicked", site=self.key)
            await self.session.pause()
        else:
            # Some sites open the dialog on first visit
            logger.debug("location_trigger_not_found", site=self.key)

    async def find_suggestion(self, variant: str) -> Optional[Any]:
        """Find a visible suggestion matching one location variant."""
        needle = xpath_literal(variant.lower())
        for template in self.site.selector_list("location_suggestion"):
            selector = template.replace("{text}", needle)
            try:
                elements = await self.session.find_all(selector)
            except SessionFault:
                continue
            for element in elements:
                if not await self.session.is_visible(element):
                    continue
                text = await self.session.text_of(element)
                lowered = text.lower()
                if any(word in lowered for word in SKIPPED_SUGGESTION_WORDS):
                    logger.debug("suggestion_skipped", site=self.key, text=text.strip()[:60])
                    continue
                if matches_location(text, variant):
                    return element
        return None

    def location_confirmed(self) -> bool:
        url = self.session.current_url
        return any(part in url for part in self.site.location_confirmed_url_parts)

    async def confirm_location(self) -> None:
        if await self._click_first("location_confirm"):
            logger.debug("location_confirm_clicked", site=self.key)
            await self.session.pause()

    async def select_location(self, name: str) -> None:
        """Pick a delivery location by typing and choosing a suggestion.

        Each spelling variant is typed in turn; the first visible
        suggestion containing it is clicked. When none match, the full name
        is submitted with Enter and accepted if the site moves on to a
        location-bound page.

        Args:
            name: Location to select (e.g. "Mumbai").

        Raises:
            LocationNotFound: If neither the suggestions nor Enter worked.
        """
        await self.open_location_picker()

        field = await self._first_visible(self.site.selector_list("location_input"))
        if field is None:
            await self.session.save_debug_snapshot(f"{self.key}_location_input_missing")
            raise LocationNotFound(name, self.key)

        for variant in location_variants(name):
            await self.session.type_into(field, variant)
            await self.session.pause()

            suggestion = await self.find_suggestion(variant)
            if suggestion is None:
                logger.debug("location_variant_no_match", site=self.key, variant=variant)
                continue

            await self.session.scroll_into_view(suggestion)
            await self.session.short_pause()
            await self.session.click(suggestion)
            await self.session.pause()
            await self.confirm_location()
            logger.info("location_selected", site=self.key, location=name, variant=variant)
            return

        # Keyboard fallback
        await self.session.type_into(field, name.strip())
        await self.session.short_pause()
        await self.session.press_key("Enter")
        await self.session.pause()

        if self.location_confirmed():
            await self.confirm_location()
            logger.info("location_selected_by_enter", site=self.key, location=name)
            return

        await self.session.save_debug_snapshot(f"{self.key}_location_fail")
        raise LocationNotFound(name, self.key)

    async def navigate_to_search(self, query: str) -> None:
        url = self.search_url(query)
        await self.session.navigate(url)
        await self.session.settle()
        await self.recover(fallback_url=url)

        marker = self.marker_selector
        if marker is None:
            return
        found = await self.session.wait_until(
            lambda: self.session.has_any(marker), timeout_ms=self.config.product_wait_ms
        )
        if not found:
            raise NavigationTimeout(url, self.config.product_wait_ms)
        logger.debug("search_results_loaded", site=self.key, url=url)

    async def list_product_cards(self) -> list[Any]:
        selector = self.site.selector("product_card")
        if not selector:
            return []
        return await self.session.find_all(selector)

    async def open_card(self, card: Any, fallback_url: Optional[str] = None) -> Optional[str]:
        """Click into a card's detail page, or load its link directly.

        Args:
            card: Card handle from list_product_cards.
            fallback_url: Product URL parsed from the card, used when the
                click does not navigate.

        Returns:
            The detail page URL, or None if no detail page was reached.
        """
        start_url = self.session.current_url
        try:
            await self.session.evaluate_on(
                card, OPEN_CARD_SCRIPT, self.site.selector("card_add_button")
            )
        except SessionFault as e:
            # Navigation may tear down the script context mid-call
            logger.debug("card_click_script_failed", site=self.key, error=str(e))

        opened = await self.session.wait_until(
            self._left_results(start_url), timeout_ms=self.config.detail_wait_ms
        )
        if opened and self.is_detail_url(self.session.current_url):
            return self.session.current_url

        if fallback_url and self.is_detail_url(fallback_url):
            logger.debug("card_click_fallback_navigate", site=self.key, url=fallback_url)
            await self.session.navigate(fallback_url)
            await self.session.settle()
            return self.session.current_url

        return None

    def _left_results(self, start_url: str):
        async def predicate() -> bool:
            url = self.session.current_url
            return url != start_url and self.is_detail_url(url)

        return predicate
