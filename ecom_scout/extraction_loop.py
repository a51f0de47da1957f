"""Per-site extraction loop: visit cards until enough products are collected."""
from typing import Any, Optional

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .exceptions import NavigationTimeout, ScoutError
from .extractor import build_product, extract_prices, parse_card_summary
from .models import AutomationConfig, LoopState, PriceResult, Product
from .sites.base_site import SiteAdapter

logger = structlog.get_logger()

# Error-page check cadence, in collected products
RECOVERY_EVERY = 5


class ExtractionLoop:
    """Drives one adapter over the search results of one query.

    States run ``scrolling -> scanning_cards -> visiting_card ->
    collecting`` and end in ``done``; a round that leaves the count short
    of the target goes through ``retrying`` (reload, rescroll, recover)
    and scans again from the first card.
    """

    def __init__(
        self,
        adapter: SiteAdapter,
        query: str,
        config: Optional[AutomationConfig] = None,
        log: Any = None,
    ) -> None:
        """Initialize the loop.

        Args:
            adapter: Site adapter bound to an open session.
            query: Product search query.
            config: Automation configuration settings.
            log: Bound structlog logger for job context.
        """
        self.adapter = adapter
        self.session = adapter.session
        self.query = query
        self.config = config or adapter.config
        self.results_url = adapter.search_url(query)
        self.state = LoopState.SCROLLING
        self.rounds_used = 0
        self._log = (log or logger).bind(site=adapter.key)

    def _enter(self, state: LoopState) -> None:
        if state != self.state:
            self._log.debug("loop_state", state=str(state), previous=str(self.state))
        self.state = state

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(NavigationTimeout),
        reraise=True,
    )
    async def open_results(self) -> None:
        """Navigate to the search results, retried once on a timeout."""
        await self.adapter.navigate_to_search(self.query)

    async def run(self) -> list[Product]:
        """Collect up to ``min_products`` products from the results page.

        Returns:
            Products in collection order. Fewer than the target is not an
            error; the caller reports the actual count.

        Raises:
            NavigationTimeout: If the results never rendered (after one retry).
        """
        target = self.config.min_products
        products: list[Product] = []
        seen: set[str] = set()

        await self.open_results()

        self._enter(LoopState.SCROLLING)
        try:
            await self.session.scroll_to_load()
            await self.adapter.recover(self.results_url)
        except ScoutError as e:
            self._log.warning("results_settle_failed", error=str(e))

        while len(products) < target and self.rounds_used < self.config.max_rounds:
            self.rounds_used += 1
            try:
                await self._run_round(products, seen, target)
            except ScoutError as e:
                # Products collected so far are kept; the next round reloads
                self._log.warning(
                    "extraction_round_failed",
                    round=self.rounds_used,
                    collected=len(products),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._enter(LoopState.DONE)
        if len(products) < target:
            self._log.warning(
                "fewer_products_than_target",
                collected=len(products),
                target=target,
                rounds=self.rounds_used,
            )
        return products

    async def _run_round(self, products: list[Product], seen: set[str], target: int) -> None:
        """Scan the results once, appending new products in place.

        Raises:
            ScoutError: If reloading, listing or recovering the results page failed.
        """
        if self.rounds_used > 1:
            self._enter(LoopState.RETRYING)
            self._log.info(
                "extraction_retry_round",
                round=self.rounds_used,
                collected=len(products),
                target=target,
            )
            await self._reload_results()

        self._enter(LoopState.SCANNING_CARDS)
        cards = await self.adapter.list_product_cards()
        self._log.info("product_cards_found", count=len(cards), round=self.rounds_used)

        if not cards:
            await self.adapter.recover(self.results_url)
            await self.session.pause()
            return

        for index in range(len(cards)):
            if len(products) >= target:
                break

            # Re-query so each handle reflects the current DOM
            cards = await self.adapter.list_product_cards()
            if index >= len(cards):
                break

            self._enter(LoopState.VISITING_CARD)
            product = await self._visit_card(cards[index], index)
            self._enter(LoopState.SCANNING_CARDS)
            if product is None:
                continue

            key = product.product_url or product.name.lower()
            if key in seen:
                continue
            seen.add(key)

            self._enter(LoopState.COLLECTING)
            products.append(product)
            self._log.info(
                "product_collected",
                card_index=index,
                name=product.name,
                price=str(product.price) if product.price is not None else None,
                collected=len(products),
            )

            if len(products) % RECOVERY_EVERY == 0:
                await self.adapter.recover(self.results_url)

    async def _reload_results(self) -> None:
        await self.session.navigate(self.results_url)
        await self.session.settle()
        await self.session.apply_evasions()
        await self.session.scroll_to_load()
        await self.adapter.recover(self.results_url)

    async def _visit_card(self, card: Any, index: int) -> Optional[Product]:
        """Parse one card and read its prices from the detail page.

        Returns:
            The product, or None when the card was skipped.
        """
        try:
            await self.session.scroll_into_view(card)
            await self.session.short_pause()

            summary = parse_card_summary(await self.adapter.card_markup(card), self.adapter.site)
            if len(summary.name) < 2:
                self._log.debug("card_without_name", card_index=index)
                return None

            detail_url = await self.adapter.open_card(card, fallback_url=summary.product_url)
            if detail_url is None:
                self._log.warning("card_detail_not_opened", card_index=index, name=summary.name)
                await self._back_to_results()
                return None

            prices = await self._read_prices()
            await self._back_to_results()
            return build_product(summary, prices, detail_url)

        except ScoutError as e:
            self._log.warning("card_failed", card_index=index, error=str(e))
            await self._back_to_results()
            return None

    async def _read_prices(self) -> PriceResult:
        """Extract prices once, and once more after a pause if nothing was found."""
        await self.adapter.wait_for_price_text()
        await self.session.pause()

        detail_selectors = self.adapter.site.selector_list("detail_region") or None
        prices = await extract_prices(self.session, detail_selectors)
        if prices.is_empty:
            await self.session.pause()
            prices = await extract_prices(self.session, detail_selectors)
            if prices.is_empty:
                self._log.info("price_not_found", url=self.session.current_url)
        return prices

    async def _back_to_results(self) -> None:
        try:
            if self.session.current_url != self.results_url:
                await self.session.navigate(self.results_url)
                await self.session.pause()
            await self.adapter.recover(self.results_url)
        except ScoutError as e:
            self._log.warning("results_reload_failed", error=str(e))
