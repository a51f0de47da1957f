"""Zepto adapter."""
import structlog

from .configured_site import ConfiguredSiteAdapter

logger = structlog.get_logger()


class ZeptoAdapter(ConfiguredSiteAdapter):
    """Zepto.

    The address dialog animates in; the trigger is clicked a second time if
    the search field has not appeared.
    """

    INPUT_WAIT_MS = 5000

    async def open_location_picker(self) -> None:
        await super().open_location_picker()

        selectors = self.site.selector_list("location_input")
        shown = await self.session.wait_until(
            lambda: self._has_visible(selectors), timeout_ms=self.INPUT_WAIT_MS
        )
        if not shown:
            logger.debug("zepto_location_dialog_retry")
            await self._click_first("location_trigger")
            await self.session.pause()

    async def _has_visible(self, selectors: list[str]) -> bool:
        return await self._first_visible(selectors) is not None
