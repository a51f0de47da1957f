"""JioMart adapter."""
from .configured_site import ConfiguredSiteAdapter


class JioMartAdapter(ConfiguredSiteAdapter):
    """JioMart.

    The location button lives in a header that collapses on scroll, so the
    page is brought back to the top before it is looked up.
    """

    async def open_location_picker(self) -> None:
        await self.session.navigate(self.entry_url)
        await self.session.settle()
        await self.recover(fallback_url=self.entry_url)
        await self.session.scroll(to_bottom=False)
        await self.session.short_pause()

        if await self._click_first("location_trigger"):
            await self.session.pause()
