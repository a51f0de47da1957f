"""Swiggy Instamart adapter."""
from .configured_site import ConfiguredSiteAdapter


class InstamartAdapter(ConfiguredSiteAdapter):
    """Swiggy Instamart.

    The storefront often serves its "Something went wrong" page on the first
    load, so the home page is re-armed and recovered before the area search
    is opened.
    """

    async def open_location_picker(self) -> None:
        await self.session.navigate(self.entry_url)
        await self.session.settle()
        await self.session.apply_evasions()
        await self.recover(fallback_url=self.entry_url)

        if not await self._click_first("location_trigger"):
            await self.session.save_debug_snapshot("instamart_location_trigger_missing")
        await self.session.pause()
