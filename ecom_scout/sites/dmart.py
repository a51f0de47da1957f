"""D-Mart adapter."""
from .configured_site import ConfiguredSiteAdapter


class DmartAdapter(ConfiguredSiteAdapter):
    """D-Mart.

    D-Mart opens its pincode dialog by itself on a fresh visit; the trigger
    is only clicked when no dialog input is showing.
    """

    async def open_location_picker(self) -> None:
        await self.session.navigate(self.entry_url)
        await self.session.settle()
        await self.recover(fallback_url=self.entry_url)

        if await self._first_visible(self.site.selector_list("location_input")) is None:
            await self._click_first("location_trigger")
            await self.session.pause()
