"""Nature's Basket adapter."""
from .configured_site import ConfiguredSiteAdapter


class NaturesBasketAdapter(ConfiguredSiteAdapter):
    """Nature's Basket.

    The location dialog first shows saved addresses; the area search field
    only appears after its "Search area" entry is clicked.
    """

    async def open_location_picker(self) -> None:
        await super().open_location_picker()
        if await self._click_first("location_search_opener"):
            await self.session.short_pause()
