"""Site adapters and the registry that maps site keys to them."""
from typing import Optional

from ..browser_automation import BrowserSession
from ..models import AutomationConfig, SiteConfig
from .base_site import SiteAdapter, location_variants, matches_location
from .configured_site import ConfiguredSiteAdapter
from .dmart import DmartAdapter
from .instamart import InstamartAdapter
from .jiomart import JioMartAdapter
from .naturesbasket import NaturesBasketAdapter
from .zepto import ZeptoAdapter

ADAPTERS: dict[str, type[SiteAdapter]] = {
    "instamart": InstamartAdapter,
    "zepto": ZeptoAdapter,
    "dmart": DmartAdapter,
    "jiomart": JioMartAdapter,
    "naturesbasket": NaturesBasketAdapter,
}


def get_adapter(
    site: SiteConfig,
    session: BrowserSession,
    config: Optional[AutomationConfig] = None,
) -> SiteAdapter:
    """Build the adapter registered for a site; unknown keys get the generic one."""
    adapter_cls = ADAPTERS.get(site.key, ConfiguredSiteAdapter)
    return adapter_cls(site, session, config)


__all__ = [
    "ADAPTERS",
    "ConfiguredSiteAdapter",
    "SiteAdapter",
    "get_adapter",
    "location_variants",
    "matches_location",
]
