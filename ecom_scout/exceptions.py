"""Error taxonomy for the extraction pipeline.

Per-card and per-site problems are contained by the pipeline and recorded
as data on the SiteResult; only OrchestrationFault fails a whole job.
"""
from typing import Optional


class ScoutError(Exception):
    """Base class for all scraper errors."""


class LocationNotFound(ScoutError):
    """No generated variant of the location matched a suggestion."""

    def __init__(self, location: str, site: Optional[str] = None) -> None:
        self.location = location
        self.site = site
        where = f" on {site}" if site else ""
        super().__init__(f"Could not select location '{location}'{where}")


class NavigationTimeout(ScoutError):
    """Product markers did not appear within the bounded wait."""

    def __init__(self, url: str, timeout_ms: Optional[int] = None) -> None:
        self.url = url
        self.timeout_ms = timeout_ms
        detail = f" within {timeout_ms}ms" if timeout_ms is not None else ""
        super().__init__(f"Products did not load{detail}: {url}")


class SessionFault(ScoutError):
    """The browser crashed or stopped responding."""


class OrchestrationFault(ScoutError):
    """Failure outside the scope of any single site."""
