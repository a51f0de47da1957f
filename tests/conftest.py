"""Shared fixtures: an in-memory browser session and a fixture site adapter."""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Optional

import pytest

from ecom_scout.browser_automation import (
    CURRENCY_TEXT_SCRIPT,
    SCROLL_HEIGHT_SCRIPT,
    STEALTH_SCRIPT,
    BrowserSession,
)
from ecom_scout.exceptions import LocationNotFound, NavigationTimeout
from ecom_scout.extractor import PRICE_ELEMENTS_SCRIPT
from ecom_scout.models import AutomationConfig, DelayPolicy, SiteConfig
from ecom_scout.sites.base_site import SiteAdapter
from ecom_scout.sites.configured_site import OPEN_CARD_SCRIPT

BASE_URL = "https://shop.example"
CARD_SELECTOR = ".card"


@dataclass
class FakeElement:
    """Element handle for FakeSession."""

    html: str = ""
    text: str = ""
    visible: bool = True
    href: Optional[str] = None


class FakeSession(BrowserSession):
    """In-memory page model implementing the session primitives.

    ``elements`` maps a selector to a list of FakeElements, or to a callable
    taking the session and returning one. ``pages`` maps a URL to the price
    snapshot the page script would return there.
    """

    def __init__(self, elements=None, pages=None, delays: Optional[DelayPolicy] = None):
        super().__init__(delays or DelayPolicy.none())
        self.url = "about:blank"
        self.elements: dict[str, Any] = dict(elements or {})
        self.pages: dict[str, list[dict]] = dict(pages or {})
        self.history: list[str] = []
        self.typed: list[str] = []
        self.keys: list[str] = []
        self.clicked: list[FakeElement] = []
        self.scrolls: list[bool] = []
        self.scroll_height = 1000
        self.evasions = 0
        self.reloads = 0
        self.price_scans = 0
        self.error_pending = 0
        self.closed = False
        self.on_enter: Optional[Callable[["FakeSession"], None]] = None
        self.snapshots: list[str] = []

    @property
    def current_url(self) -> str:
        return self.url

    def _clear_error(self) -> None:
        if self.error_pending:
            self.error_pending -= 1

    async def navigate(self, url: str) -> None:
        self.url = url
        self.history.append(url)
        self._clear_error()

    async def reload(self) -> None:
        self.reloads += 1
        self._clear_error()

    async def find_all(self, selector: str) -> list:
        if selector == self.error_banner_selector and selector not in self.elements:
            return [FakeElement(text="Something went wrong")] if self.error_pending else []
        value = self.elements.get(selector, [])
        if callable(value):
            value = value(self)
        return list(value)

    async def execute(self, script: str, arg: Any = None) -> Any:
        if script == PRICE_ELEMENTS_SCRIPT:
            self.price_scans += 1
            return list(self.pages.get(self.url, []))
        if script == CURRENCY_TEXT_SCRIPT:
            return bool(self.pages.get(self.url))
        if script == SCROLL_HEIGHT_SCRIPT:
            return self.scroll_height
        if script == STEALTH_SCRIPT:
            self.evasions += 1
        return None

    async def evaluate_on(self, element: FakeElement, script: str, arg: Any = None) -> Any:
        if script == OPEN_CARD_SCRIPT:
            await self.click(element)
        return None

    async def outer_html(self, element: FakeElement) -> str:
        return element.html

    async def text_of(self, element: FakeElement) -> str:
        return element.text

    async def is_visible(self, element: FakeElement) -> bool:
        return element.visible

    async def click(self, element: FakeElement) -> None:
        self.clicked.append(element)
        if element.href:
            await self.navigate(element.href)

    async def type_into(self, element: FakeElement, text: str) -> None:
        self.typed.append(text)

    async def press_key(self, key: str) -> None:
        self.keys.append(key)
        if key == "Enter" and self.on_enter is not None:
            self.on_enter(self)

    async def scroll(self, to_bottom: bool = True) -> None:
        self.scrolls.append(to_bottom)

    async def scroll_into_view(self, element: FakeElement) -> None:
        return None

    async def close(self) -> None:
        self.closed = True

    async def save_debug_snapshot(self, label: str):
        self.snapshots.append(label)
        return None


class FixtureAdapter(SiteAdapter):
    """Adapter over FakeSession with no selector logic of its own.

    Locations listed in ``UNKNOWN_LOCATIONS`` fail to select; the results
    page counts as loaded once the session has cards.
    """

    UNKNOWN_LOCATIONS = {"Atlantis"}

    async def select_location(self, name: str) -> None:
        if name in self.UNKNOWN_LOCATIONS:
            raise LocationNotFound(name, self.key)

    async def navigate_to_search(self, query: str) -> None:
        url = self.search_url(query)
        await self.session.navigate(url)
        if not await self.session.has_any(CARD_SELECTOR):
            raise NavigationTimeout(url)

    async def list_product_cards(self) -> list:
        return await self.session.find_all(CARD_SELECTOR)

    async def open_card(self, card: FakeElement, fallback_url: Optional[str] = None) -> Optional[str]:
        if not card.href:
            return None
        await self.session.navigate(card.href)
        return card.href


def time_out_visit(session: FakeSession, url: str, visit: int) -> None:
    """Make the ``visit``-th navigation to ``url`` raise NavigationTimeout."""
    navigate = session.navigate
    visits = []

    async def flaky(target: str) -> None:
        if target == url:
            visits.append(target)
            if len(visits) == visit:
                raise NavigationTimeout(target, 1000)
        await navigate(target)

    session.navigate = flaky


def card_html(index: int, name: Optional[str] = None) -> str:
    title = f"Hybrid Tomato {index}" if name is None else name
    return (
        f'<div class="card"><a href="/item/{index}">'
        f'<img src="/img/{index}.png"><span class="name">{title}</span></a>'
        f'<span class="qty">500 g</span></div>'
    )


def detail_snapshot(price: int, mrp: Optional[int] = None) -> list[dict]:
    snapshot = [{"text": f"₹{price}", "className": "price", "fontSize": 24, "inDetailRegion": True}]
    if mrp is not None:
        snapshot.append(
            {"text": f"₹{mrp}", "isStrikethrough": True, "fontSize": 14, "inDetailRegion": True}
        )
    return snapshot


@pytest.fixture
def fixture_site() -> SiteConfig:
    return SiteConfig(
        key="fixture",
        display_name="Fixture Mart",
        base_url=BASE_URL,
        search_url=BASE_URL + "/search?q={query}",
        detail_url_patterns=("/item/",),
        location_confirmed_url_parts=("/search",),
        selectors={
            "product_card": CARD_SELECTOR,
            "card_name": ".name",
            "card_link": "a[href*='/item/']",
            "card_quantity": ".qty",
        },
    )


@pytest.fixture
def fast_config(tmp_path) -> AutomationConfig:
    """Config with no pacing and short bounded waits."""
    return AutomationConfig(
        output_dir=tmp_path / "output",
        timeout_ms=1000,
        product_wait_ms=50,
        price_wait_ms=20,
        detail_wait_ms=20,
        save_artifacts=False,
        job_timeout_s=30,
        delays=DelayPolicy.none(),
    )


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def make_catalog():
    """Build a FakeSession holding a search listing and its detail pages.

    Args (of the returned builder):
        count: Number of cards.
        unnamed: Indexes of cards rendered without a title.
        unpriced: Indexes whose detail page shows no currency text.
    """

    def build(count: int = 25, unnamed=(), unpriced=()) -> FakeSession:
        cards = []
        pages = {}
        for i in range(count):
            href = f"{BASE_URL}/item/{i}"
            name = "" if i in unnamed else None
            cards.append(FakeElement(html=card_html(i, name), href=href))
            if i not in unpriced:
                pages[href] = detail_snapshot(price=40 + i, mrp=50 + i)
        return FakeSession(elements={CARD_SELECTOR: cards}, pages=pages)

    return build


@pytest.fixture
def session_factory():
    """Turn a FakeSession builder into a session factory for JobManager."""

    def make(build: Callable[[], FakeSession], opened: Optional[list] = None):
        @asynccontextmanager
        async def factory(config):
            session = build()
            if opened is not None:
                opened.append(session)
            try:
                yield session
            finally:
                await session.close()

        return factory

    return make


@pytest.fixture
def fixture_adapter_factory():
    return lambda site, session, config: FixtureAdapter(site, session, config)
