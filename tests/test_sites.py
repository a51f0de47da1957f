"""Tests for site adapters and location selection."""
import asyncio
from dataclasses import replace

import pytest

from conftest import BASE_URL, FakeElement, FakeSession
from ecom_scout.exceptions import LocationNotFound, NavigationTimeout
from ecom_scout.sites import (
    ConfiguredSiteAdapter,
    get_adapter,
    location_variants,
    matches_location,
)
from ecom_scout.sites.base_site import xpath_literal
from ecom_scout.sites.dmart import DmartAdapter
from ecom_scout.sites.instamart import InstamartAdapter
from ecom_scout.sites.naturesbasket import NaturesBasketAdapter


@pytest.fixture
def location_site(fixture_site):
    """Fixture site with a full set of location picker roles."""
    selectors = dict(fixture_site.selectors)
    selectors.update(
        {
            "location_trigger": ["#trigger"],
            "location_input": ["#missing-input", "#input"],
            "location_suggestion": ["sugg:{text}"],
            "location_confirm": "#confirm",
            "location_search_opener": "#opener",
        }
    )
    return replace(fixture_site, selectors=selectors)


@pytest.fixture
def picker_session():
    return FakeSession(
        elements={
            "#trigger": [FakeElement(text="trigger")],
            "#input": [FakeElement(text="input")],
            "#confirm": [FakeElement(text="confirm")],
        }
    )


def clicked_texts(session):
    return [element.text for element in session.clicked]


class TestLocationVariants:
    """Tests for location spelling variants."""

    def test_multi_word_name(self):
        assert location_variants("Navi Mumbai") == [
            "Navi Mumbai",
            "NaviMumbai",
            "navi mumbai",
            "NAVI MUMBAI",
        ]

    def test_duplicates_dropped(self):
        assert location_variants("mumbai") == ["mumbai", "MUMBAI", "Mumbai"]

    def test_surrounding_whitespace_stripped(self):
        assert location_variants("  Pune ")[0] == "Pune"

    def test_blank_name(self):
        assert location_variants("   ") == []


class TestMatchesLocation:
    @pytest.mark.parametrize(
        "text,variant,expected",
        [
            ("Mumbai, Maharashtra, India", "mumbai", True),
            ("Navi Mumbai, Maharashtra", "NaviMumbai", True),
            ("Pune, Maharashtra", "Mumbai", False),
            ("Mumbai", "", False),
        ],
    )
    def test_matching(self, text, variant, expected):
        assert matches_location(text, variant) is expected


class TestXpathLiteral:
    def test_plain(self):
        assert xpath_literal("mumbai") == "'mumbai'"

    def test_single_quote(self):
        assert xpath_literal("o'hare") == "\"o'hare\""

    def test_both_quotes(self):
        assert xpath_literal("a'b\"c") == "concat('a', \"'\", 'b\"c')"


class TestAdapterBasics:
    """Tests for URL helpers shared by every adapter."""

    def test_search_url_encodes_query(self, fixture_site, fake_session):
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session)

        assert adapter.search_url(" amul butter ") == BASE_URL + "/search?q=amul+butter"

    def test_is_detail_url(self, fixture_site, fake_session):
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session)

        assert adapter.is_detail_url(BASE_URL + "/item/3")
        assert not adapter.is_detail_url(BASE_URL + "/search?q=x")

    def test_marker_prefers_product_marker(self, fixture_site, fake_session):
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session)
        assert adapter.marker_selector == ".card"

        fixture_site.selectors["product_marker"] = "[data-grid]"
        assert adapter.marker_selector == "[data-grid]"


class TestSelectLocation:
    """Tests for the suggestion-based location picker."""

    def test_picks_matching_suggestion(self, location_site, picker_session, fast_config):
        """Test the first visible, non-transit suggestion is chosen."""
        picker_session.elements["sugg:'mumbai'"] = [
            FakeElement(text="Mumbai Airport, Terminal 2"),
            FakeElement(text="Mumbai Central", visible=False),
            FakeElement(text="Mumbai, Maharashtra"),
        ]
        adapter = ConfiguredSiteAdapter(location_site, picker_session, fast_config)

        asyncio.run(adapter.select_location("Mumbai"))

        assert picker_session.history == [BASE_URL]
        assert picker_session.typed == ["Mumbai"]
        assert clicked_texts(picker_session) == ["trigger", "Mumbai, Maharashtra", "confirm"]

    def test_tries_next_variant(self, location_site, picker_session, fast_config):
        picker_session.elements["sugg:'navimumbai'"] = [FakeElement(text="NaviMumbai Sector 17")]
        adapter = ConfiguredSiteAdapter(location_site, picker_session, fast_config)

        asyncio.run(adapter.select_location("Navi Mumbai"))

        assert picker_session.typed == ["Navi Mumbai", "NaviMumbai"]
        assert "NaviMumbai Sector 17" in clicked_texts(picker_session)

    def test_enter_fallback(self, location_site, picker_session, fast_config):
        """Test Enter is accepted when the site moves to a location-bound page."""

        def go_to_listing(session):
            session.url = BASE_URL + "/search"

        picker_session.on_enter = go_to_listing
        adapter = ConfiguredSiteAdapter(location_site, picker_session, fast_config)

        asyncio.run(adapter.select_location("Mumbai"))

        assert picker_session.typed == ["Mumbai", "mumbai", "MUMBAI", "Mumbai"]
        assert picker_session.keys == ["Enter"]

    def test_location_not_found(self, location_site, picker_session, fast_config):
        adapter = ConfiguredSiteAdapter(location_site, picker_session, fast_config)

        with pytest.raises(LocationNotFound, match="Atlantis") as exc_info:
            asyncio.run(adapter.select_location("Atlantis"))

        assert exc_info.value.site == "fixture"
        assert picker_session.snapshots == ["fixture_location_fail"]

    def test_missing_input(self, location_site, fast_config):
        session = FakeSession(elements={"#trigger": [FakeElement(text="trigger")]})
        adapter = ConfiguredSiteAdapter(location_site, session, fast_config)

        with pytest.raises(LocationNotFound):
            asyncio.run(adapter.select_location("Mumbai"))

        assert session.typed == []
        assert session.snapshots == ["fixture_location_input_missing"]


class TestNavigateToSearch:
    def test_results_loaded(self, fixture_site, fast_config):
        session = FakeSession(elements={".card": [FakeElement()]})
        adapter = ConfiguredSiteAdapter(fixture_site, session, fast_config)

        asyncio.run(adapter.navigate_to_search("tomato"))

        assert session.history == [BASE_URL + "/search?q=tomato"]

    def test_markers_never_appear(self, fixture_site, fake_session, fast_config):
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session, fast_config)

        with pytest.raises(NavigationTimeout) as exc_info:
            asyncio.run(adapter.navigate_to_search("tomato"))

        assert exc_info.value.timeout_ms == fast_config.product_wait_ms


class TestOpenCard:
    """Tests for entering a product detail page."""

    def test_click_navigates(self, fixture_site, fake_session, fast_config):
        card = FakeElement(href=BASE_URL + "/item/9")
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session, fast_config)

        assert asyncio.run(adapter.open_card(card)) == BASE_URL + "/item/9"
        assert fake_session.clicked == [card]

    def test_falls_back_to_card_link(self, fixture_site, fake_session, fast_config):
        """Test a click that goes nowhere falls back to the parsed link."""
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session, fast_config)

        url = asyncio.run(adapter.open_card(FakeElement(), fallback_url=BASE_URL + "/item/4"))

        assert url == BASE_URL + "/item/4"
        assert fake_session.history == [BASE_URL + "/item/4"]

    def test_no_detail_page(self, fixture_site, fake_session, fast_config):
        adapter = ConfiguredSiteAdapter(fixture_site, fake_session, fast_config)

        assert asyncio.run(adapter.open_card(FakeElement(), fallback_url=BASE_URL + "/cart")) is None
        assert fake_session.history == []


class TestSiteVariations:
    """Tests for per-site picker differences."""

    def test_registry(self, fixture_site, fake_session):
        assert isinstance(get_adapter(replace(fixture_site, key="instamart"), fake_session), InstamartAdapter)
        assert type(get_adapter(fixture_site, fake_session)) is ConfiguredSiteAdapter

    def test_dmart_skips_trigger_when_dialog_open(self, location_site, picker_session, fast_config):
        adapter = DmartAdapter(location_site, picker_session, fast_config)

        asyncio.run(adapter.open_location_picker())

        assert picker_session.clicked == []

    def test_instamart_rearms_evasions(self, location_site, picker_session, fast_config):
        adapter = InstamartAdapter(location_site, picker_session, fast_config)

        asyncio.run(adapter.open_location_picker())

        assert picker_session.evasions == 1
        assert clicked_texts(picker_session) == ["trigger"]

    def test_naturesbasket_opens_area_search(self, location_site, picker_session, fast_config):
        picker_session.elements["#opener"] = [FakeElement(text="Search area")]
        adapter = NaturesBasketAdapter(location_site, picker_session, fast_config)

        asyncio.run(adapter.open_location_picker())

        assert clicked_texts(picker_session) == ["trigger", "Search area"]
