"""Browser automation session: the capability set the scraping core consumes."""
import asyncio
import json
import random
import re
import shutil
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Locator,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .exceptions import NavigationTimeout, SessionFault
from .models import AutomationConfig, DelayPolicy

logger = structlog.get_logger()


# Masks automation markers; runs before any page script on every load.
STEALTH_SCRIPT = """
() => {
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
  window.chrome = window.chrome || { runtime: {} };
  if (window.navigator.permissions && window.navigator.permissions.query) {
    const originalQuery = window.navigator.permissions.query.bind(window.navigator.permissions);
    window.navigator.permissions.query = (parameters) => (
      parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery(parameters)
    );
  }
  Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
  Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
  Object.defineProperty(navigator, 'platform', { get: () => 'Win32' });
}
"""

CURRENCY_TEXT_SCRIPT = """
() => Array.from(document.querySelectorAll('*')).some(el => {
  const text = el.textContent || '';
  if (!/(₹|\\bRs\\.?|\\bINR)\\s*\\d/.test(text)) return false;
  const style = window.getComputedStyle(el);
  const rect = el.getBoundingClientRect();
  return style.display !== 'none' && style.visibility !== 'hidden'
    && rect.width > 0 && rect.height > 0;
})
"""

SCROLL_HEIGHT_SCRIPT = "() => document.body.scrollHeight"


class BrowserSession(ABC):
    """One browser instance and the primitives the scraping core needs.

    Subclasses implement the raw primitives against an automation backend;
    pacing, polling and error-page recovery are shared here so every
    backend behaves the same way.
    """

    def __init__(
        self,
        delays: Optional[DelayPolicy] = None,
        error_banner_selector: str = AutomationConfig.error_banner_selector,
    ) -> None:
        self.delays = delays or DelayPolicy()
        self.error_banner_selector = error_banner_selector

    # Backend primitives

    @property
    @abstractmethod
    def current_url(self) -> str:
        """URL of the active document."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Load a URL in the active page."""

    @abstractmethod
    async def reload(self) -> None:
        """Reload the active document."""

    @abstractmethod
    async def find_all(self, selector: str) -> list[Any]:
        """Return element handles matching a CSS or ``xpath=`` selector."""

    @abstractmethod
    async def execute(self, script: str, arg: Any = None) -> Any:
        """Evaluate a script function in the page and return its value."""

    @abstractmethod
    async def evaluate_on(self, element: Any, script: str, arg: Any = None) -> Any:
        """Evaluate a script function with an element as first argument."""

    @abstractmethod
    async def outer_html(self, element: Any) -> str:
        """Markup of an element."""

    @abstractmethod
    async def text_of(self, element: Any) -> str:
        """Rendered text of an element."""

    @abstractmethod
    async def is_visible(self, element: Any) -> bool:
        """Whether an element is rendered and visible."""

    @abstractmethod
    async def click(self, element: Any) -> None:
        """Click an element, falling back to a script click."""

    @abstractmethod
    async def type_into(self, element: Any, text: str) -> None:
        """Clear an input and type text key by key."""

    @abstractmethod
    async def press_key(self, key: str) -> None:
        """Press a keyboard key in the focused element."""

    @abstractmethod
    async def scroll(self, to_bottom: bool = True) -> None:
        """Scroll the document to the bottom or back to the top."""

    @abstractmethod
    async def scroll_into_view(self, element: Any) -> None:
        """Center an element in the viewport."""

    @abstractmethod
    async def close(self) -> None:
        """Release the browser."""

    async def save_debug_snapshot(self, label: str) -> Optional[Path]:
        """Persist page state for a failed run. Backends without one skip it."""
        return None

    # Shared behaviour

    async def _wait_with_jitter(self, min_ms: int, max_ms: int) -> None:
        """Wait a random delay in [min_ms, max_ms]."""
        if max_ms <= 0:
            return
        delay = random.uniform(min_ms, max_ms) / 1000
        logger.debug("waiting", delay_seconds=f"{delay:.1f}")
        await asyncio.sleep(delay)

    async def pause(self) -> None:
        """Pacing delay between UI actions."""
        await self._wait_with_jitter(self.delays.step_min_ms, self.delays.step_max_ms)

    async def settle(self) -> None:
        """Delay after a navigation while the page renders."""
        await self._wait_with_jitter(self.delays.settle_min_ms, self.delays.settle_max_ms)

    async def short_pause(self) -> None:
        await self._wait_with_jitter(self.delays.short_min_ms, self.delays.short_max_ms)

    async def wait_until(
        self,
        predicate: Callable[[], Awaitable[bool]],
        timeout_ms: int,
        poll_ms: int = 500,
    ) -> bool:
        """Poll a predicate until it holds or the timeout elapses.

        Errors raised by the predicate count as "not yet".

        Args:
            predicate: Async callable returning True when the condition holds.
            timeout_ms: Maximum wait time in milliseconds.
            poll_ms: Delay between checks in milliseconds.

        Returns:
            True if the condition held before the deadline.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            try:
                if await predicate():
                    return True
            except (SessionFault, PlaywrightError) as e:
                logger.debug("wait_predicate_failed", error=str(e))
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(poll_ms / 1000, remaining))

    async def has_any(self, selector: str) -> bool:
        return len(await self.find_all(selector)) > 0

    async def has_currency_text(self) -> bool:
        """Whether any visible element shows a currency-marked number."""
        return bool(await self.execute(CURRENCY_TEXT_SCRIPT))

    async def apply_evasions(self) -> None:
        """Re-arm the anti-detection overrides on the current document."""
        try:
            await self.execute(STEALTH_SCRIPT)
        except (SessionFault, PlaywrightError) as e:
            logger.warning("stealth_script_failed", error=str(e))

    async def has_error_banner(self) -> bool:
        """Whether the site's generic failure page is showing."""
        for element in await self.find_all(self.error_banner_selector):
            if await self.is_visible(element):
                return True
        return False

    async def detect_and_recover_error_page(
        self,
        fallback_url: Optional[str] = None,
        marker_selector: Optional[str] = None,
        marker_timeout_ms: int = 15000,
    ) -> bool:
        """Reload away from a "something went wrong" page.

        Args:
            fallback_url: URL to load instead of refreshing, if given.
            marker_selector: Selector whose presence means content is back.
            marker_timeout_ms: Bound on the wait for the markers.

        Returns:
            True if an error page was found and recovery attempted.
        """
        if not await self.has_error_banner():
            return False

        logger.warning("error_page_detected", url=self.current_url, fallback_url=fallback_url)
        if fallback_url:
            await self.navigate(fallback_url)
        else:
            await self.reload()

        await self.settle()
        await self.apply_evasions()

        if marker_selector:
            recovered = await self.wait_until(
                lambda: self.has_any(marker_selector), timeout_ms=marker_timeout_ms
            )
            if recovered:
                logger.info("error_page_recovered", url=self.current_url)
            else:
                logger.warning("error_page_markers_missing", url=self.current_url)
        return True

    async def scroll_to_load(self, max_rounds: int = 5) -> None:
        """Scroll to the bottom repeatedly to trigger lazy loading.

        Stops once the document height has not grown after at least three
        rounds, then returns to the top.
        """
        initial_height = await self.execute(SCROLL_HEIGHT_SCRIPT)
        for round_no in range(max_rounds):
            await self.scroll(to_bottom=True)
            await self.pause()
            height = await self.execute(SCROLL_HEIGHT_SCRIPT)
            if height == initial_height and round_no > 2:
                break
        await self.scroll(to_bottom=False)
        await self.pause()


class PlaywrightSession(BrowserSession):
    """Playwright-backed session with anti-detection flags.

    Elements are Playwright locators (``locator.nth(i)``), so a handle stays
    addressable by index and re-queries the DOM on every use.
    """

    # Debug snapshot retention policy
    MAX_DEBUG_AGE_HOURS = 24

    # Resource types to block for faster page loads
    BLOCKED_RESOURCES = [
        "**/*.woff",
        "**/*.woff2",
        "**/*.ttf",
        "**/analytics*",
        "**/tracking*",
        "**/google-analytics*",
        "**/gtag*",
        "**/gtm*",
        "**/facebook*",
    ]

    LAUNCH_ARGS = [
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-gpu",
        "--disable-features=IsolateOrigins,site-per-process",
    ]

    def __init__(
        self,
        config: AutomationConfig,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
    ) -> None:
        super().__init__(config.delays, config.error_banner_selector)
        self.config = config
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self._closed = False

    @classmethod
    @asynccontextmanager
    async def launch(cls, config: AutomationConfig) -> AsyncIterator["PlaywrightSession"]:
        """Acquire a browser with evasions armed; always released on exit.

        Args:
            config: Automation configuration settings.

        Yields:
            A ready session with one open page.
        """
        playwright = await async_playwright().start()
        browser = None
        try:
            browser = await playwright.chromium.launch(
                headless=config.headless,
                args=cls.LAUNCH_ARGS,
                ignore_default_args=["--enable-automation"],
            )
            context = await browser.new_context(
                user_agent=config.user_agent,
                viewport={"width": config.viewport_width, "height": config.viewport_height},
                locale=config.locale,
            )
            context.set_default_timeout(config.timeout_ms)
            await context.add_init_script(f"({STEALTH_SCRIPT})()")

            if config.block_resources:
                for pattern in cls.BLOCKED_RESOURCES:
                    await context.route(pattern, lambda route: route.abort())

            page = await context.new_page()
            session = cls(config, playwright, browser, context, page)
        except PlaywrightError as e:
            if browser is not None:
                await browser.close()
            await playwright.stop()
            raise SessionFault(f"Browser launch failed: {e}") from e

        logger.debug("browser_launched", headless=config.headless)
        try:
            yield session
        finally:
            await session.close()

    @property
    def page(self) -> Page:
        """Get the underlying Playwright page."""
        return self._page

    @property
    def current_url(self) -> str:
        return self._page.url

    async def navigate(self, url: str) -> None:
        try:
            await self._page.goto(url, wait_until="domcontentloaded", timeout=self.config.timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(url, self.config.timeout_ms) from e
        except PlaywrightError as e:
            raise SessionFault(f"Navigation to {url} failed: {e}") from e

    async def reload(self) -> None:
        try:
            await self._page.reload(wait_until="domcontentloaded", timeout=self.config.timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(self._page.url, self.config.timeout_ms) from e
        except PlaywrightError as e:
            raise SessionFault(f"Reload failed: {e}") from e

    async def find_all(self, selector: str) -> list[Locator]:
        locator = self._page.locator(selector)
        try:
            count = await locator.count()
        except PlaywrightError as e:
            raise SessionFault(f"Query failed for {selector}: {e}") from e
        return [locator.nth(i) for i in range(count)]

    async def execute(self, script: str, arg: Any = None) -> Any:
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise SessionFault(f"Script evaluation failed: {e}") from e

    async def evaluate_on(self, element: Locator, script: str, arg: Any = None) -> Any:
        try:
            return await element.evaluate(script, arg)
        except PlaywrightError as e:
            raise SessionFault(f"Element script failed: {e}") from e

    async def outer_html(self, element: Locator) -> str:
        return await self.evaluate_on(element, "el => el.outerHTML")

    async def text_of(self, element: Locator) -> str:
        try:
            return await element.inner_text(timeout=5000)
        except PlaywrightError as e:
            logger.debug("inner_text_failed", error=str(e))
        try:
            return await element.text_content(timeout=5000) or ""
        except PlaywrightError as e:
            raise SessionFault(f"Reading element text failed: {e}") from e

    async def is_visible(self, element: Locator) -> bool:
        try:
            return await element.is_visible()
        except PlaywrightError:
            return False

    async def click(self, element: Locator) -> None:
        try:
            await element.click(timeout=5000)
        except PlaywrightError as e:
            logger.debug("native_click_failed", error=str(e))
            await self.evaluate_on(element, "el => el.click()")

    async def type_into(self, element: Locator, text: str) -> None:
        await self.click(element)
        try:
            await element.fill("")
            await element.press_sequentially(text, delay=self.delays.typing_delay_ms)
        except PlaywrightError as e:
            raise SessionFault(f"Typing into input failed: {e}") from e

    async def press_key(self, key: str) -> None:
        try:
            await self._page.keyboard.press(key)
        except PlaywrightError as e:
            raise SessionFault(f"Key press {key} failed: {e}") from e

    async def scroll(self, to_bottom: bool = True) -> None:
        script = (
            "() => window.scrollTo(0, document.body.scrollHeight)"
            if to_bottom
            else "() => window.scrollTo(0, 0)"
        )
        await self.execute(script)

    async def scroll_into_view(self, element: Locator) -> None:
        await self.evaluate_on(
            element, "el => el.scrollIntoView({block: 'center', behavior: 'smooth'})"
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._context.close()
            await self._browser.close()
        except PlaywrightError as e:
            logger.warning("browser_close_failed", error=str(e))
        finally:
            await self._playwright.stop()
        logger.debug("browser_closed")

    def _cleanup_old_debug_snapshots(self) -> None:
        """Remove debug snapshots older than MAX_DEBUG_AGE_HOURS."""
        debug_root = Path("debug")
        if not debug_root.exists():
            return

        cutoff = datetime.now() - timedelta(hours=self.MAX_DEBUG_AGE_HOURS)

        for snapshot_dir in debug_root.iterdir():
            if not snapshot_dir.is_dir():
                continue
            try:
                # Parse timestamp from directory name (YYYYMMDD_HHMMSS)
                dir_time = datetime.strptime(snapshot_dir.name, "%Y%m%d_%H%M%S")
                if dir_time < cutoff:
                    shutil.rmtree(snapshot_dir)
                    logger.debug("cleaned_debug_snapshot", path=str(snapshot_dir))
            except (ValueError, OSError):
                continue

    async def save_debug_snapshot(self, label: str) -> Optional[Path]:
        """Save page state for debugging when scraping fails.

        Creates a timestamped debug directory with screenshot, HTML, and state JSON.

        Args:
            label: What was being done (e.g., "instamart_location_fail").

        Returns:
            The snapshot directory, or None if the snapshot could not be taken.
        """
        self._cleanup_old_debug_snapshots()

        try:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            debug_dir = Path("debug") / timestamp
            debug_dir.mkdir(parents=True, exist_ok=True)

            safe_label = re.sub(r"[^a-zA-Z0-9_-]", "_", label)

            screenshot_path = debug_dir / f"{safe_label}_screenshot.png"
            await self._page.screenshot(path=str(screenshot_path), full_page=True)

            html_path = debug_dir / f"{safe_label}_page.html"
            html_path.write_text(await self._page.content(), encoding="utf-8")

            state = {
                "url": self._page.url,
                "context": label,
                "timestamp": timestamp,
                "page_title": await self._page.title(),
            }
            state_path = debug_dir / f"{safe_label}_state.json"
            state_path.write_text(json.dumps(state, indent=2), encoding="utf-8")

            logger.info("debug_snapshot_saved", path=str(debug_dir), context=label)
            return debug_dir

        except (PlaywrightError, OSError) as e:
            logger.warning("debug_snapshot_failed", context=label, error=str(e))
            return None
