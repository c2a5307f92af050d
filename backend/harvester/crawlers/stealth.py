"""
Stealth browser for gallery pages with bot detection.

Uses Playwright with stealth launch flags and per-page property spoofing.
One Chromium process is shared; every job gets its own BrowserContext and
tab so one job's navigation, cookies and state never touch another's.
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Response,
    Error as PlaywrightError,
)

from ..base import (
    CancelToken,
    ControlCandidate,
    NavigationError,
    NavigationProfile,
    ScrapeCancelledException,
)
from ..config import GallerySite
from ..utils.extractors import identify_metadata_payload

logger = logging.getLogger(__name__)


USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

# Only headers a real browser sends on every request type. Document-only
# headers (Sec-Fetch-*, Upgrade-Insecure-Requests) would be wrong on XHR.
STEALTH_HEADERS = {
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'gzip, deflate, br',
}

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => false
    });

    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5]
    });

    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });

    window.chrome = {
        runtime: {}
    };
"""

LAUNCH_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-accelerated-2d-canvas',
    '--disable-gpu',
]

# Describes every light-DOM button/link for the pagination matchers and tags
# each with its index, so the click lands on the same element. "Visible" means
# rendered and inside an extended band of twice the viewport height.
CONTROL_ATTRIBUTE = 'data-harvester-control'

DESCRIBE_CONTROLS_SCRIPT = """
() => Array.from(document.querySelectorAll('button, a')).map((el, index) => {
    el.setAttribute('%s', String(index));
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    const viewHeight = window.innerHeight || document.documentElement.clientHeight;
    const viewWidth = window.innerWidth || document.documentElement.clientWidth;
    const inBand = rect.top >= 0 && rect.left >= 0 &&
        rect.bottom <= viewHeight * 2 && rect.right <= viewWidth &&
        rect.width > 0 && rect.height > 0;
    const shown = style.display !== 'none' && style.visibility !== 'hidden' && style.opacity !== '0';
    return {
        index,
        text: (el.textContent || '').trim(),
        ariaLabel: el.getAttribute('aria-label') || '',
        classes: Array.from(el.classList || []),
        tag: el.tagName.toLowerCase(),
        disabled: el.hasAttribute('disabled') || el.getAttribute('aria-disabled') === 'true',
        visible: inBand && shown,
    };
})
""" % CONTROL_ATTRIBUTE


def control_selector(index: int) -> str:
    """Selector for the control tagged `index` by the last describe pass."""
    return f'[{CONTROL_ATTRIBUTE}="{index}"]'


class BrowserSession:
    """
    One job's browser tab.

    Owns stealth setup, retried navigation with listing/detail wait profiles,
    the response interceptor and the job-scoped metadata cache. Every await
    goes through the job's cancel token.
    """

    def __init__(
        self,
        context: BrowserContext,
        page: Page,
        site: GallerySite,
        cancel_token: Optional[CancelToken] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        listing_timeout: Optional[float] = None,
        detail_timeout: Optional[float] = None,
        selector_timeout: float = 15.0,
    ):
        self.context = context
        self.page = page
        self.site = site
        self.cancel_token = cancel_token or CancelToken()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.listing_timeout = listing_timeout
        self.detail_timeout = detail_timeout
        self.selector_timeout = selector_timeout
        # item_id -> raw intercepted payload; lives exactly as long as this session
        self.metadata_cache: Dict[str, Any] = {}
        self._closed = False

    # ---------------- setup ----------------

    async def apply_stealth(self):
        """Install property spoofing before any site script runs on this page."""
        await self.page.add_init_script(STEALTH_SCRIPT)
        await self.page.set_extra_http_headers(STEALTH_HEADERS)

    def intercept_responses(self, predicate: Callable[[str], bool], on_match: Callable[[Any], None]):
        """
        Call on_match(json_body) for every JSON response whose URL satisfies predicate.

        Runs as a fire-and-forget listener; it never blocks navigation and
        failures to read a body are ignored.
        """
        async def handle(response: Response):
            if not predicate(response.url):
                return
            content_type = response.headers.get('content-type', '')
            if 'application/json' not in content_type:
                return
            try:
                data = await response.json()
            except (PlaywrightError, ValueError) as e:
                logger.debug(f"Skipping unreadable response {response.url}: {e}")
                return
            on_match(data)

        self.page.on('response', handle)

    def cache_metadata_payload(self, data: Any):
        """Store a payload (or each payload in a list) under its item id."""
        payloads = data if isinstance(data, list) else [data]
        for payload in payloads:
            item_id = identify_metadata_payload(payload)
            if item_id:
                self.metadata_cache[item_id] = payload
                logger.debug(f"Cached metadata for item: {item_id}")

    def install_metadata_interceptor(self):
        self.intercept_responses(self.site.is_metadata_api_url, self.cache_metadata_payload)

    # ---------------- navigation ----------------

    def _timeout_for(self, profile: NavigationProfile) -> float:
        if profile.name == 'listing' and self.listing_timeout:
            return self.listing_timeout
        if profile.name == 'detail' and self.detail_timeout:
            return self.detail_timeout
        return profile.timeout

    async def navigate(self, url: str, profile: NavigationProfile):
        """
        Navigate with retries and linear-times-attempt backoff.

        Raises:
            NavigationError: after max_attempts failures (timeouts, network
                errors, or HTTP status >= 400)
        """
        timeout_ms = int(self._timeout_for(profile) * 1000)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            logger.debug(f"Navigation attempt {attempt}/{self.max_attempts} ({profile.name}) to {url}")
            try:
                response = await self.cancel_token.guard(
                    self.page.goto(url, wait_until=profile.wait_until, timeout=timeout_ms)
                )
                if response is not None and response.status >= 400:
                    raise NavigationError(f"HTTP {response.status} for {url}", url=url, status=response.status)
                return
            except (PlaywrightError, NavigationError) as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.max_attempts} failed for {url}: {e}")
                if attempt < self.max_attempts:
                    await self.cancel_token.sleep(self.backoff_seconds * attempt)

        status = getattr(last_error, 'status', None)
        raise NavigationError(
            f"Failed to navigate to {url} after {self.max_attempts} attempts: {last_error}",
            url=url,
            attempts=self.max_attempts,
            status=status,
        ) from last_error

    async def wait_for_selector(self, selector: str, timeout: Optional[float] = None) -> bool:
        """Wait for a visible match; False on timeout instead of raising."""
        if not selector:
            return False
        try:
            await self.cancel_token.guard(
                self.page.wait_for_selector(
                    selector,
                    state='visible',
                    timeout=int((timeout or self.selector_timeout) * 1000),
                )
            )
            return True
        except PlaywrightError as e:
            logger.debug(f"Selector {selector} not found: {e}")
            return False

    async def sleep(self, seconds: float):
        await self.cancel_token.sleep(seconds)

    # ---------------- page state ----------------

    @property
    def current_url(self) -> str:
        return self.page.url

    async def content(self) -> str:
        return await self.cancel_token.guard(self.page.content())

    async def count_items(self) -> int:
        return await self.cancel_token.guard(self.page.locator(self.site.item_count_selector).count())

    async def document_height(self) -> int:
        height = await self.cancel_token.guard(self.page.evaluate("() => document.body.scrollHeight"))
        return int(height or 0)

    async def scroll_to_bottom(self):
        await self.cancel_token.guard(self.page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)"))

    async def describe_controls(self) -> List[ControlCandidate]:
        try:
            raw = await self.cancel_token.guard(self.page.evaluate(DESCRIBE_CONTROLS_SCRIPT))
        except PlaywrightError as e:
            logger.debug(f"Could not describe page controls: {e}")
            return []
        return [
            ControlCandidate(
                index=item['index'],
                text=item.get('text') or '',
                aria_label=item.get('ariaLabel') or '',
                classes=tuple(item.get('classes') or ()),
                tag=item.get('tag') or '',
                disabled=bool(item.get('disabled')),
                visible=bool(item.get('visible')),
            )
            for item in raw or []
        ]

    async def click_control(self, control: ControlCandidate) -> bool:
        """Scroll a control into view and click it. False if it vanished or refused."""
        locator = self.page.locator(control_selector(control.index)).first
        try:
            await self.cancel_token.guard(locator.scroll_into_view_if_needed(timeout=5000))
            await self.cancel_token.sleep(0.5)
            await self.cancel_token.guard(locator.click(timeout=5000))
            return True
        except PlaywrightError as e:
            logger.info(f"Pagination control no longer clickable: {e}")
            return False

    # ---------------- teardown ----------------

    async def close(self):
        """Close the tab and its context, with timeouts to prevent hanging."""
        if self._closed:
            return
        self._closed = True
        cleanup_timeout = 2.0
        for name, closer in (('page', self.page.close), ('context', self.context.close)):
            try:
                await asyncio.wait_for(closer(), timeout=cleanup_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{name.capitalize()} close timed out, forcing cleanup")
            except PlaywrightError as e:
                logger.debug(f"Error closing {name}: {e}")
        self.metadata_cache.clear()


class StealthBrowser:
    """
    Shared Chromium process for all jobs.

    Launched lazily on the first session; each session gets an isolated
    context so concurrent jobs cannot see each other's tabs or cookies.
    """

    def __init__(
        self,
        headless: bool = True,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        listing_timeout: Optional[float] = None,
        detail_timeout: Optional[float] = None,
        selector_timeout: float = 15.0,
    ):
        self.headless = headless
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.listing_timeout = listing_timeout
        self.detail_timeout = detail_timeout
        self.selector_timeout = selector_timeout
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _init_browser(self):
        """Launch Chromium if it is not running (or has disconnected)."""
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return
            await self._cleanup()

            self._playwright = await async_playwright().start()
            try:
                chromium_path = self._playwright.chromium.executable_path
                if not chromium_path or not os.path.exists(chromium_path):
                    raise RuntimeError("Chromium browser not found. Run: playwright install chromium")

                logger.debug("Launching Chromium browser...")
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=LAUNCH_ARGS,
                    handle_sigint=False,
                    handle_sigterm=False,
                    handle_sighup=False,
                )
                if not self._browser.is_connected():
                    raise RuntimeError("Browser launched but not connected")
            except Exception as e:
                logger.error(f"Failed to initialize browser: {e}")
                await self._cleanup()
                raise

    async def open_session(
        self,
        site: GallerySite,
        cancel_token: Optional[CancelToken] = None,
    ) -> BrowserSession:
        """Open a fresh isolated tab with stealth setup and the metadata interceptor."""
        if cancel_token is not None and cancel_token.cancelled:
            raise ScrapeCancelledException("Scrape cancelled")
        await self._init_browser()

        context = await self._browser.new_context(
            viewport={'width': 1920, 'height': 1080},
            user_agent=USER_AGENT,
            locale='en-US',
            ignore_https_errors=True,
        )
        try:
            page = await context.new_page()
            session = BrowserSession(
                context,
                page,
                site,
                cancel_token=cancel_token,
                max_attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
                listing_timeout=self.listing_timeout,
                detail_timeout=self.detail_timeout,
                selector_timeout=self.selector_timeout,
            )
            await session.apply_stealth()
            session.install_metadata_interceptor()
        except Exception:
            await context.close()
            raise
        return session

    async def _cleanup(self):
        """Clean up browser resources with timeouts to prevent hanging."""
        cleanup_timeout = 2.0

        if self._browser:
            try:
                await asyncio.wait_for(self._browser.close(), timeout=cleanup_timeout)
            except asyncio.TimeoutError:
                logger.warning("Browser close timed out, forcing cleanup")
            except PlaywrightError as e:
                logger.warning(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright:
            try:
                await asyncio.wait_for(self._playwright.stop(), timeout=cleanup_timeout)
            except asyncio.TimeoutError:
                logger.warning("Playwright stop timed out, forcing cleanup")
            except PlaywrightError as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

    async def close(self):
        """Close the browser and cleanup resources."""
        async with self._lock:
            await self._cleanup()

    async def __aenter__(self):
        await self._init_browser()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
