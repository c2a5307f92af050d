"""
Tests for BrowserSession behaviour that does not need a running browser.
"""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from harvester.base import (
    CancelToken,
    ControlCandidate,
    DETAIL_PROFILE,
    LISTING_PROFILE,
    NavigationError,
    ScrapeCancelledException,
)
from harvester.crawlers.stealth import (
    CONTROL_ATTRIBUTE,
    DESCRIBE_CONTROLS_SCRIPT,
    STEALTH_HEADERS,
    BrowserSession,
    control_selector,
)

from fakes import SITE


class FakeResponse:
    def __init__(self, url, body=None, status=200, content_type='application/json', broken=False):
        self.url = url
        self.status = status
        self.headers = {'content-type': content_type}
        self._body = body
        self._broken = broken

    async def json(self):
        if self._broken:
            raise ValueError("not json")
        return self._body


class FakePage:
    """Records what the session asks of a Playwright page."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.gotos = []
        self.handlers = {}
        self.init_scripts = []
        self.headers = None
        self.closed = False
        self.url = 'about:blank'

    async def goto(self, url, wait_until=None, timeout=None):
        self.gotos.append((url, wait_until, timeout))
        outcome = self.outcomes.pop(0) if self.outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        self.url = url
        return FakeResponse(url, status=outcome)

    def on(self, event, handler):
        self.handlers[event] = handler

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def set_extra_http_headers(self, headers):
        self.headers = headers

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


def make_session(page, **kwargs):
    kwargs.setdefault('backoff_seconds', 0)
    return BrowserSession(FakeContext(), page, SITE, **kwargs)


class TestStealthSetup:
    def test_init_script_and_headers(self):
        page = FakePage()
        asyncio.run(make_session(page).apply_stealth())

        script = page.init_scripts[0]
        assert "webdriver" in script
        assert "plugins" in script
        assert "window.chrome" in script
        assert page.headers == STEALTH_HEADERS
        assert set(page.headers) == {'Accept-Language', 'Accept-Encoding'}


class TestNavigation:
    """Test retried navigation."""

    def test_profiles_set_wait_condition_and_timeout(self):
        page = FakePage()
        session = make_session(page, detail_timeout=60.0)

        async def go():
            await session.navigate("https://smartframe.com/search", LISTING_PROFILE)
            await session.navigate("https://smartframe.com/search/image/a/b", DETAIL_PROFILE)

        asyncio.run(go())

        assert page.gotos[0][1:] == ("networkidle", 45000)
        assert page.gotos[1][1:] == ("domcontentloaded", 60000)

    def test_retries_then_succeeds(self):
        page = FakePage([PlaywrightError("Timeout 45000ms exceeded"), 200])
        session = make_session(page)

        asyncio.run(session.navigate("https://smartframe.com/search", LISTING_PROFILE))
        assert len(page.gotos) == 2

    def test_http_error_exhausts_attempts(self):
        page = FakePage([404, 404, 404])
        session = make_session(page)

        with pytest.raises(NavigationError) as exc_info:
            asyncio.run(session.navigate("https://smartframe.com/search/image/a/b", DETAIL_PROFILE))

        assert exc_info.value.attempts == 3
        assert exc_info.value.status == 404
        assert len(page.gotos) == 3

    def test_cancelled_before_navigation(self):
        token = CancelToken()
        token.cancel()
        page = FakePage()

        with pytest.raises(ScrapeCancelledException):
            asyncio.run(make_session(page, cancel_token=token).navigate("https://smartframe.com/", LISTING_PROFILE))
        assert page.gotos == []


class TestResponseInterception:
    """Test the metadata cache fed by intercepted responses."""

    def deliver(self, session, page, response):
        asyncio.run(page.handlers['response'](response))

    def test_metadata_payload_is_cached(self):
        page = FakePage()
        session = make_session(page)
        session.install_metadata_interceptor()

        self.deliver(session, page, FakeResponse(
            "https://api.smartframe.io/api/v1/image/abc", {"imageId": "abc", "photographer": "A"},
        ))
        assert session.metadata_cache["abc"]["photographer"] == "A"

    def test_list_payload_caches_each_item(self):
        page = FakePage()
        session = make_session(page)
        session.install_metadata_interceptor()

        self.deliver(session, page, FakeResponse(
            "https://api.smartframe.io/api/search", [{"id": "a"}, {"image_id": "b"}, {"name": "x"}],
        ))
        assert set(session.metadata_cache) == {"a", "b"}

    @pytest.mark.parametrize("response", [
        FakeResponse("https://cdn.other.com/api/x", {"imageId": "abc"}),
        FakeResponse("https://api.smartframe.io/api/x", {"imageId": "abc"}, content_type="text/html"),
        FakeResponse("https://api.smartframe.io/api/x", broken=True),
    ])
    def test_ignored_responses(self, response):
        page = FakePage()
        session = make_session(page)
        session.install_metadata_interceptor()

        self.deliver(session, page, response)
        assert session.metadata_cache == {}


class TestClose:
    def test_close_is_idempotent_and_clears_cache(self):
        page = FakePage()
        session = make_session(page)
        session.metadata_cache["a"] = {}

        asyncio.run(session.close())
        asyncio.run(session.close())

        assert page.closed is True
        assert session.context.closed is True
        assert session.metadata_cache == {}


class FakeElement:
    def __init__(self, text, in_shadow_root=False):
        self.text = text
        self.in_shadow_root = in_shadow_root
        self.attributes = {}
        self.clicks = 0


class FakeLocator:
    def __init__(self, elements):
        self.elements = elements

    @property
    def first(self):
        return FakeLocator(self.elements[:1])

    def nth(self, index):
        return FakeLocator(self.elements[index:index + 1])

    async def count(self):
        return len(self.elements)

    async def scroll_into_view_if_needed(self, timeout=None):
        if not self.elements:
            raise PlaywrightError("element not found")

    async def click(self, timeout=None):
        if not self.elements:
            raise PlaywrightError("element not found")
        self.elements[0].clicks += 1


class FakeControlPage(FakePage):
    """
    A listing whose embed component renders a button inside its shadow root.

    The describe script only sees light-DOM elements; CSS locators pierce
    open shadow roots, so 'button, a' also matches the embed's button.
    """

    def __init__(self, elements):
        super().__init__()
        self.elements = elements

    async def evaluate(self, script):
        assert script == DESCRIBE_CONTROLS_SCRIPT
        light = [el for el in self.elements if not el.in_shadow_root]
        described = []
        for index, el in enumerate(light):
            el.attributes[CONTROL_ATTRIBUTE] = str(index)
            described.append({'index': index, 'text': el.text, 'visible': True})
        return described

    def locator(self, selector):
        if selector == 'button, a':
            return FakeLocator(list(self.elements))
        return FakeLocator([
            el for el in self.elements
            if control_selector(int(el.attributes.get(CONTROL_ATTRIBUTE, -1))) == selector
        ])


class TestControlClicks:
    """Test that the described control is the one clicked."""

    def test_shadow_root_button_ahead_of_target(self):
        share = FakeElement("Share", in_shadow_root=True)
        load_more = FakeElement("Load more")
        page = FakeControlPage([share, load_more])
        session = make_session(page)

        async def go():
            controls = await session.describe_controls()
            target = next(c for c in controls if c.text == "Load more")
            return await session.click_control(target)

        assert asyncio.run(go()) is True
        assert load_more.clicks == 1
        assert share.clicks == 0

    def test_vanished_control_reports_failure(self):
        page = FakeControlPage([])
        session = make_session(page)

        clicked = asyncio.run(session.click_control(ControlCandidate(index=3, text="Next")))
        assert clicked is False

    def test_script_tags_each_control(self):
        assert CONTROL_ATTRIBUTE in DESCRIBE_CONTROLS_SCRIPT
        assert control_selector(2) == '[data-harvester-control="2"]'


class HangingPage(FakePage):
    """A page whose script evaluation and element counting never return."""

    async def evaluate(self, script):
        await asyncio.sleep(3600)

    def locator(self, selector):
        class Hanging:
            async def count(self):
                await asyncio.sleep(3600)

        return Hanging()


class TestCancelledPageCalls:
    """Page-state helpers stop waiting once the job is cancelled."""

    @pytest.mark.parametrize("call", ["count_items", "document_height", "scroll_to_bottom"])
    def test_hanging_call_is_abandoned(self, call):
        async def go():
            token = CancelToken()
            session = make_session(HangingPage(), cancel_token=token)
            asyncio.get_running_loop().call_later(0.05, token.cancel)
            await asyncio.wait_for(getattr(session, call)(), timeout=5)

        with pytest.raises(ScrapeCancelledException):
            asyncio.run(go())
