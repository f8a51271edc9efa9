import asyncio

import pytest

from contact_scraper.browser_session import BrowserSession, ScrapeSlots
from contact_scraper.errors import BrowserLaunchError


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


class FakeRoutePage:
    def __init__(self):
        self.default_timeout = None
        self.navigation_timeout = None
        self.routes = []

    def set_default_timeout(self, value):
        self.default_timeout = value

    def set_default_navigation_timeout(self, value):
        self.navigation_timeout = value

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))


class FakeContext:
    def __init__(self, options):
        self.options = options
        self.closed = False
        self.init_scripts = []

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        return FakeRoutePage()

    async def close(self):
        self.closed = True


class FakeBrowser:
    version = "120.0"

    def __init__(self):
        self.connected = True
        self.contexts = []
        self.closed = False

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeChromium:
    def __init__(self, failures=0):
        self.failures = failures
        self.launches = []

    async def launch(self, **kwargs):
        self.launches.append(kwargs)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("chromium crashed")
        return FakeBrowser()


class FakePlaywright:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakePlaywrightFactory:
    def __init__(self, failures=0):
        self.chromium = FakeChromium(failures)
        self.playwright = FakePlaywright(self.chromium)

    def __call__(self):
        return self

    async def start(self):
        return self.playwright


class FakeRequest:
    def __init__(self, url, resource_type):
        self.url = url
        self.resource_type = resource_type


class FakeRoute:
    def __init__(self, url, resource_type):
        self.request = FakeRequest(url, resource_type)
        self.action = None

    async def continue_(self):
        self.action = "continue"

    async def abort(self):
        self.action = "abort"


@pytest.mark.asyncio
async def test_seventh_scrape_waits_for_a_free_slot():
    slots = ScrapeSlots(6)
    gate = asyncio.Event()

    async def scrape():
        async with slots.slot():
            await gate.wait()

    tasks = [asyncio.create_task(scrape()) for _ in range(7)]
    await _settle()

    assert slots.active == 6
    assert slots.waiting == 1

    gate.set()
    await asyncio.gather(*tasks)
    assert slots.active == 0
    assert slots.waiting == 0


@pytest.mark.asyncio
async def test_release_wakes_waiter():
    slots = ScrapeSlots(1)
    await slots.acquire()
    waiter = asyncio.create_task(slots.acquire())
    await _settle()
    assert slots.waiting == 1

    slots.release()
    await waiter

    assert slots.active == 1
    assert slots.waiting == 0


def test_over_release_is_an_error():
    slots = ScrapeSlots(2)
    with pytest.raises(RuntimeError):
        slots.release()


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ScrapeSlots(0)


@pytest.mark.asyncio
async def test_job_page_releases_slot_and_context_on_error(config):
    factory = FakePlaywrightFactory()
    session = BrowserSession(config, playwright_factory=factory)

    with pytest.raises(ValueError):
        async with session.job_page("job-1"):
            assert session.slots.active == 1
            raise ValueError("extraction blew up")

    assert session.slots.active == 0
    browser = await session.get_browser()
    assert browser.contexts[0].closed
    await session.close()


@pytest.mark.asyncio
async def test_context_uses_german_locale_and_page_timeouts(make_config):
    config = make_config({"browser": {"page_timeout": 20, "navigation_timeout": 40}})
    session = BrowserSession(config, playwright_factory=FakePlaywrightFactory())

    context, page = await session.new_page("job-1")

    assert context.options["locale"] == "de-DE"
    assert context.options["timezone_id"] == "Europe/Berlin"
    assert context.options["extra_http_headers"]["Accept-Language"].startswith("de-DE")
    assert page.default_timeout == 20000
    assert page.navigation_timeout == 40000
    assert page.routes[0][0] == "**/*"
    assert context.init_scripts == []
    await session.close()


@pytest.mark.asyncio
async def test_browser_is_reused_then_relaunched_after_disconnect(config):
    factory = FakePlaywrightFactory()
    session = BrowserSession(config, playwright_factory=factory)

    first = await session.get_browser()
    assert await session.get_browser() is first

    first.connected = False
    second = await session.get_browser()

    assert second is not first
    assert first.closed
    assert session.launch_count == 2
    await session.close()
    assert factory.playwright.stopped


@pytest.mark.asyncio
async def test_launch_retries_then_raises(make_config):
    config = make_config({"browser": {"launch_retries": 1}})
    factory = FakePlaywrightFactory(failures=5)
    session = BrowserSession(config, playwright_factory=factory)

    with pytest.raises(BrowserLaunchError):
        await session.get_browser()
    assert len(factory.chromium.launches) == 2


@pytest.mark.asyncio
async def test_launch_recovers_on_retry(make_config):
    config = make_config({"browser": {"launch_retries": 1}})
    factory = FakePlaywrightFactory(failures=1)
    session = BrowserSession(config, playwright_factory=factory)

    browser = await session.get_browser()

    assert browser.is_connected()
    assert factory.chromium.launches[0]["headless"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url, resource_type, expected",
    [
        ("https://www.arbeitsagentur.de/jobsuche/jobdetail/1", "document", "continue"),
        ("https://rest.arbeitsagentur.de/idaas/captcha/image.png", "image", "continue"),
        ("https://www.arbeitsagentur.de/logo.png", "image", "abort"),
        ("https://www.googletagmanager.com/gtm.js", "script", "abort"),
        ("https://www.arbeitsagentur.de/api/contact", "xhr", "continue"),
    ],
)
async def test_request_routing(config, url, resource_type, expected):
    session = BrowserSession(config, playwright_factory=FakePlaywrightFactory())
    route = FakeRoute(url, resource_type)

    await session._route_request(route)

    assert route.action == expected
