import asyncio
from functools import partial

import screenshot_service
from conftest import fake_resolve
from screenshot_service import DESKTOP_VIEWPORT, MOBILE_VIEWPORT, ScreenshotService
from url_validator import ensure_public_host

guard = partial(ensure_public_host, resolve=fake_resolve)


class FakeRequest:
    def __init__(self, url):
        self.url = url


class FakeRoute:
    def __init__(self, url, log):
        self.request = FakeRequest(url)
        self.log = log

    async def abort(self, error_code=None):
        self.log.append(("abort", self.request.url))

    async def continue_(self):
        self.log.append(("continue", self.request.url))


class FakePage:
    def __init__(self, context):
        self.context = context

    async def goto(self, url, **kwargs):
        self.context.log.append(("goto", url))
        # The browser routes the navigation and everything the page loads
        for request_url in [url, *self.context.subresources]:
            await self.context.handler(FakeRoute(request_url, self.context.log))

    async def screenshot(self, **kwargs):
        return b"png"


class FakeContext:
    def __init__(self, log, subresources):
        self.log = log
        self.subresources = subresources
        self.handler = None

    async def route(self, pattern, handler):
        self.log.append(("route", pattern))
        self.handler = handler

    async def new_page(self):
        return FakePage(self)

    async def close(self):
        self.log.append(("close",))


class FakeBrowser:
    def __init__(self, subresources=()):
        self.log = []
        self.subresources = list(subresources)

    async def new_context(self, **kwargs):
        return FakeContext(self.log, self.subresources)


def service_with(browser, monkeypatch):
    service = ScreenshotService(pool_size=1, timeout=1, host_guard=guard)

    async def get_browser():
        return browser

    monkeypatch.setattr(service, "_get_browser", get_browser)
    return service


async def test_internal_url_is_never_navigated(monkeypatch):
    browser = FakeBrowser()
    service = service_with(browser, monkeypatch)

    data = await service.capture("http://169.254.169.254/latest/meta-data/", DESKTOP_VIEWPORT)

    assert data is None
    assert not any(call[0] == "goto" for call in browser.log)


async def test_browser_requests_to_internal_hosts_are_aborted(monkeypatch):
    browser = FakeBrowser(
        subresources=[
            "https://example.com/style.css",
            "http://10.0.0.5/admin.png",
            "https://metadata.example.com/latest/meta-data/",
            "data:image/png;base64,AAAA",
        ]
    )
    service = service_with(browser, monkeypatch)

    data = await service.capture("https://example.com/", MOBILE_VIEWPORT)

    assert data == b"png"
    assert ("route", "**/*") in browser.log
    assert browser.log.index(("route", "**/*")) < browser.log.index(("goto", "https://example.com/"))
    assert ("continue", "https://example.com/") in browser.log
    assert ("continue", "https://example.com/style.css") in browser.log
    assert ("continue", "data:image/png;base64,AAAA") in browser.log
    assert ("abort", "http://10.0.0.5/admin.png") in browser.log
    assert ("abort", "https://metadata.example.com/latest/meta-data/") in browser.log
    assert browser.log[-1] == ("close",)


async def test_capture_failure_returns_none(monkeypatch):
    service = ScreenshotService(pool_size=1, timeout=1)

    async def broken_capture(url, viewport):
        raise RuntimeError("browser crashed")

    monkeypatch.setattr(service, "_capture", broken_capture)
    assert await service.capture("https://example.com/", DESKTOP_VIEWPORT) is None


async def test_capture_timeout_returns_none(monkeypatch):
    service = ScreenshotService(pool_size=1, timeout=0.05)

    async def hanging_capture(url, viewport):
        await asyncio.sleep(60)

    monkeypatch.setattr(service, "_capture", hanging_capture)
    monkeypatch.setattr(screenshot_service, "CAPTURE_GRACE", 0)
    assert await service.capture("https://example.com/", MOBILE_VIEWPORT) is None


async def test_concurrent_captures_are_bounded(monkeypatch):
    service = ScreenshotService(pool_size=2, timeout=1)
    active = []
    peak = []

    async def tracked_capture(url, viewport):
        active.append(url)
        peak.append(len(active))
        await asyncio.sleep(0.01)
        active.remove(url)
        return b"png"

    monkeypatch.setattr(service, "_capture", tracked_capture)
    results = await asyncio.gather(
        *(service.capture(f"https://example.com/{i}", DESKTOP_VIEWPORT) for i in range(5))
    )
    assert results == [b"png"] * 5
    assert max(peak) == 2


async def test_close_without_browser_is_a_noop():
    await ScreenshotService().close()
