from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from webfetch.proxy import ProxyResolver


class FakeClock:
    """Settable clock for TTL tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_page(html="<html><body><p>rendered</p></body></html>", status=200, challenge=False):
    page = MagicMock()
    page.goto = AsyncMock(return_value=MagicMock(status=status, headers={"content-type": "text/html"}))
    page.evaluate = AsyncMock(return_value=challenge)
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.content = AsyncMock(return_value=html)
    page.url = "https://example.com/"
    return page


def make_browser(page=None):
    page = page or make_page()
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.add_cookies = AsyncMock()
    context.cookies = AsyncMock(return_value=[
        {"name": "sid", "value": "abc", "domain": "example.com", "path": "/"},
    ])
    context.close = AsyncMock()

    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    browser.is_connected.return_value = True
    browser.close = AsyncMock()
    return browser, context, page


class FakeLauncher:
    def __init__(self, browser=None, error=None):
        self.browser = browser
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return None, self.browser


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiet_resolver():
    """Resolver that sees no proxy anywhere and never spawns a shell."""
    return ProxyResolver(environ={}, probe=AsyncMock(return_value=""))
