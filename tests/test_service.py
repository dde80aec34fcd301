"""
End-to-end tests for FetchService with a mocked network and a fake browser.

Test Coverage:
    - Small pages are delivered whole
    - Oversized content is chunked and retrievable to the last part
    - A blocked request is retried in browser mode
    - Conversion per content type, JSON validation
    - Truncation when splitting is disabled
    - Continuation errors (unknown id, bad cursor)
"""

import json

import httpx
import pytest
import yaml

from conftest import FakeLauncher, make_browser, make_page
from webfetch.config import Config
from webfetch.models import FetchRequest
from webfetch.service import FetchService
from webfetch.size_budget import byte_length

NOTE_START = "\n\n=== SYSTEM NOTE ==="

SMALL_HTML = (
    "<html><head><title>Small</title></head><body><h1>Welcome</h1>"
    + "<p>Some paragraph text for the page.</p>" * 40
    + "</body></html>"
)
BIG_TEXT = "".join(f"line {i:06d}: the quick brown fox jumps over the lazy dog\n" for i in range(3600))


def content_of(response) -> str:
    return response.content[0].text.split(NOTE_START)[0]


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"browser": {"max_attempts": 1}}))
    return Config(config_path=path, environ={})


@pytest.fixture
def routes():
    return {}


@pytest.fixture
def transport(routes):
    def handler(request):
        route = routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="not found")
        return route(request)
    return httpx.MockTransport(handler)


@pytest.fixture
def browser_parts():
    return make_browser()


@pytest.fixture
def launcher(browser_parts):
    browser, _, _ = browser_parts
    return FakeLauncher(browser)


@pytest.fixture
def service(config, transport, launcher, quiet_resolver):
    return FetchService.from_config(config, transport=transport, launcher=launcher, proxy_resolver=quiet_resolver)


@pytest.mark.asyncio
class TestSmallPage:
    async def test_html_is_returned_whole(self, service, routes, launcher):
        routes["/small"] = lambda request: httpx.Response(200, html=SMALL_HTML)
        assert 1500 < byte_length(SMALL_HTML) < 4000

        response = await service.fetch_html(FetchRequest(url="https://example.com/small"))

        assert not response.is_error
        assert response.is_chunked is False
        assert response.content[0].text == SMALL_HTML
        assert launcher.calls == 0

    async def test_markdown_conversion(self, service, routes):
        routes["/small"] = lambda request: httpx.Response(200, html=SMALL_HTML)

        response = await service.fetch_markdown(FetchRequest(url="https://example.com/small"))

        assert "# Welcome" in response.content[0].text
        assert "<p>" not in response.content[0].text

    async def test_text_conversion(self, service, routes):
        routes["/small"] = lambda request: httpx.Response(200, html=SMALL_HTML)

        response = await service.fetch_txt(FetchRequest(url="https://example.com/small"))

        text = response.content[0].text
        assert "Welcome" in text
        assert "<h1>" not in text

    async def test_metadata_on_request(self, service, routes):
        routes["/small"] = lambda request: httpx.Response(200, html=SMALL_HTML)

        response = await service.fetch_html(FetchRequest(url="https://example.com/small", includeMetadata=True))

        assert response.metadata["statusCode"] == 200
        assert response.metadata["fetchedWithBrowser"] is False


@pytest.mark.asyncio
class TestOversizedContent:
    async def test_chunked_delivery_to_the_last_part(self, service, routes):
        routes["/big.txt"] = lambda request: httpx.Response(200, text=BIG_TEXT)
        total = byte_length(BIG_TEXT)
        assert total > 200_000

        request = FetchRequest(url="https://example.com/big.txt", contentSizeLimit=50000)
        response = await service.fetch_txt(request)

        assert response.is_chunked
        assert response.total_chunks > 1
        assert response.chunk_id
        assert response.current_chunk == 1
        assert response.has_more_chunks
        assert "has been split" in response.content[0].text

        parts = [content_of(response)]
        seen = [response]
        while not response.is_last_chunk:
            response = await service.fetch_txt(FetchRequest(
                url="https://example.com/big.txt",
                chunkId=response.chunk_id,
                startCursor=response.next_cursor,
            ))
            assert not response.is_error
            parts.append(content_of(response))
            seen.append(response)

        assert "".join(parts) == BIG_TEXT
        assert len(seen) == seen[0].total_chunks
        assert response.is_last_chunk
        assert response.next_cursor is None
        for part in seen:
            assert byte_length(part.content[0].text) <= 50000
            assert part.fetched_bytes + part.remaining_bytes == total

    async def test_continuation_by_index(self, service, routes):
        routes["/big.txt"] = lambda request: httpx.Response(200, text=BIG_TEXT)
        first = await service.fetch_txt(FetchRequest(url="https://example.com/big.txt", contentSizeLimit=50000))

        by_cursor = service.read_chunk(first.chunk_id, start_cursor=first.next_cursor)
        by_index = service.read_chunk(first.chunk_id, chunk_index=1)

        assert by_index.content[0].text == by_cursor.content[0].text
        assert by_index.current_chunk == 2

    async def test_continuation_does_not_refetch(self, service, routes):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, text=BIG_TEXT)

        routes["/big.txt"] = handler
        first = await service.fetch_txt(FetchRequest(url="https://example.com/big.txt"))
        await service.fetch_txt(FetchRequest(
            url="https://example.com/big.txt", chunkId=first.chunk_id, startCursor=first.next_cursor,
        ))

        assert len(calls) == 1

    async def test_small_limit_is_raised_to_minimum(self, service, routes):
        routes["/big.txt"] = lambda request: httpx.Response(200, text=BIG_TEXT)

        response = await service.fetch_txt(FetchRequest(url="https://example.com/big.txt", contentSizeLimit=100))

        assert response.is_chunked
        assert byte_length(response.content[0].text) <= 4096

    async def test_truncation_when_splitting_disabled(self, service, routes):
        routes["/big.txt"] = lambda request: httpx.Response(200, text=BIG_TEXT)

        response = await service.fetch_txt(FetchRequest(
            url="https://example.com/big.txt", contentSizeLimit=50000, enableContentSplitting=False,
        ))

        text = response.content[0].text
        assert not response.is_chunked
        assert response.chunk_id is None
        assert byte_length(text) <= 50000
        assert BIG_TEXT.startswith(content_of(response))
        assert "truncated" in text
        assert response.metadata["truncated"] is True


@pytest.mark.asyncio
class TestContinuationErrors:
    async def test_unknown_chunk_id(self, service):
        response = await service.fetch_txt(FetchRequest(url="https://example.com/x", chunkId="nope", startCursor=0))

        assert response.is_error
        assert response.error_kind == "invalid_chunk_id"
        assert "nope" in response.content[0].text

    async def test_cursor_out_of_range(self, service, routes):
        routes["/big.txt"] = lambda request: httpx.Response(200, text=BIG_TEXT)
        first = await service.fetch_txt(FetchRequest(url="https://example.com/big.txt"))

        response = service.read_chunk(first.chunk_id, start_cursor=10_000_000)

        assert response.is_error
        assert response.error_kind == "invalid_cursor"


@pytest.mark.asyncio
class TestBrowserFallback:
    async def test_blocked_request_is_retried_in_browser(self, service, routes, browser_parts, launcher):
        routes["/guarded"] = lambda request: httpx.Response(403, text="Forbidden")
        _, _, page = browser_parts

        response = await service.fetch_html(FetchRequest(url="https://example.com/guarded", waitForTimeout=0))

        assert not response.is_error
        assert response.content[0].text == "<html><body><p>rendered</p></body></html>"
        assert launcher.calls == 1
        page.goto.assert_awaited_once()
        assert page.goto.await_args.args[0] == "https://example.com/guarded"

    async def test_auto_detect_off_reports_http_error(self, service, routes, launcher):
        routes["/guarded"] = lambda request: httpx.Response(403, text="Forbidden")

        response = await service.fetch_html(FetchRequest(url="https://example.com/guarded", autoDetectMode=False))

        assert response.is_error
        assert response.error_kind == "access_denied"
        assert launcher.calls == 0

    async def test_both_paths_fail(self, config, transport, routes, quiet_resolver):
        routes["/guarded"] = lambda request: httpx.Response(403, text="Forbidden")
        launcher = FakeLauncher(error=RuntimeError("chromium missing"))
        service = FetchService.from_config(config, transport=transport, launcher=launcher, proxy_resolver=quiet_resolver)

        response = await service.fetch_html(FetchRequest(url="https://example.com/guarded"))

        assert response.is_error
        assert "chromium missing" in response.content[0].text
        assert launcher.calls == 1

    async def test_server_error_does_not_launch_browser(self, service, routes, launcher):
        routes["/broken"] = lambda request: httpx.Response(500, text="oops")

        response = await service.fetch_html(FetchRequest(url="https://example.com/broken"))

        assert response.is_error
        assert "HTTP Error 500" in response.content[0].text
        assert launcher.calls == 0

    async def test_close_only_request(self, service, browser_parts):
        browser, _, _ = browser_parts
        async with service.sessions.session():
            pass

        response = await service.fetch_html(FetchRequest(url="about:blank", closeBrowser=True))

        assert response.content[0].text == "Browser closed successfully"
        browser.close.assert_awaited_once()
        assert not service.sessions.is_running


@pytest.mark.asyncio
class TestJson:
    async def test_valid_json_is_pretty_printed(self, service, routes):
        routes["/api"] = lambda request: httpx.Response(200, json={"items": [1, 2], "name": "café"})

        response = await service.fetch_json(FetchRequest(url="https://example.com/api"))

        assert not response.is_error
        assert json.loads(response.content[0].text) == {"items": [1, 2], "name": "café"}
        assert "café" in response.content[0].text

    async def test_invalid_json_is_parse_error(self, service, routes):
        routes["/api"] = lambda request: httpx.Response(200, text="<html>not json</html>")

        response = await service.fetch_json(FetchRequest(url="https://example.com/api"))

        assert response.is_error
        assert response.error_kind == "parse"
        assert "Invalid JSON" in response.content[0].text

    async def test_json_rendered_by_browser(self, config, transport, quiet_resolver):
        page = make_page(html='<html><head></head><body><pre>{"ok": true}</pre></body></html>')
        browser, _, _ = make_browser(page)
        service = FetchService.from_config(
            config, transport=transport, launcher=FakeLauncher(browser), proxy_resolver=quiet_resolver,
        )

        response = await service.fetch_json(FetchRequest(url="https://example.com/api", useBrowser=True, waitForTimeout=0))

        assert json.loads(response.content[0].text) == {"ok": True}


@pytest.mark.asyncio
async def test_aclose_closes_browser(service, browser_parts):
    browser, _, _ = browser_parts
    async with service.sessions.session():
        pass

    await service.aclose()

    browser.close.assert_awaited_once()
    assert service.sessions.in_flight == 0
