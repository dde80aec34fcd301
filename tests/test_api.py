from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from webfetch.api import create_app
from webfetch.chunk_store import ChunkStore
from webfetch.config import Config
from webfetch.i18n import Translator
from webfetch.models import ContentType, FetchResponse


@pytest.fixture
def service():
    service = MagicMock()
    service.fetch = AsyncMock(return_value=FetchResponse.text("<p>hello</p>", is_chunked=False, total_bytes=12))
    service.close_browser = AsyncMock(return_value=FetchResponse.text("Browser closed successfully"))
    service.aclose = AsyncMock()
    service.translate = Translator("en")
    service.sessions.is_running = False
    service.chunk_store = ChunkStore()
    return service


@pytest.fixture
def client(service):
    app = create_app(service=service, config=Config(environ={}))
    with TestClient(app) as client:
        yield client


def test_fetch_accepts_camel_case_body(client, service):
    response = client.post("/fetch/html", json={"url": "https://example.com/", "useBrowser": True})

    assert response.status_code == 200
    body = response.json()
    assert body["content"] == [{"type": "text", "text": "<p>hello</p>"}]
    assert body["isError"] is False
    assert body["isChunked"] is False

    request, content_type = service.fetch.await_args.args
    assert request.use_browser is True
    assert content_type is ContentType.HTML


def test_invalid_url_is_rejected(client, service):
    response = client.post("/fetch/html", json={"url": "ftp://example.com/file"})

    assert response.status_code == 422
    body = response.json()
    assert body["isError"] is True
    assert body["errorKind"] == "validation"
    assert body["content"][0]["text"].startswith("Invalid request:")
    service.fetch.assert_not_awaited()


def test_unknown_content_type(client):
    response = client.post("/fetch/pdf", json={"url": "https://example.com/"})

    assert response.status_code == 422
    assert response.json()["isError"] is True


def test_close_browser(client, service):
    response = client.post("/browser/close")

    assert response.status_code == 200
    assert response.json()["content"][0]["text"] == "Browser closed successfully"
    service.close_browser.assert_awaited_once()


def test_health(client, service):
    service.chunk_store.store_chunks(["a", "b"])

    response = client.get("/health")

    assert response.json() == {"status": "ok", "browserRunning": False, "storedChunkSets": 1}


def test_shutdown_closes_service(service):
    app = create_app(service=service, config=Config(environ={}))
    with TestClient(app):
        pass

    service.aclose.assert_awaited_once()
