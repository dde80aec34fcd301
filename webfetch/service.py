"""
Caller-facing fetch operations.

FetchService ties the strategy selector, format conversion and the chunk
store together and turns every outcome into a FetchResponse. Failures never
escape as exceptions; they come back as responses with is_error set.
"""

import json
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from .browser import BrowserFetcher, BrowserSessionManager, CookieJar, Launcher
from .chunk_store import ChunkSlice, ChunkStore, split_content_into_raw_chunks
from .config import Config, get_config
from .content import extract_main_content, html_to_markdown, html_to_text, parse_json
from .errors import ErrorKind, FetchError, InvalidChunkIdError, InvalidCursorError, classify
from .fetcher import FetchResult, HTTPFetcher
from .i18n import Translator, get_translator
from .models import ContentType, FetchRequest, FetchResponse
from .proxy import ProxyResolver
from .size_budget import (
    SizeBudgetCalculator,
    byte_length,
    render_chunk_note,
    render_last_chunk_note,
    render_truncation_note,
)
from .strategy import FetchStrategySelector

logger = structlog.get_logger(__name__)

DEFAULT_SIZE_LIMIT = 50000
MIN_SIZE_LIMIT = 4096
JSON_PREVIEW_CHARS = 100


class FetchService:
    def __init__(
        self,
        strategy: FetchStrategySelector,
        chunk_store: ChunkStore,
        translate: Optional[Translator] = None,
        default_size_limit: int = DEFAULT_SIZE_LIMIT,
        min_size_limit: int = MIN_SIZE_LIMIT,
    ):
        self.strategy = strategy
        self.chunk_store = chunk_store
        self.translate = translate or get_translator()
        self.default_size_limit = default_size_limit
        self.min_size_limit = min_size_limit

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        launcher: Optional[Launcher] = None,
        proxy_resolver: Optional[ProxyResolver] = None,
    ) -> "FetchService":
        """Wire up every collaborator from configuration."""
        config = config or get_config()
        fetcher_cfg = config.fetcher
        content_cfg = config.content
        browser_cfg = config.browser

        translator = get_translator(config.i18n.get('locale', 'en'))
        min_size_limit = content_cfg.get('min_size_limit', MIN_SIZE_LIMIT)
        budget = SizeBudgetCalculator(translator, min_size_limit=min_size_limit)
        chunk_store = ChunkStore(budget, ttl_seconds=config.chunks.get('ttl_seconds', 600))

        proxy_resolver = proxy_resolver or ProxyResolver()
        http_fetcher = HTTPFetcher(
            timeout_ms=fetcher_cfg.get('timeout', 30000),
            max_redirects=fetcher_cfg.get('max_redirects', 10),
            max_response_size=fetcher_cfg.get('max_response_size', 10 * 1024 * 1024),
            delay_range_ms=(fetcher_cfg.get('delay_min_ms', 500), fetcher_cfg.get('delay_max_ms', 3000)),
            proxy_resolver=proxy_resolver,
            transport=transport,
        )
        sessions = BrowserSessionManager(
            headless=browser_cfg.get('headless', True),
            executable_path=browser_cfg.get('executable_path'),
            launcher=launcher,
        )
        browser_fetcher = BrowserFetcher(
            sessions,
            proxy_resolver=proxy_resolver,
            cookies=CookieJar(),
            timeout_ms=fetcher_cfg.get('timeout', 30000),
            wait_for_timeout_ms=browser_cfg.get('wait_for_timeout', 5000),
            max_content_size=browser_cfg.get('max_content_size', 10 * 1024 * 1024),
            max_attempts=browser_cfg.get('max_attempts', 3),
            backoff_base=browser_cfg.get('backoff_base', 1.0),
            backoff_max=browser_cfg.get('backoff_max', 10.0),
        )
        strategy = FetchStrategySelector(http_fetcher, browser_fetcher, sessions)
        return cls(
            strategy,
            chunk_store,
            translate=translator,
            default_size_limit=content_cfg.get('size_limit', DEFAULT_SIZE_LIMIT),
            min_size_limit=min_size_limit,
        )

    @property
    def sessions(self) -> BrowserSessionManager:
        return self.strategy.sessions

    async def fetch_html(self, request: FetchRequest) -> FetchResponse:
        return await self.fetch(request, ContentType.HTML)

    async def fetch_json(self, request: FetchRequest) -> FetchResponse:
        return await self.fetch(request, ContentType.JSON)

    async def fetch_txt(self, request: FetchRequest) -> FetchResponse:
        return await self.fetch(request, ContentType.TEXT)

    async def fetch_markdown(self, request: FetchRequest) -> FetchResponse:
        return await self.fetch(request, ContentType.MARKDOWN)

    async def fetch(self, request: FetchRequest, content_type: ContentType) -> FetchResponse:
        """Fetch, convert and deliver request.url, or serve a stored continuation."""
        if request.debug:
            logger.info(
                "fetch_request",
                url=request.url,
                content_type=content_type.value,
                use_browser=request.use_browser,
                auto_detect_mode=request.auto_detect_mode,
                chunk_id=request.chunk_id,
                start_cursor=request.start_cursor,
            )

        if request.is_close_only:
            return await self.close_browser()

        if request.is_continuation:
            return self.read_chunk(request.chunk_id, request.start_cursor, request.chunk_index)

        try:
            result = await self.strategy.fetch(request)
            body, metadata = self._convert(result, request, content_type)
        except Exception as e:
            return self._error_response(FetchError.wrap(e), request, content_type)

        return self._deliver(body, request, metadata)

    def read_chunk(
        self,
        chunk_id: str,
        start_cursor: Optional[int] = None,
        chunk_index: Optional[int] = None,
    ) -> FetchResponse:
        """Serve a stored segment by byte cursor (preferred) or part index."""
        try:
            if start_cursor is not None:
                chunk = self.chunk_store.read_by_cursor(chunk_id, start_cursor)
            else:
                chunk = self.chunk_store.read_by_index(chunk_id, chunk_index or 0)
        except InvalidChunkIdError as e:
            logger.warning("chunk_not_found", chunk_id=chunk_id)
            return FetchResponse.error(
                self.translate('errors.invalid_chunk_id', {'chunk_id': chunk_id}),
                kind=e.kind.value,
            )
        except InvalidCursorError as e:
            logger.warning("chunk_cursor_invalid", chunk_id=chunk_id, cursor=e.cursor)
            return FetchResponse.error(
                self.translate('errors.invalid_cursor', {
                    'chunk_id': chunk_id,
                    'cursor': e.cursor,
                    'total_bytes': e.total_bytes,
                    'total_chunks': e.total_chunks,
                }),
                kind=e.kind.value,
            )

        logger.info(
            "chunk_served",
            chunk_id=chunk_id,
            current_chunk=chunk.current_chunk,
            total_chunks=chunk.total_chunks,
            is_last_chunk=chunk.is_last_chunk,
        )
        return self._render_slice(chunk, first_request=False)

    async def close_browser(self) -> FetchResponse:
        await self.sessions.close()
        return FetchResponse.text(self.translate('browser.closed'))

    async def aclose(self) -> None:
        await self.sessions.close()

    def size_limit_for(self, request: FetchRequest) -> int:
        limit = request.content_size_limit or self.default_size_limit
        if limit < self.min_size_limit:
            logger.warning("size_limit_raised", requested=limit, minimum=self.min_size_limit)
            return self.min_size_limit
        return limit

    def _convert(
        self,
        result: FetchResult,
        request: FetchRequest,
        content_type: ContentType,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        raw = result.text
        extracted_meta: Dict[str, Any] = {}

        if content_type == ContentType.JSON:
            text = html_to_text(raw) if result.via_browser else raw
            parsed = parse_json(text)
            if not parsed.success:
                raise FetchError(
                    self.translate('errors.invalid_json', {
                        'error': parsed.error,
                        'preview': text[:JSON_PREVIEW_CHARS],
                        'length': len(text),
                    }),
                    kind=ErrorKind.PARSE,
                )
            body = json.dumps(parsed.result, indent=2, ensure_ascii=False)
        else:
            source = raw
            extracted = None
            if request.extract_content:
                output_format = 'txt' if content_type == ContentType.TEXT else 'html'
                extracted = extract_main_content(raw, result.final_url, output_format)
                if extracted:
                    source = extracted['content']
                    extracted_meta = extracted['metadata']

            if content_type == ContentType.MARKDOWN:
                body = html_to_markdown(source)
            elif content_type == ContentType.TEXT:
                body = source if extracted or self._is_plain(result) else html_to_text(source)
            else:
                body = source

        metadata = None
        if request.include_metadata:
            metadata = {
                'url': result.url,
                'finalUrl': result.final_url,
                'statusCode': result.status_code,
                'contentType': result.content_type,
                'fetchedWithBrowser': result.via_browser,
            }
            metadata.update({key: value for key, value in extracted_meta.items() if value is not None})
        return body, metadata

    @staticmethod
    def _is_plain(result: FetchResult) -> bool:
        if result.via_browser:
            return False
        content_type = (result.content_type or '').lower()
        return not ('html' in content_type or 'xml' in content_type)

    def _deliver(self, body: str, request: FetchRequest, metadata: Optional[Dict[str, Any]]) -> FetchResponse:
        size_limit = self.size_limit_for(request)
        total_bytes = byte_length(body)

        if total_bytes <= size_limit:
            return FetchResponse.text(
                body,
                is_chunked=False,
                total_bytes=total_bytes,
                metadata=metadata,
            )

        if not request.enable_content_splitting:
            return self._truncate(body, total_bytes, size_limit, metadata)

        split = self.chunk_store.split_content_into_chunks(body, size_limit)
        chunk_id = self.chunk_store.store_chunks(split.segments, size_limit=size_limit, base_offset=split.offset)
        first = self.chunk_store.read_by_index(chunk_id, 0)
        return self._render_slice(first, first_request=True, metadata=metadata)

    def _truncate(
        self,
        body: str,
        total_bytes: int,
        size_limit: int,
        metadata: Optional[Dict[str, Any]],
    ) -> FetchResponse:
        budget = self.chunk_store.budget.truncation_budget(size_limit, total_bytes)
        kept = split_content_into_raw_chunks(body, budget)[0] if budget > 0 else ''
        kept_bytes = byte_length(kept)
        logger.info("content_truncated", total_bytes=total_bytes, kept_bytes=kept_bytes, size_limit=size_limit)

        note = render_truncation_note(self.translate, total_bytes=total_bytes, size_limit=size_limit)
        return FetchResponse.text(
            kept + note,
            is_chunked=False,
            total_bytes=total_bytes,
            fetched_bytes=kept_bytes,
            remaining_bytes=total_bytes - kept_bytes,
            metadata={**(metadata or {}), 'truncated': True},
        )

    def _render_slice(
        self,
        chunk: ChunkSlice,
        first_request: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FetchResponse:
        if chunk.is_last_chunk:
            note = render_last_chunk_note(
                self.translate,
                current=chunk.current_chunk,
                total=chunk.total_chunks,
                fetched_bytes=chunk.fetched_bytes,
                total_bytes=chunk.total_bytes,
                first_request=first_request,
            )
        else:
            note = render_chunk_note(
                self.translate,
                current=chunk.current_chunk,
                total=chunk.total_chunks,
                fetched_bytes=chunk.fetched_bytes,
                total_bytes=chunk.total_bytes,
                remaining_bytes=chunk.remaining_bytes,
                size_limit=chunk.size_limit or self.default_size_limit,
                chunk_id=chunk.chunk_id,
                next_cursor=chunk.next_cursor,
                estimated_requests=chunk.total_chunks - chunk.current_chunk,
                first_request=first_request,
            )

        return FetchResponse.text(
            chunk.text + note,
            is_chunked=chunk.total_chunks > 1,
            total_chunks=chunk.total_chunks,
            current_chunk=chunk.current_chunk,
            chunk_id=chunk.chunk_id,
            has_more_chunks=chunk.has_more_chunks,
            total_bytes=chunk.total_bytes,
            fetched_bytes=chunk.fetched_bytes,
            remaining_bytes=chunk.remaining_bytes,
            is_last_chunk=chunk.is_last_chunk,
            next_cursor=chunk.next_cursor,
            metadata=metadata,
        )

    def _error_response(self, error: FetchError, request: FetchRequest, content_type: ContentType) -> FetchResponse:
        kind = classify(error)
        logger.error(
            "fetch_failed",
            url=request.url,
            content_type=content_type.value,
            kind=kind.value,
            status_code=error.status_code,
            error=error.message,
        )
        message = self.translate('errors.fetch_failed', {
            'content_type': content_type.value,
            'url': request.url,
            'error': error.message,
        })
        return FetchResponse.error(message, kind=kind.value)
