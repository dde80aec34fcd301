"""
Lightweight fetch path: a plain HTTP request/response cycle over httpx.
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import httpx
import structlog

from .errors import ErrorKind, FetchError
from .models import FetchRequest
from .proxy import ProxyResolver

logger = structlog.get_logger(__name__)

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
)

# Markers of bot-protection interstitials served with a non-2xx status.
CHALLENGE_MARKERS = (
    "cf-chl-",
    "challenge-platform",
    "just a moment...",
    "attention required! | cloudflare",
    "checking your browser",
    "captcha",
)

TEXTUAL_TYPES = (
    "text/",
    "application/json",
    "application/ld+json",
    "application/xml",
    "application/xhtml+xml",
    "application/rss+xml",
    "application/atom+xml",
    "application/javascript",
)


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


class FetchResult:
    def __init__(
        self,
        url: str,
        status_code: int,
        content: bytes = b'',
        headers: Dict[str, str] = None,
        final_url: str = None,
        fetch_time: float = 0.0,
        content_type: str = None,
        encoding: str = None,
        via_browser: bool = False,
    ):
        self.url = url
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.final_url = final_url or url
        self.fetch_time = fetch_time
        self.content_type = content_type
        self.encoding = encoding
        self.via_browser = via_browser
        self.timestamp = datetime.now(timezone.utc)

    @property
    def text(self) -> str:
        """Decode the body using the detected encoding, falling back to utf-8."""
        if not self.content:
            return ""
        try:
            return self.content.decode(self.encoding or 'utf-8')
        except (UnicodeDecodeError, LookupError):
            return self.content.decode('utf-8', errors='replace')

    @property
    def size(self) -> int:
        return len(self.content)


class HTTPFetcher:
    def __init__(
        self,
        timeout_ms: int = 30000,
        max_redirects: int = 10,
        max_response_size: int = 10 * 1024 * 1024,
        delay_range_ms: Tuple[int, int] = (500, 3000),
        proxy_resolver: Optional[ProxyResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.timeout_ms = timeout_ms
        self.max_redirects = max_redirects
        self.max_response_size = max_response_size
        self.delay_range_ms = delay_range_ms
        self.proxy_resolver = proxy_resolver or ProxyResolver()
        self._transport = transport
        self._sleep = sleep

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Fetch request.url; every failure surfaces as a FetchError."""
        timeout = (request.timeout or self.timeout_ms) / 1000
        proxy = await self.proxy_resolver.resolve(request.proxy, request.use_system_proxy)
        if request.debug:
            logger.info("http_fetch_start", url=request.url, method=request.method, proxy=proxy, timeout=timeout)

        start_time = time.time()
        try:
            result = await asyncio.wait_for(self._fetch(request, proxy, timeout), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise FetchError(f"Request timeout after {timeout}s", kind=ErrorKind.TIMEOUT, cause=e) from e
        except FetchError:
            raise
        except httpx.ConnectTimeout as e:
            raise FetchError(
                f"Connect timeout: {e}", kind=ErrorKind.NETWORK, cause=e, code="CONNECT_TIMEOUT"
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(f"Request timeout after {timeout}s: {e}", kind=ErrorKind.TIMEOUT, cause=e) from e
        except httpx.UnsupportedProtocol as e:
            raise FetchError(f"Invalid URL: {e}", kind=ErrorKind.VALIDATION, cause=e) from e
        except httpx.TransportError as e:
            raise FetchError(f"Connection error: {e}", kind=ErrorKind.NETWORK, cause=e) from e
        except httpx.TooManyRedirects as e:
            raise FetchError(f"Too many redirects (max {self._max_redirects(request)})", cause=e) from e

        result.fetch_time = time.time() - start_time
        logger.info(
            "http_fetch_complete",
            url=request.url,
            final_url=result.final_url,
            status_code=result.status_code,
            size=result.size,
            fetch_time=round(result.fetch_time, 3),
        )
        return result

    def _max_redirects(self, request: FetchRequest) -> int:
        return self.max_redirects if request.max_redirects is None else request.max_redirects

    def _headers(self, request: FetchRequest) -> Dict[str, str]:
        headers = {
            'User-Agent': random_user_agent(),
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.5',
            'Accept-Encoding': 'gzip, deflate',
            'Upgrade-Insecure-Requests': '1',
        }
        headers.update(request.headers)
        return headers

    async def _fetch(self, request: FetchRequest, proxy: Optional[str], timeout: float) -> FetchResult:
        async def pause_before_redirect(response: httpx.Response) -> None:
            if response.is_redirect:
                low, high = self.delay_range_ms
                delay = random.uniform(low, high) / 1000
                logger.debug("redirect_delay", url=str(response.url), delay=round(delay, 3))
                await self._sleep(delay)

        event_hooks = {} if request.no_delay else {'response': [pause_before_redirect]}
        transport = self._transport or httpx.AsyncHTTPTransport(proxy=proxy)

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            max_redirects=self._max_redirects(request),
            headers=self._headers(request),
            transport=transport,
            trust_env=False,
            event_hooks=event_hooks,
        ) as client:
            async with client.stream(request.method, request.url) as response:
                content_type = response.headers.get('content-type', '').lower()
                if not self._should_fetch_content(content_type):
                    raise FetchError(
                        f"Unsupported content type: {content_type}",
                        kind=ErrorKind.VALIDATION,
                        status_code=response.status_code,
                    )

                content = await self._read_body(response, request.url)
                self._raise_for_status(response, content)

                return FetchResult(
                    url=request.url,
                    status_code=response.status_code,
                    content=content,
                    headers=dict(response.headers),
                    final_url=str(response.url),
                    content_type=content_type,
                    encoding=self._extract_encoding(response.headers, content),
                )

    async def _read_body(self, response: httpx.Response, url: str) -> bytes:
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_response_size:
            raise FetchError(
                f"Content too large: {content_length} bytes > {self.max_response_size} bytes",
                kind=ErrorKind.VALIDATION,
                status_code=response.status_code,
            )

        content = b''
        async for chunk in response.aiter_bytes(chunk_size=8192):
            content += chunk
            if len(content) > self.max_response_size:
                logger.warning("response_truncated", url=url, max_response_size=self.max_response_size)
                content = content[:self.max_response_size]
                break
        return content

    def _raise_for_status(self, response: httpx.Response, content: bytes) -> None:
        status = response.status_code
        if status < 400:
            return

        reason = response.reason_phrase or ''
        message = f"HTTP Error {status}: {reason}".rstrip(': ')
        head = content[:4096].decode('utf-8', errors='ignore').lower()
        if status == 403 or any(marker in head for marker in CHALLENGE_MARKERS):
            raise FetchError(f"{message} (access denied)", kind=ErrorKind.ACCESS_DENIED, status_code=status)
        if status in (408, 504):
            raise FetchError(message, kind=ErrorKind.TIMEOUT, status_code=status)
        raise FetchError(message, status_code=status)

    def _should_fetch_content(self, content_type: str) -> bool:
        if not content_type:
            return True
        return content_type.startswith(TEXTUAL_TYPES) or content_type.endswith(('+json', '+xml'))

    def _extract_encoding(self, headers: httpx.Headers, content: bytes) -> str:
        """Character encoding from the Content-Type header or an HTML meta tag."""
        content_type = headers.get('content-type', '').lower()
        if 'charset=' in content_type:
            charset = content_type.split('charset=')[1].split(';')[0].strip(' \'"')
            if charset:
                return charset

        if content and len(content) > 100:
            head = content[:1024].decode('utf-8', errors='ignore').lower()
            start = head.find('charset=')
            if start != -1:
                start += len('charset=')
                while start < len(head) and head[start] in '"\' ':
                    start += 1
                end = start
                while end < len(head) and end < start + 40 and head[end] not in '"\'> ;/':
                    end += 1
                charset = head[start:end].strip(' \'"')
                if charset:
                    return charset

        return 'utf-8'
