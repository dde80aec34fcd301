"""
Browser-automation fetch path.

BrowserSessionManager owns the single chromium instance shared by all
requests. It is started lazily on first use and closed explicitly; close()
waits for every in-flight session to finish before tearing the browser down,
and new sessions wait while a close is in progress.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from .errors import ErrorKind, FetchError
from .fetcher import FetchResult, random_user_agent
from .models import FetchRequest
from .proxy import ProxyResolver

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
    "--disable-infobars",
    "--disable-extensions",
    "--disable-blink-features=AutomationControlled",
]
VIEWPORT = {"width": 1920, "height": 1080}

CHALLENGE_SCRIPT = """() => {
    const title = document.title || '';
    const text = document.body ? (document.body.innerText || '') : '';
    return title.includes('Cloudflare') ||
        title.includes('Security Check') ||
        title.toLowerCase().includes('just a moment') ||
        text.includes('Checking your browser') ||
        document.querySelector('#challenge-form') !== null;
}"""

SCROLL_SCRIPT = """async () => {
    await new Promise((resolve) => {
        let total = 0;
        const distance = 100;
        const timer = setInterval(() => {
            window.scrollBy(0, distance);
            total += distance;
            if (total >= document.body.scrollHeight) {
                clearInterval(timer);
                resolve();
            }
        }, 100);
    });
}"""

CHALLENGE_SETTLE_MS = 2000

Launcher = Callable[[], Awaitable[Tuple[Any, Any]]]


async def launch_chromium(headless: bool = True, executable_path: Optional[str] = None) -> Tuple[Any, Any]:
    """Start playwright and a chromium browser; returns (playwright, browser)."""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=headless,
            executable_path=executable_path or None,
            args=LAUNCH_ARGS,
        )
    except Exception:
        await playwright.stop()
        raise
    return playwright, browser


class CookieJar:
    """Browser cookies remembered per host between fetches."""

    def __init__(self):
        self._cookies: Dict[str, List[Dict[str, Any]]] = {}

    @staticmethod
    def _domain(url: str) -> Optional[str]:
        return urlparse(url).hostname

    def save(self, url: str, cookies: List[Dict[str, Any]]) -> None:
        domain = self._domain(url)
        if domain and cookies:
            self._cookies[domain] = list(cookies)

    def get(self, url: str) -> List[Dict[str, Any]]:
        domain = self._domain(url)
        return list(self._cookies.get(domain, [])) if domain else []

    def clear(self) -> None:
        self._cookies.clear()


class BrowserSessionManager:
    def __init__(
        self,
        headless: bool = True,
        executable_path: Optional[str] = None,
        launcher: Optional[Launcher] = None,
    ):
        self.headless = headless
        self.executable_path = executable_path
        self._launcher = launcher or (lambda: launch_chromium(self.headless, self.executable_path))
        self._playwright = None
        self._browser = None
        self._start_lock = asyncio.Lock()
        self._state = asyncio.Condition()
        self._in_flight = 0
        self._closing = False

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _ensure_started(self):
        async with self._start_lock:
            if self._browser is not None and not self._browser.is_connected():
                logger.warning("browser_disconnected")
                playwright, self._playwright, self._browser = self._playwright, None, None
                await _stop_playwright(playwright)
            if self._browser is None:
                logger.info("browser_starting", headless=self.headless, executable_path=self.executable_path)
                try:
                    self._playwright, self._browser = await self._launcher()
                except Exception as e:
                    raise FetchError(f"Failed to launch browser: {e}", kind=ErrorKind.BROWSER, cause=e) from e
                logger.info("browser_started")
            return self._browser

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Any]:
        """Hold the shared browser for the duration of one fetch."""
        async with self._state:
            await self._state.wait_for(lambda: not self._closing)
            self._in_flight += 1
        try:
            yield await self._ensure_started()
        finally:
            async with self._state:
                self._in_flight -= 1
                self._state.notify_all()

    async def close(self) -> None:
        """Close the browser once no session is using it. Failures are logged, not raised."""
        async with self._state:
            await self._state.wait_for(lambda: not self._closing)
            self._closing = True
            await self._state.wait_for(lambda: self._in_flight == 0)

        try:
            async with self._start_lock:
                browser, playwright = self._browser, self._playwright
                self._browser = self._playwright = None
                if browser is not None:
                    try:
                        await browser.close()
                    except Exception as e:
                        logger.error("browser_close_failed", error=str(e))
                await _stop_playwright(playwright)
                if browser is not None:
                    logger.info("browser_closed")
        finally:
            async with self._state:
                self._closing = False
                self._state.notify_all()


async def _stop_playwright(playwright) -> None:
    if playwright is None:
        return
    try:
        await playwright.stop()
    except Exception as e:
        logger.error("playwright_stop_failed", error=str(e))


def _is_retryable(error: BaseException) -> bool:
    if not isinstance(error, Exception):
        return False
    return not (isinstance(error, FetchError) and error.kind == ErrorKind.VALIDATION)


class BrowserFetcher:
    def __init__(
        self,
        sessions: BrowserSessionManager,
        proxy_resolver: Optional[ProxyResolver] = None,
        cookies: Optional[CookieJar] = None,
        timeout_ms: int = 30000,
        wait_for_timeout_ms: int = 5000,
        max_content_size: int = 10 * 1024 * 1024,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 10.0,
        sleep: Callable = asyncio.sleep,
    ):
        self.sessions = sessions
        self.proxy_resolver = proxy_resolver or ProxyResolver()
        self.cookies = cookies or CookieJar()
        self.timeout_ms = timeout_ms
        self.wait_for_timeout_ms = wait_for_timeout_ms
        self.max_content_size = max_content_size
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Render request.url in the shared browser, retrying with jittered backoff."""
        proxy = await self.proxy_resolver.resolve(request.proxy, request.use_system_proxy)
        timeout_ms = request.timeout or self.timeout_ms
        wait_ms = self.wait_for_timeout_ms if request.wait_for_timeout is None else request.wait_for_timeout
        deadline = (timeout_ms + wait_ms) / 1000

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                logger.info("browser_fetch_attempt", url=request.url, attempt=number, max_attempts=self.max_attempts)
                try:
                    async with self.sessions.session() as browser:
                        return await asyncio.wait_for(
                            self._fetch_page(browser, request, proxy, timeout_ms, wait_ms),
                            timeout=deadline,
                        )
                except FetchError as e:
                    logger.warning("browser_fetch_failed", url=request.url, attempt=number, error=e.message)
                    raise
                except asyncio.TimeoutError as e:
                    logger.warning("browser_fetch_timeout", url=request.url, attempt=number, timeout=deadline)
                    raise FetchError(
                        f"Browser timeout after {deadline}s", kind=ErrorKind.TIMEOUT, cause=e
                    ) from e
                except PlaywrightTimeoutError as e:
                    logger.warning("browser_fetch_timeout", url=request.url, attempt=number, error=str(e))
                    raise FetchError(f"Browser timeout: {e}", kind=ErrorKind.TIMEOUT, cause=e) from e
                except PlaywrightError as e:
                    logger.warning("browser_fetch_failed", url=request.url, attempt=number, error=str(e))
                    kind = ErrorKind.NETWORK if "net::ERR_" in str(e) else ErrorKind.BROWSER
                    raise FetchError(f"Browser error: {e}", kind=kind, cause=e) from e

    async def _fetch_page(
        self,
        browser,
        request: FetchRequest,
        proxy: Optional[str],
        timeout_ms: int,
        wait_ms: int,
    ) -> FetchResult:
        context_options = {
            "user_agent": random_user_agent(),
            "viewport": VIEWPORT,
            "ignore_https_errors": True,
            "java_script_enabled": True,
        }
        if proxy:
            context_options["proxy"] = {"server": proxy}
        if request.headers:
            context_options["extra_http_headers"] = request.headers

        context = await browser.new_context(**context_options)
        try:
            if request.save_cookies:
                stored = self.cookies.get(request.url)
                if stored:
                    logger.debug("browser_using_stored_cookies", url=request.url, count=len(stored))
                    await context.add_cookies(stored)

            page = await context.new_page()
            page.set_default_timeout(timeout_ms)

            if request.debug:
                logger.info("browser_navigating", url=request.url, proxy=proxy)
            response = await page.goto(request.url, wait_until="networkidle", timeout=timeout_ms)

            await self._settle_challenge(page, request.url)

            if request.wait_for_selector:
                try:
                    await page.wait_for_selector(request.wait_for_selector, timeout=timeout_ms)
                except PlaywrightTimeoutError:
                    logger.warning("browser_selector_missing", url=request.url, selector=request.wait_for_selector)

            if wait_ms:
                await page.wait_for_timeout(wait_ms)

            if request.scroll_to_bottom:
                await self._auto_scroll(page, request.url)

            html = await page.content()
            final_url = page.url

            if request.save_cookies:
                self.cookies.save(request.url, await context.cookies())
        finally:
            await context.close()

        content = html.encode("utf-8")
        if len(content) > self.max_content_size:
            logger.warning("browser_content_truncated", url=request.url, size=len(content), limit=self.max_content_size)
            content = content[:self.max_content_size].decode("utf-8", errors="ignore").encode("utf-8")

        headers = response.headers if response is not None else {}
        return FetchResult(
            url=request.url,
            status_code=response.status if response is not None else 0,
            content=content,
            headers=dict(headers),
            final_url=final_url,
            content_type=headers.get("content-type", "text/html"),
            encoding="utf-8",
            via_browser=True,
        )

    async def _settle_challenge(self, page, url: str) -> None:
        """Give a bot-protection interstitial one chance to clear itself."""
        if not await page.evaluate(CHALLENGE_SCRIPT):
            return
        logger.info("browser_challenge_detected", url=url)
        try:
            await page.wait_for_load_state("networkidle")
        except PlaywrightTimeoutError:
            pass
        await page.wait_for_timeout(CHALLENGE_SETTLE_MS)
        if await page.evaluate(CHALLENGE_SCRIPT):
            logger.warning("browser_challenge_not_cleared", url=url)

    async def _auto_scroll(self, page, url: str) -> None:
        try:
            await page.evaluate(SCROLL_SCRIPT)
        except PlaywrightError as e:
            logger.warning("browser_scroll_failed", url=url, error=str(e))
