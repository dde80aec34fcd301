"""
Chooses between the lightweight HTTP path and the browser path.

    use_browser            -> browser
    otherwise              -> http
    http failed, auto_detect_mode and should_switch_to_browser -> browser, once

A failure of the browser path is final; there is no further fallback.
"""

from typing import Optional

import structlog

from .browser import BrowserFetcher, BrowserSessionManager
from .errors import FetchError, classify, should_switch_to_browser
from .fetcher import FetchResult, HTTPFetcher
from .models import FetchRequest

logger = structlog.get_logger(__name__)


def _as_fetch_error(error: Exception) -> FetchError:
    wrapped = FetchError.wrap(error)
    if wrapped is not error:
        wrapped.__cause__ = error
    return wrapped


class FetchStrategySelector:
    def __init__(
        self,
        http_fetcher: HTTPFetcher,
        browser_fetcher: BrowserFetcher,
        sessions: Optional[BrowserSessionManager] = None,
    ):
        self.http_fetcher = http_fetcher
        self.browser_fetcher = browser_fetcher
        self.sessions = sessions or browser_fetcher.sessions

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Run the request through the selected path; raises FetchError on failure."""
        try:
            if request.use_browser:
                return await self._browser_fetch(request)
            return await self._http_fetch(request)
        finally:
            if request.close_browser:
                await self.sessions.close()

    async def _http_fetch(self, request: FetchRequest) -> FetchResult:
        try:
            return await self.http_fetcher.fetch(request)
        except Exception as e:
            error = _as_fetch_error(e)

        kind = classify(error)
        if not request.auto_detect_mode or not should_switch_to_browser(error):
            logger.warning("http_fetch_failed", url=request.url, kind=kind.value, error=error.message)
            raise error

        logger.info("switching_to_browser", url=request.url, kind=kind.value, error=error.message)
        return await self._browser_fetch(request)

    async def _browser_fetch(self, request: FetchRequest) -> FetchResult:
        try:
            return await self.browser_fetcher.fetch(request)
        except Exception as e:
            error = _as_fetch_error(e)
        logger.error("browser_fetch_failed", url=request.url, kind=classify(error).value, error=error.message)
        raise error
