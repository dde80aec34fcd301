"""
Outbound proxy resolution.

First non-empty source wins: explicit request proxy, proxy environment
variables, then a probe of the user's login shell environment (catches proxies
exported in shell profiles that the service process did not inherit).
"""

import asyncio
import os
import re
import sys
from typing import Awaitable, Callable, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)

PROXY_ENV_VARS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "http_proxy",
    "https_proxy",
    "ALL_PROXY",
    "all_proxy",
)
NO_PROXY_ENV_VARS = ("NO_PROXY", "no_proxy")

SHELL_PROXY_PATTERN = re.compile(r"^(?:HTTP|HTTPS)_PROXY=(\S+)", re.IGNORECASE | re.MULTILINE)
PROBE_TIMEOUT = 3.0


async def shell_environment_probe(platform: str = sys.platform, timeout: float = PROBE_TIMEOUT) -> str:
    """Dump the environment of a fresh login shell."""
    if platform.startswith("win"):
        argv = ["cmd", "/c", "set"]
    else:
        argv = [os.environ.get("SHELL") or "/bin/sh", "-lc", "env"]

    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return stdout.decode("utf-8", errors="replace")


class ProxyResolver:
    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        probe: Optional[Callable[[], Awaitable[str]]] = None,
    ):
        self._environ = os.environ if environ is None else environ
        self._probe = probe or shell_environment_probe
        self._probed = False
        self._probed_proxy: Optional[str] = None
        self._probe_lock = asyncio.Lock()

    async def resolve(self, explicit_proxy: Optional[str] = None, use_system_proxy: bool = True) -> Optional[str]:
        if explicit_proxy and explicit_proxy.strip():
            logger.debug("proxy_resolved", source="request", proxy=explicit_proxy)
            return explicit_proxy.strip()

        if not use_system_proxy:
            return None

        proxy = self.system_proxy()
        if proxy:
            logger.debug("proxy_resolved", source="environment", proxy=proxy, no_proxy=self.no_proxy())
            return proxy

        proxy = await self.shell_proxy()
        if proxy:
            logger.debug("proxy_resolved", source="shell", proxy=proxy, no_proxy=self.no_proxy())
        return proxy

    def system_proxy(self) -> Optional[str]:
        for name in PROXY_ENV_VARS:
            value = self._environ.get(name)
            if value and value.strip():
                return value.strip()
        return None

    def no_proxy(self) -> Optional[str]:
        """Bypass list, reported for diagnostics only; it does not affect resolution."""
        for name in NO_PROXY_ENV_VARS:
            value = self._environ.get(name)
            if value:
                return value
        return None

    async def shell_proxy(self) -> Optional[str]:
        """Proxy exported in the login shell, probed once per resolver."""
        async with self._probe_lock:
            if self._probed:
                return self._probed_proxy
            try:
                output = await self._probe()
            except Exception as e:
                logger.warning("proxy_probe_failed", error=str(e))
                output = ""
            self._probed = True
            self._probed_proxy = parse_shell_proxy(output)
            return self._probed_proxy


def parse_shell_proxy(output: str) -> Optional[str]:
    match = SHELL_PROXY_PATTERN.search(output or "")
    return match.group(1) if match else None
