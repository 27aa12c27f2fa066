"""Network reachability probe.

A single HTTP HEAD against the mirror landing page tells us whether
pacstrap has a chance of downloading anything. Any response, whatever its
status, proves the network path works; only connection-level failures and
timeouts count as unreachable.
"""

from __future__ import annotations

import asyncio

import aiohttp

from arch_bootstrap.config.settings import DEFAULT_PROBE_URL
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.exceptions import NetworkUnreachableError


log = LoggerFactory.for_network()


class NetworkProbe:
    """HTTP reachability check against a well-known host."""

    def __init__(self, url: str = DEFAULT_PROBE_URL, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def probe(self) -> int:
        """Send one HEAD request.

        Returns:
            HTTP status of the response

        Raises:
            NetworkUnreachableError: On connection errors or timeout
        """
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.head(self.url, allow_redirects=True) as resp:
                    log.debug(f"HEAD {self.url} -> {resp.status}")
                    return resp.status
        except asyncio.TimeoutError as e:
            raise NetworkUnreachableError(self.url, "timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkUnreachableError(self.url, str(e)) from e

    def check(self) -> int:
        """Blocking wrapper around probe()."""
        status = asyncio.run(self.probe())
        log.info(f"{self.url} is reachable (HTTP {status})")
        return status
