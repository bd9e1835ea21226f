from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import unquote, urlparse

import httpx

from trait_matcher.errors import NetworkFetchError
from utils.logger import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ArtifactFetcher:
    """Fetches precomputed artifacts from a directory, file:// URL or http(s) base URL.

    Each fetch retries with exponential backoff (1s, 2s, 4s with the defaults)
    before raising NetworkFetchError. There is no overall deadline.
    """

    def __init__(
        self,
        base: str | Path,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.base = str(base)
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._sleep = sleep
        self._is_http = urlparse(self.base).scheme in ("http", "https")

    def location(self, name: str) -> str:
        if self._is_http:
            return self.base.rstrip("/") + "/" + name
        parsed = urlparse(self.base)
        root = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(self.base)
        return str(root / name)

    async def fetch_bytes(self, name: str) -> bytes:
        location = self.location(name)
        delay = self.backoff_seconds
        for attempt in range(self.retries + 1):
            try:
                return await self._fetch_once(location)
            except (httpx.HTTPError, OSError) as exc:
                if attempt >= self.retries:
                    raise NetworkFetchError(
                        f"Could not fetch {location} after {attempt + 1} attempts: {exc}. "
                        "Check the connection and reload."
                    ) from exc
                logger.warning(
                    f"Fetch failed for {location}, retrying in {delay:.1f}s... "
                    f"({self.retries - attempt} retries left)"
                )
                await self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    async def fetch_all(self, *names: str) -> list[bytes]:
        return list(await asyncio.gather(*(self.fetch_bytes(name) for name in names)))

    async def _fetch_once(self, location: str) -> bytes:
        if not self._is_http:
            return await asyncio.to_thread(Path(location).read_bytes)
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.get(location)
            response.raise_for_status()
            return response.content
