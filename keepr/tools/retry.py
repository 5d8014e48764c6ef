"""Media download with bounded retry and exponential backoff.

AddPipe keeps recordings in volatile storage and may expire them soon after
the storefront hears about them, so every failure is treated as transient:
non-2xx responses and connection errors alike are retried, waiting
``base_delay * 2**attempt`` between attempts. The last attempt raises
immediately with no trailing wait. A URL httpx cannot parse fails at once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from keepr.errors import DownloadExhausted

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 2.0

_DOWNLOAD_HEADERS = {"User-Agent": "Mozilla/5.0", "Accept": "*/*"}


def _compute_delay(attempt: int, base_delay: float) -> float:
    """Exponential backoff: base * 2^attempt."""
    return base_delay * (2**attempt)


class MediaFetcher:
    """Downloads remote media, retrying every kind of failure."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        attempts: int = DEFAULT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self._client = client
        self.attempts = attempts
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    async def fetch(self, url: str) -> bytes:
        """Return the body of ``url`` or raise DownloadExhausted."""
        for attempt in range(self.attempts):
            try:
                response = await self._client.get(url, headers=_DOWNLOAD_HEADERS)
                if response.is_success:
                    return response.content
                logger.warning(
                    "Download attempt %d/%d failed (HTTP %d): %s",
                    attempt + 1,
                    self.attempts,
                    response.status_code,
                    url,
                )
            except httpx.InvalidURL as e:
                # Malformed URL: fail without retrying.
                logger.warning("Download URL rejected (%s): %s", e, url)
                raise DownloadExhausted(url, attempt + 1) from e
            except (httpx.HTTPError, OSError) as e:
                logger.warning(
                    "Download attempt %d/%d error (%s): %s",
                    attempt + 1,
                    self.attempts,
                    type(e).__name__,
                    url,
                )

            if attempt < self.attempts - 1:
                delay = _compute_delay(attempt, self.base_delay)
                logger.info("Retrying download in %.1fs: %s", delay, url)
                await self._sleep(delay)

        raise DownloadExhausted(url, self.attempts)
