"""AddPipe capture-service client.

Looks up where a recording lives and deletes it once we hold a durable
copy. Lookups are single-shot; only the download itself is retried.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from keepr.errors import MediaLookupFailed

logger = logging.getLogger(__name__)


class CaptureClient:
    """Thin wrapper over the AddPipe REST API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str = "https://api.addpipe.com",
        storage_host: str = "eu2-addpipe.s3.nl-ams.scw.cloud",
    ):
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._storage_host = storage_host

    def _video_url(self, video_id: str) -> str:
        return f"{self._base_url}/video/{quote(str(video_id), safe='')}"

    @property
    def _headers(self) -> dict[str, str]:
        return {"X-PIPE-AUTH": self._api_key}

    def media_url_from_link(self, link: str) -> str:
        """Turn a ``pipeS3Link`` into a fetchable https URL."""
        if link.startswith("/"):
            link = f"{self._storage_host}{link}"
        if "://" not in link:
            link = f"https://{link}"
        return link

    async def resolve_media_url(self, video_id: str) -> str:
        """Return the download URL of the first rendition of ``video_id``."""
        try:
            response = await self._client.get(self._video_url(video_id), headers=self._headers)
        except httpx.HTTPError as e:
            raise MediaLookupFailed(video_id, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            logger.error(
                "AddPipe lookup for %s failed: %d %s",
                video_id,
                response.status_code,
                response.text[:200],
            )
            raise MediaLookupFailed(video_id, "AddPipe fetch failed", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise MediaLookupFailed(video_id, "AddPipe returned non-JSON body") from e

        videos = data.get("videos") if isinstance(data, dict) else None
        link = None
        if isinstance(videos, list) and videos and isinstance(videos[0], dict):
            link = videos[0].get("pipeS3Link")
        if not link:
            logger.error("No pipeS3Link in AddPipe response for %s", video_id)
            raise MediaLookupFailed(video_id, "no_pipeS3Link")

        return self.media_url_from_link(str(link))

    async def delete_video(self, video_id: str) -> bool:
        """Best-effort delete. Logs failures and never raises."""
        try:
            response = await self._client.delete(self._video_url(video_id), headers=self._headers)
        except httpx.HTTPError as e:
            logger.warning("Error deleting AddPipe video %s: %s", video_id, e)
            return False

        if not response.is_success:
            logger.warning(
                "Failed to delete AddPipe video %s - status %d", video_id, response.status_code
            )
            return False

        logger.info("Deleted AddPipe video %s", video_id)
        return True
