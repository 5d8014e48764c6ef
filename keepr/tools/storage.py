"""Durable object storage (S3).

Addresses are always derived here from bucket, region and key, never built
by callers, so a stored URL can be recomputed from its key at any time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from keepr.errors import UploadFailed

logger = logging.getLogger(__name__)

MEDIA_PREFIX = "audio"
ARTIFACT_PREFIX = "qrcodes"


def media_key(video_id: str) -> str:
    return f"{MEDIA_PREFIX}/{video_id}.mp4"


def public_address(bucket: str, region: str, key: str) -> str:
    return f"https://{bucket}.s3.{region}.amazonaws.com/{quote(key, safe='/')}"


class DurableStore:
    """Uploads payloads to one S3 bucket. No retries."""

    def __init__(self, bucket: str, region: str, client: Any | None = None):
        self.bucket = bucket
        self.region = region
        self._client = client or boto3.client("s3", region_name=region or None)

    def address_for(self, key: str) -> str:
        return public_address(self.bucket, self.region, key)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return its public address."""
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 upload failed for %s: %s", key, e)
            raise UploadFailed(f"Upload of {key} failed: {e}") from e

        address = self.address_for(key)
        logger.info("Uploaded %d bytes to %s", len(data), address)
        return address
