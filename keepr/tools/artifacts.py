"""Print artifacts derived from a durable media address.

Currently one artifact: a QR code PNG pointing at the recording, printed
inside the book. Stored under ``qrcodes/`` with the same base name as the
media object it encodes.
"""

from __future__ import annotations

import io
import logging
import posixpath
from urllib.parse import unquote, urlparse

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from keepr.errors import ArtifactGenerationFailed
from keepr.tools.storage import ARTIFACT_PREFIX, DurableStore

logger = logging.getLogger(__name__)


def render_qr_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    """Render ``data`` as a black-on-white QR code PNG."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def artifact_key(source_address: str) -> str:
    """``https://b.s3.r.amazonaws.com/audio/abc.mp4`` -> ``qrcodes/abc.png``."""
    path = unquote(urlparse(source_address).path)
    stem = posixpath.splitext(posixpath.basename(path))[0]
    if not stem:
        raise ArtifactGenerationFailed(f"Cannot derive artifact name from {source_address!r}")
    return f"{ARTIFACT_PREFIX}/{stem}.png"


class ArtifactGenerator:
    def __init__(self, store: DurableStore):
        self._store = store

    async def generate(self, source_address: str) -> str:
        """Build the QR artifact for ``source_address``, upload it, return its address."""
        key = artifact_key(source_address)
        try:
            png = render_qr_png(source_address)
            return await self._store.put(key, png, "image/png")
        except ArtifactGenerationFailed:
            raise
        except Exception as e:
            logger.warning("QR artifact for %s failed: %s", source_address, e)
            raise ArtifactGenerationFailed(f"QR artifact failed: {e}") from e
