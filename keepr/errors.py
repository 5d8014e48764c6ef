"""Pipeline error taxonomy.

Every error carries a machine-readable ``reason`` that ends up verbatim in
per-item webhook results, so callers never have to parse messages.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures the pipeline knows how to report."""

    reason = "pipeline_error"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class MediaLookupFailed(PipelineError):
    """The capture service could not tell us where the recording lives."""

    reason = "capture_lookup_failed"

    def __init__(self, video_id: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"Capture lookup failed for {video_id}: {message}")
        self.video_id = video_id
        self.status_code = status_code


class DownloadExhausted(PipelineError):
    """Raised when every download attempt failed."""

    reason = "download_exhausted"

    def __init__(self, url: str, attempts: int) -> None:
        super().__init__(f"Failed to download after {attempts} attempts: {url}")
        self.url = url
        self.attempts = attempts


class UploadFailed(PipelineError):
    """Durable-store write failed. Not retried."""

    reason = "upload_failed"


class ArtifactGenerationFailed(PipelineError):
    """Derived artifact could not be built or stored. Non-fatal for the item."""

    reason = "artifact_failed"


class FulfillmentRejected(PipelineError):
    """The print partner refused (or never received) the batched order."""

    reason = "fulfillment_rejected"

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class Unauthorized(PipelineError):
    """Webhook signature missing or invalid."""

    reason = "unauthorized"


class MalformedPayload(PipelineError):
    """Body is not JSON, or lacks the structure we need."""

    reason = "malformed_payload"


class NoMatchingOrder(PipelineError):
    """A callback could not be correlated with any stored order."""

    reason = "no_matching_order"

    def __init__(self, candidates: list[str]) -> None:
        super().__init__(f"No order matches candidates {candidates}")
        self.candidates = candidates
