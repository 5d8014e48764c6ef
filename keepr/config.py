"""Keepr fulfillment service configuration."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the fulfillment pipeline."""

    database_url: str = ""
    redis_url: str = ""

    # Capture service (AddPipe)
    addpipe_api_key: str = ""
    addpipe_api_url: str = "https://api.addpipe.com"
    addpipe_storage_host: str = "eu2-addpipe.s3.nl-ams.scw.cloud"

    # Durable object storage
    aws_bucket_name: str = ""
    aws_region: str = ""

    # Print partner (SiteFlow / OneFlow)
    siteflow_api_url: str = "https://orders.oneflow.io"
    siteflow_token: str = ""
    siteflow_secret: str = ""
    siteflow_sku: str = "keepr_hardback_210x210_staging"
    siteflow_destination: str = "pureprint"

    # Inbound webhook secrets (empty = verification skipped)
    webhook_secret: str = ""
    shopify_webhook_secret: str = ""

    download_attempts: int = 5
    download_base_delay: float = 2.0
    http_timeout: float = 30.0

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    def missing_ingest_config(self) -> list[str]:
        """Names of settings the order webhook cannot run without."""
        required = {
            "ADDPIPE_API_KEY": self.addpipe_api_key,
            "AWS_BUCKET_NAME": self.aws_bucket_name,
            "AWS_REGION": self.aws_region,
        }
        return [name for name, value in required.items() if not value]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
