"""Webhook inbound system.

Receives order webhooks from Shopify and status callbacks from SiteFlow.
Each webhook is signature-verified (when a secret is configured),
deduplicated, and handed to the ingestion or reconciliation pipeline.
"""
