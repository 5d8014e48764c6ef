"""Shopify order ingestion: line-item extraction and the acquisition pipeline."""
