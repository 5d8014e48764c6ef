"""Keepr order fulfillment service.

Turns Shopify orders carrying AddPipe recordings into SiteFlow print orders
and tracks SiteFlow's status callbacks back onto the order record.
"""

__version__ = "0.1.0"
