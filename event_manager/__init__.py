"""Shopify event manager.

Consumes Shopify webhooks and reads the Admin GraphQL API behind a
throttling-aware retry executor.
"""

__version__ = "1.0.0"
