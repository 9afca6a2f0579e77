"""Webhook inbound system.

Receives webhooks from Shopify. Each delivery is signature-verified,
deduplicated, and dispatched to its topic handler.
"""
