"""Shopify Admin GraphQL transport and client."""
