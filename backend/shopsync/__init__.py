"""Shopify data sync for a profit-analytics backend."""

__version__ = "1.0.0"
