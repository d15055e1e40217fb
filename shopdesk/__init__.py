"""Shopdesk: business-rule dispatch and resilient storage for storefront chat."""

__version__ = "0.3.0"
