"""Outbound webhook delivery engine for the order-management platform."""

__version__ = "1.0.0"
