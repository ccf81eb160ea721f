"""Subscription reconciliation service for the dream journal."""

__version__ = "1.0.0"
