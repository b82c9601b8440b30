"""Billing webhook ingestion and subscription reconciliation."""

__version__ = "0.1.0"
