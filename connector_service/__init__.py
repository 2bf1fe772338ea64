"""Connector service: OAuth integrations, background sync and webhook ingestion."""

__version__ = "1.0.0"
