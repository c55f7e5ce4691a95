"""Telemetry ingestion and state query server for medication boxes."""

__version__ = "1.0.0"
