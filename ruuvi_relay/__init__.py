"""Ruuvi tag beacon relay for cloud telemetry ingestion."""

__version__ = "0.3.0"
