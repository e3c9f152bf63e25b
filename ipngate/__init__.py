"""IPN Gateway - inbound payment notification ingestion for banks and mobile money."""

__version__ = "1.0.0"
