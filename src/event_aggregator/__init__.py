"""Graph API resilience and integrity layer for the event aggregator."""

__version__ = "0.1.0"
