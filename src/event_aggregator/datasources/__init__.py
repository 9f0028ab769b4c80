"""Data source implementations."""

from event_aggregator.datasources.facebook import (
    AccessToken,
    AiohttpTransport,
    FacebookGraphClient,
)

__all__ = ["AccessToken", "AiohttpTransport", "FacebookGraphClient"]
