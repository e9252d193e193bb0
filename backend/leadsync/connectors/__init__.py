"""
Connector factory and registry.
"""
from typing import Optional

from .base import (
    InboundEvent, InboundUser, Page, PlatformConnector, SyncWindow,
    classify_http_status, classify_transport_error,
)
from .smartlead import SmartleadConnector
from .lemlist import LemlistConnector
from .attio import AttioConnector

# Registry of available connectors
CONNECTOR_REGISTRY = {
    "smartlead": SmartleadConnector,
    "lemlist": LemlistConnector,
    "attio": AttioConnector,
}


def get_connector(platform: str, api_key: Optional[str], limiter, **kwargs) -> PlatformConnector:
    """
    Factory function to create the connector for a platform.

    Args:
        platform: smartlead, lemlist, attio
        api_key: Platform credential
        limiter: Limiter returned by RateLimiterRegistry
        **kwargs: batch_size, campaign_filter, transport, request_timeout

    Raises:
        ValueError: If platform not found in registry
    """
    connector_class = CONNECTOR_REGISTRY.get(platform)

    if not connector_class:
        raise ValueError(
            f"Unknown platform: {platform}. "
            f"Available: {list(CONNECTOR_REGISTRY.keys())}"
        )

    return connector_class(api_key, limiter, **kwargs)


__all__ = [
    "CONNECTOR_REGISTRY",
    "get_connector",
    "PlatformConnector",
    "InboundUser",
    "InboundEvent",
    "Page",
    "SyncWindow",
    "classify_http_status",
    "classify_transport_error",
]
