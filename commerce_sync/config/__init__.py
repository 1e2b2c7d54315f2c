"""Configuration package for commerce sync."""
from .settings import MarketplaceChannelConfig, Settings, WebhookEndpointConfig, get_settings

__all__ = ["MarketplaceChannelConfig", "Settings", "WebhookEndpointConfig", "get_settings"]
