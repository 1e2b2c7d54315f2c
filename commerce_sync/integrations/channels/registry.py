"""Build channel adapters from configuration."""
from typing import Dict

import structlog

from commerce_sync.config import MarketplaceChannelConfig, Settings
from commerce_sync.integrations.channels.base import ChannelAdapter
from commerce_sync.integrations.channels.ebay import EbayAdapter
from commerce_sync.integrations.channels.fake import FakeChannelAdapter

logger = structlog.get_logger(__name__)


def build_adapter(channel: str, config: MarketplaceChannelConfig) -> ChannelAdapter:
    if config.kind == "ebay":
        return EbayAdapter(channel, config)
    if config.kind == "fake":
        return FakeChannelAdapter(channel, page_size=config.page_size)
    raise ValueError(f"Unsupported channel kind: {config.kind}")


def build_adapters(settings: Settings) -> Dict[str, ChannelAdapter]:
    adapters = {
        channel: build_adapter(channel, config)
        for channel, config in settings.marketplace_channels.items()
    }
    logger.info("channel_adapters_built", channels=sorted(adapters))
    return adapters
