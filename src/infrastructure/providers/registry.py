# src/infrastructure/providers/registry.py
from typing import Dict, Optional

import httpx

from src.config import DEFAULT_SCOPES, Platform, ProviderConfig, Settings
from src.errors import UnsupportedPlatform
from src.infrastructure.provider_client import ProviderClient
from src.infrastructure.providers.base import ProviderAdapter
from src.infrastructure.providers.facebook import FacebookAdapter
from src.infrastructure.providers.instagram import InstagramAdapter
from src.infrastructure.providers.tiktok import TikTokAdapter
from src.infrastructure.providers.twitch import TwitchAdapter
from src.infrastructure.providers.youtube import YouTubeAdapter

ADAPTER_CLASSES = {
    Platform.YOUTUBE: YouTubeAdapter,
    Platform.INSTAGRAM: InstagramAdapter,
    Platform.FACEBOOK: FacebookAdapter,
    Platform.TIKTOK: TikTokAdapter,
    Platform.TWITCH: TwitchAdapter,
}


def build_adapters(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[Platform, ProviderAdapter]:
    """One adapter per platform, configured or not; unconfigured ones fail at use with ConfigurationMissing."""
    adapters: Dict[Platform, ProviderAdapter] = {}
    for platform, cls in ADAPTER_CLASSES.items():
        client = ProviderClient(platform.value, timeout=settings.http_timeout, transport=transport)
        config = settings.provider(platform) or ProviderConfig(platform, None, None, "", DEFAULT_SCOPES[platform])
        adapters[platform] = cls(config, client)
    return adapters


def parse_platform(value: str) -> Platform:
    try:
        return Platform(value.lower())
    except ValueError:
        raise UnsupportedPlatform(f"unsupported platform: {value}") from None
