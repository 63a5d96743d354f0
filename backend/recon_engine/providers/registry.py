"""
Provider registry — the closed set of source providers, keyed by ProviderType.
"""

from typing import Optional

import httpx

from recon_engine.config import Settings
from recon_engine.providers.base import ProviderType, SourceProvider
from recon_engine.providers.meta_ads import MetaAdsProvider
from recon_engine.providers.pancake_pos import PancakePosProvider

PROVIDERS: dict[ProviderType, type[SourceProvider]] = {
    ProviderType.META_ADS: MetaAdsProvider,
    ProviderType.PANCAKE_POS: PancakePosProvider,
}

# Execution error "source" tag -> provider type
SOURCE_PROVIDERS: dict[str, ProviderType] = {
    "meta": ProviderType.META_ADS,
    "pos": ProviderType.PANCAKE_POS,
}


def get_provider(
    provider_type: ProviderType | str,
    credentials: dict,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep=None,
) -> SourceProvider:
    """Instantiate the provider for a type. Raises ValueError for unknown types."""
    try:
        key = ProviderType(provider_type)
    except ValueError:
        raise ValueError(f"Unknown provider type: {provider_type!r}")
    provider_cls = PROVIDERS[key]
    return provider_cls(credentials, settings=settings, transport=transport, sleep=sleep)
