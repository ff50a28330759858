"""
Provider Registry.

Holds the configured providers in reconciliation priority order, routes
facets to the providers that serve them and owns the shared HTTP client.
"""

import logging
from typing import Iterable, Optional

import httpx

from fundsync.core.config import Settings, settings as default_settings
from fundsync.providers.base import Facet, FundamentalsProvider
from fundsync.providers.brapi import BrapiProProvider, BrapiQuoteProvider
from fundsync.providers.fundamentus import FundamentusProvider
from fundsync.providers.ward import WardProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Priority-ordered collection of fundamentals providers.

    Providers missing from ``priority`` rank after every listed provider,
    in registration order. Providers that need credentials and have none
    are kept for reporting but never routed to.
    """

    def __init__(
        self,
        providers: Iterable[FundamentalsProvider],
        priority: Optional[list[str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        providers = list(providers)
        names = [p.name for p in providers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate provider names: {names}")

        order = list(priority if priority is not None else default_settings.provider_priority)
        rank = {name: index for index, name in enumerate(order)}
        self._providers = sorted(
            providers,
            key=lambda p: (rank.get(p.name, len(order)), names.index(p.name)),
        )
        self._client = client

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ProviderRegistry":
        """Build the default provider set sharing one HTTP client."""
        config = config or default_settings
        client = client or httpx.AsyncClient(
            timeout=config.provider_timeout_seconds,
            follow_redirects=True,
        )
        providers = [
            WardProvider(client=client, base_url=config.ward_base_url, token=config.ward_token),
            FundamentusProvider(client=client, base_url=config.fundamentus_base_url),
            BrapiProProvider(client=client, base_url=config.brapi_base_url, token=config.brapi_token),
            BrapiQuoteProvider(client=client, base_url=config.brapi_base_url, token=config.brapi_token),
        ]
        for provider in providers:
            if not provider.is_configured:
                logger.warning(f"Provider {provider.name} has no credentials and will be skipped")
        return cls(providers, priority=config.provider_priority, client=client)

    @property
    def priority(self) -> list[str]:
        """Provider names, highest priority first."""
        return [p.name for p in self._providers]

    @property
    def providers(self) -> list[FundamentalsProvider]:
        return list(self._providers)

    def get(self, name: str) -> Optional[FundamentalsProvider]:
        for provider in self._providers:
            if provider.name == name:
                return provider
        return None

    def providers_for(self, facet: Facet) -> list[FundamentalsProvider]:
        """Configured providers serving ``facet``, highest priority first."""
        return [p for p in self._providers if p.supports(facet) and p.is_configured]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> "ProviderRegistry":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
