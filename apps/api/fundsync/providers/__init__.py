"""
Provider framework - fetcher-style adapters for fundamentals sources.
"""

from fundsync.providers.base import Facet, FundamentalsProvider, PartialRecord, ProviderRequest
from fundsync.providers.brapi import BrapiProProvider, BrapiQuoteProvider
from fundsync.providers.fundamentus import FundamentusProvider
from fundsync.providers.registry import ProviderRegistry
from fundsync.providers.ward import WardProvider

__all__ = [
    "Facet",
    "FundamentalsProvider",
    "PartialRecord",
    "ProviderRequest",
    "ProviderRegistry",
    "WardProvider",
    "FundamentusProvider",
    "BrapiProProvider",
    "BrapiQuoteProvider",
]
