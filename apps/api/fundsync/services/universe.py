"""
Ticker universe discovery.

Sources:
- StaticFileUniverse: one ticker per line, "#" comments, CSV first column
- ProviderUniverse: a provider's ticker list (Ward)
- CompositeUniverse: union of several sources; a failing source is logged
  and skipped
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

from fundsync.core.config import Settings, settings as default_settings
from fundsync.core.exceptions import FundSyncException
from fundsync.providers.ward import WardProvider
from fundsync.services.progress_store import normalize_tickers

logger = logging.getLogger(__name__)


class UniverseSource(ABC):
    """Lists the tickers that should be tracked."""

    name: str = "universe"

    @abstractmethod
    async def list_tickers(self) -> list[str]:
        ...


class StaticUniverse(UniverseSource):
    """Fixed in-memory list."""

    name = "static"

    def __init__(self, tickers: Iterable[str]):
        self.tickers = normalize_tickers(tickers)

    async def list_tickers(self) -> list[str]:
        return list(self.tickers)


class StaticFileUniverse(UniverseSource):
    """Ticker file; missing files yield an empty universe."""

    name = "file"

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @staticmethod
    def parse(text: str) -> list[str]:
        tickers = []
        for line in text.splitlines():
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            symbol = line.split(",", 1)[0].strip().strip('"')
            if symbol and symbol.lower() not in ("ticker", "symbol"):
                tickers.append(symbol)
        return normalize_tickers(tickers)

    async def list_tickers(self) -> list[str]:
        if not self.path.exists():
            logger.warning(f"Universe file not found: {self.path}")
            return []
        text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        return self.parse(text)


class ProviderUniverse(UniverseSource):
    """Ticker list published by a provider."""

    def __init__(self, provider: WardProvider):
        self.provider = provider
        self.name = provider.name

    async def list_tickers(self) -> list[str]:
        return normalize_tickers(await self.provider.list_tickers())


class CompositeUniverse(UniverseSource):
    """Union of several sources, first-seen order."""

    name = "composite"

    def __init__(self, sources: Iterable[UniverseSource]):
        self.sources = list(sources)

    async def list_tickers(self) -> list[str]:
        tickers: list[str] = []
        for source in self.sources:
            try:
                found = await source.list_tickers()
            except FundSyncException as e:
                logger.error(f"Universe source {source.name} failed: {e.message}")
                continue
            except OSError as e:
                logger.error(f"Universe source {source.name} failed: {e}")
                continue
            logger.info(f"Universe source {source.name}: {len(found)} tickers")
            tickers.extend(found)
        return normalize_tickers(tickers)


def build_universe(
    config: Optional[Settings] = None,
    ward: Optional[WardProvider] = None,
) -> CompositeUniverse:
    """Static file (when configured) plus the Ward ticker list."""
    config = config or default_settings
    sources: list[UniverseSource] = []
    if config.universe_file:
        sources.append(StaticFileUniverse(config.universe_file))
    if ward is not None:
        sources.append(ProviderUniverse(ward))
    return CompositeUniverse(sources)
