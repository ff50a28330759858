"""
Base Fetcher Pattern for fundamentals providers.

Every provider standardizes retrieval in three steps:
1. transform_query: Convert (ticker, facet) to a provider-specific request
2. extract_data: Fetch the raw payload from the upstream source
3. transform_data: Convert the raw payload to ``PartialRecord`` objects

Unlike a display-oriented fetcher, ``fetch`` does not degrade gracefully:
provider errors propagate so the ingestion task can decide whether they
are retryable and whether the provider is required.
"""

from abc import ABC, abstractmethod
from datetime import date
from enum import Enum
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from fundsync.core.config import settings
from fundsync.core.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ReconciliationError,
)

logger = logging.getLogger(__name__)


class Facet(str, Enum):
    """Category of data fetched for an entity."""
    BASIC_PROFILE = "basic_profile"
    HISTORICAL_STATEMENTS = "historical_statements"
    TTM_UPDATE = "ttm_update"
    SECONDARY_DATA = "secondary_data"


class PartialRecord(BaseModel):
    """
    One provider's sparse view of a (ticker, year).

    ``fields`` maps financial field names to raw values; validity is
    decided during reconciliation, not here.
    """
    provider: str
    year: int
    fields: dict[str, Any] = Field(default_factory=dict)


class ProviderRequest(BaseModel):
    """Provider-specific HTTP request produced by ``transform_query``."""
    method: str = "GET"
    url: str
    params: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    cookies: dict[str, str] = Field(default_factory=dict)


class FundamentalsProvider(ABC):
    """
    Abstract base class for fundamentals data providers.

    Class Attributes:
        name: Provider identifier used for priority and provenance
        facets: Facets this provider can serve
        requires_credentials: Provider is skipped when no token is configured
        required: Errors from this provider fail the whole entity instead of
            being logged and skipped
    """

    name: str = "base"
    facets: frozenset[Facet] = frozenset()
    requires_credentials: bool = False
    required: bool = False

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return not self.requires_credentials or bool(self.token)

    def supports(self, facet: Facet) -> bool:
        return facet in self.facets

    @abstractmethod
    def transform_query(self, ticker: str, facet: Facet) -> ProviderRequest:
        """Build the upstream request for one ticker and facet."""

    @abstractmethod
    def transform_data(self, ticker: str, facet: Facet, data: Any) -> list[PartialRecord]:
        """
        Map the raw payload to partial records, one per fiscal year.

        Raises:
            ReconciliationError: payload has an unexpected shape
        """

    async def extract_data(self, ticker: str, request: ProviderRequest) -> Any:
        """
        Execute the request and decode the JSON body.

        Raises:
            ProviderError subclasses according to the HTTP outcome
        """
        headers = {"User-Agent": settings.provider_user_agent, "Accept": "application/json"}
        headers.update(request.headers)
        if request.cookies:
            headers["Cookie"] = "; ".join(f"{key}={value}" for key, value in request.cookies.items())

        client = self._client or httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        try:
            response = await client.request(
                request.method,
                request.url,
                params=request.params or None,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            raise ProviderTimeoutError(provider=self.name, timeout=self.timeout)
        except httpx.TransportError as e:
            raise ProviderUnavailableError(provider=self.name, reason=str(e) or type(e).__name__)
        finally:
            if self._client is None:
                await client.aclose()

        self.raise_for_status(ticker, response)

        try:
            return response.json()
        except ValueError:
            raise ReconciliationError(
                f"{self.name} returned a non-JSON body for {ticker}", provider=self.name
            )

    def raise_for_status(self, ticker: str, response: httpx.Response) -> None:
        """Map HTTP status codes to the provider error taxonomy."""
        status = response.status_code
        if status < 400:
            return
        if status == 404:
            raise ProviderNotFoundError(provider=self.name, ticker=ticker)
        if status in (401, 403):
            raise ProviderAuthError(provider=self.name)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderRateLimitError(
                provider=self.name,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else 60,
            )
        if status >= 500:
            raise ProviderUnavailableError(provider=self.name, status_code=status)
        raise ProviderError(
            message=f"{self.name} rejected request for {ticker} (HTTP {status})",
            provider=self.name,
            details={"status_code": status, "ticker": ticker},
        )

    async def fetch(self, ticker: str, facet: Facet) -> list[PartialRecord]:
        """
        Main entry point: orchestrates the full fetch pipeline.
        """
        request = self.transform_query(ticker, facet)
        raw_data = await self.extract_data(ticker, request)
        if not raw_data:
            return []
        records = self.transform_data(ticker, facet, raw_data)
        logger.debug(f"{self.name}: {len(records)} record(s) for {ticker} ({facet.value})")
        return records

    @staticmethod
    def current_year() -> int:
        return date.today().year

    def get_provider_info(self) -> dict[str, Any]:
        """Return metadata about this provider."""
        return {
            "name": self.name,
            "facets": sorted(f.value for f in self.facets),
            "requires_credentials": self.requires_credentials,
            "configured": self.is_configured,
            "required": self.required,
        }
