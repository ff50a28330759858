"""
Custom exceptions for FundSync.

Provides a hierarchy of exceptions for error handling across
providers, the ingestion engine, persistence and API endpoints.

The ingestion engine classifies failures by type:
- transient provider errors are retried
- permanent provider errors fail the entity immediately
- reconciliation errors are logged and the record is ignored
- persistence errors fail the entity, which stays eligible
"""

from typing import Any, Optional


class FundSyncException(Exception):
    """Base exception for all FundSync errors."""

    def __init__(
        self,
        message: str,
        code: str = "FUNDSYNC_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# Provider Errors
class ProviderError(FundSyncException):
    """Base exception for data provider failures."""

    # Transient errors are worth another attempt.
    transient: bool = False

    def __init__(
        self,
        message: str,
        provider: str,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code="PROVIDER_ERROR",
            details={"provider": provider, **(details or {})},
        )
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """Provider request timed out."""

    transient = True

    def __init__(self, provider: str, timeout: float):
        super().__init__(
            message=f"Provider {provider} timed out after {timeout}s",
            provider=provider,
            details={"timeout": timeout},
        )
        self.code = "PROVIDER_TIMEOUT"


class ProviderRateLimitError(ProviderError):
    """Provider rate limit exceeded."""

    transient = True

    def __init__(self, provider: str, retry_after: Optional[int] = 60):
        super().__init__(
            message=f"Rate limit exceeded for provider {provider}",
            provider=provider,
            details={"retry_after": retry_after},
        )
        self.code = "PROVIDER_RATE_LIMIT"
        self.retry_after = retry_after


class ProviderUnavailableError(ProviderError):
    """Provider returned a 5xx response or the connection failed."""

    transient = True

    def __init__(self, provider: str, status_code: Optional[int] = None, reason: str = ""):
        super().__init__(
            message=f"Provider {provider} unavailable"
            + (f" (HTTP {status_code})" if status_code else "")
            + (f": {reason}" if reason else ""),
            provider=provider,
            details={"status_code": status_code},
        )
        self.code = "PROVIDER_UNAVAILABLE"
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Provider authentication failed."""

    def __init__(self, provider: str):
        super().__init__(
            message=f"Authentication failed for provider {provider}",
            provider=provider,
        )
        self.code = "PROVIDER_AUTH_ERROR"


class ProviderNotFoundError(ProviderError):
    """Provider has no data for the requested ticker."""

    def __init__(self, provider: str, ticker: str):
        super().__init__(
            message=f"Provider {provider} has no data for {ticker}",
            provider=provider,
            details={"ticker": ticker},
        )
        self.code = "PROVIDER_NOT_FOUND"
        self.ticker = ticker


# Data Errors
class ReconciliationError(FundSyncException):
    """A provider record could not be merged (unexpected shape)."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(
            message=message,
            code="RECONCILIATION_ERROR",
            details={"provider": provider} if provider else {},
        )


# Database Errors
class DatabaseError(FundSyncException):
    """Database operation failed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            details={"operation": operation} if operation else {},
        )


# Execution Errors
class TaskTimeoutError(FundSyncException):
    """A task did not finish before its deadline. Outcome unknown, safe to retry."""

    def __init__(self, deadline_ms: float, label: Optional[str] = None):
        super().__init__(
            message=f"Task {label + ' ' if label else ''}exceeded deadline of {deadline_ms:.0f}ms",
            code="TASK_TIMEOUT",
            details={"deadline_ms": deadline_ms, "label": label},
        )
        self.deadline_ms = deadline_ms


class RetryExhaustedError(FundSyncException):
    """All attempts of a retried operation failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(
            message=f"Failed after {attempts} attempt(s): {last_error}",
            code="RETRY_EXHAUSTED",
            details={"attempts": attempts, "last_error": type(last_error).__name__},
        )
        self.attempts = attempts
        self.last_error = last_error


class CycleAbortedError(FundSyncException):
    """The ingestion cycle could not run (e.g. phase state unreadable)."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(
            message=message,
            code="CYCLE_ABORTED",
            details={"stage": stage} if stage else {},
        )
