"""
Error taxonomy for the event storage and report-query core.

ValidationError and InvalidFieldError are caller contract violations and are
always surfaced verbatim. TenantMismatchError is turned into an empty result
at user-facing boundaries. BackendUnavailableError is reported, never retried
here. CancellationError means a caller deadline expired before a complete
result was available.
"""
import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class SiteAnalyticsError(Exception):
    """Base class for all errors raised by site_analytics."""
    pass


class ValidationError(SiteAnalyticsError, ValueError):
    """Raised when an inbound event or document is malformed or incomplete."""
    pass


class InvalidFieldError(SiteAnalyticsError, ValueError):
    """Raised when a widget references a field that cannot be queried.

    Attributes:
        field: The offending field name, exactly as supplied
        reason: Short description of which rule rejected it
    """

    def __init__(self, field: object, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{reason}: {field!r}")


class TenantMismatchError(SiteAnalyticsError):
    """Raised when a site does not belong to the caller's team."""
    pass


class BackendUnavailableError(SiteAnalyticsError):
    """Raised when an adapter cannot reach its store."""
    pass


class CancellationError(SiteAnalyticsError):
    """Raised when an operation is aborted by the caller's deadline."""
    pass


async def with_deadline(awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await with an optional deadline in seconds.

    On expiry the inner operation is cancelled and CancellationError is
    raised, so callers never see a partially-read result.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise CancellationError(f"Operation exceeded deadline of {timeout}s") from None
