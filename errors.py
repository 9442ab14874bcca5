from typing import Optional


class CollectionError(Exception):
    """Base class for collection browsing failures"""


class RateLimitedError(CollectionError):
    """Upstream is throttling us, or we are cooling down before it does"""

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(
            message
            or "Discogs is currently throttling requests. Please try again in a few seconds."
        )
        self.retry_after = retry_after


class AuthError(CollectionError):
    """Credential rejected (401/403) or not configured"""


class TransientNetworkError(CollectionError):
    """Network failure or 5xx that survived every retry"""


class UpstreamResponseError(CollectionError):
    """Non-retryable upstream status other than auth and throttling"""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"Discogs responded with HTTP {status_code}")
        self.status_code = status_code


class QueryValidationError(CollectionError):
    """Request parameters rejected before any upstream call"""


class RequestCancelledError(CollectionError):
    """A client request was superseded by a newer one for the same slot"""

    def __init__(self, generation: int):
        super().__init__(f"request generation {generation} was superseded")
        self.generation = generation
