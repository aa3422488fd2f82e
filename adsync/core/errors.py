"""adsync — Error taxonomy for the sync pipeline.

Recoverable failures (individual creative fetches) are caught where they
happen. Everything else propagates to the sync engine, which records it on
the SyncRun as FAILED.
"""

from typing import Optional


class AdSyncError(Exception):
    """Base class for all adsync errors."""


class AuthError(AdSyncError):
    """Missing or unusable credential. Fatal to a run, never retried."""


class TokenExchangeError(AuthError):
    """The provider's token endpoint rejected an exchange or refresh."""


class ProviderError(AdSyncError):
    """Raised when the Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: Optional[int] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        super().__init__(message)


class ProviderRateLimited(ProviderError):
    """Meta throttled the app, user or ad account."""


class ProviderTokenExpired(ProviderError):
    """The access token is expired or was invalidated (OAuthException 190)."""


class ProviderResponseError(ProviderError):
    """A response body did not match the expected shape."""


class PartialFetchFailure(AdSyncError):
    """A single entity could not be fetched; the run continues without it."""

    def __init__(self, entity_id: str, cause: Exception):
        self.entity_id = entity_id
        self.cause = cause
        super().__init__(f"Failed to fetch {entity_id}: {cause}")


class PersistenceError(AdSyncError):
    """A store write failed."""


class SyncStateError(AdSyncError):
    """Illegal SyncRun status transition."""
