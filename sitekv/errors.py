"""Exception hierarchy for deployments to Workers KV."""

from typing import Optional


class SiteKVError(Exception):
    """Base class for every error raised by sitekv."""
    pass


class ConfigurationError(SiteKVError):
    """Credentials or identifiers are missing or invalid."""
    pass


class InventoryError(SiteKVError):
    """The processed-site directory cannot be read."""
    pass


class CatalogFetchError(SiteKVError):
    """Listing the remote namespace failed.

    ``auth_failure`` is set when the store rejected the credentials, in which
    case the caller should stop rather than fall back to a full upload.
    """

    def __init__(self, message: str, auth_failure: bool = False):
        super().__init__(message)
        self.auth_failure = auth_failure


class AuthError(SiteKVError):
    """The store rejected the API token. Fatal for the whole run."""
    pass


class KVValidationError(SiteKVError):
    """The store refused a request it will never accept (payload too large, bad key)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableError(SiteKVError):
    """A failure that may succeed if the same request is sent again."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(RetryableError):
    """The store asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 status_code: Optional[int] = 429):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class TransientHTTPError(RetryableError):
    """Timeouts, dropped connections and 5xx responses."""
    pass


class RateLimitExhausted(SiteKVError):
    """Still rate limited after the last allowed attempt."""
    pass


class TransientUploadError(SiteKVError):
    """Still failing transiently after the last allowed attempt."""
    pass


class BatchInterrupted(SiteKVError):
    """A batch stopped partway through.

    ``outcomes`` holds the files settled before ``error`` was raised; files
    of the batch missing from it have no outcome yet.
    """

    def __init__(self, error: Exception, outcomes: Optional[list] = None):
        super().__init__(str(error))
        self.error = error
        self.outcomes = list(outcomes or [])
