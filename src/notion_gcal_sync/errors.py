"""Error taxonomy shared by the sync engine and its collaborators."""

from typing import Optional


class SyncError(Exception):
    """Base exception for synchronization errors."""

    retryable = False
    status_code = 500


class ValidationError(SyncError):
    """Malformed payload, missing required mapped field or out-of-range input."""

    status_code = 400


class AuthError(SyncError):
    """Webhook signature or channel mismatch."""

    status_code = 401


class ConflictError(SyncError):
    """Cross-reference link would violate the one-to-one invariant."""

    status_code = 409


class ConcurrencyError(SyncError):
    """A guarded state transition lost its compare-and-set."""

    status_code = 409


class TransientRemoteError(SyncError):
    """Remote failure worth retrying (timeouts, network, 5xx)."""

    retryable = True
    status_code = 503


class RateLimitError(TransientRemoteError):
    """Remote service asked us to slow down."""

    status_code = 429

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RemoteServiceError(SyncError):
    """Non-retryable remote failure."""

    status_code = 502


class NotFoundError(RemoteServiceError):
    """Remote item does not exist (or was archived)."""

    status_code = 404


class RemotePermissionError(RemoteServiceError):
    """Remote service rejected our credentials or scope."""

    status_code = 403


_RETRYABLE_MARKERS = (
    'rate limit',
    'rate_limited',
    'timeout',
    'timed out',
    'network',
    'econnreset',
    'connection reset',
    '502',
    '503',
    '504',
)


def is_retryable(error: BaseException) -> bool:
    """Return True when an error should be retried.

    Errors from the taxonomy carry their own flag; anything else is
    classified by its message.
    """
    if isinstance(error, SyncError):
        return error.retryable
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)
