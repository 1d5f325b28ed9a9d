"""Errors raised by the Keka sync subsystem."""


class SyncError(Exception):
    """Base class for sync errors."""


class AuthError(SyncError):
    """Credential exchange with the Keka auth endpoint failed.

    Fatal to the current run.
    """


class UnauthorizedError(SyncError):
    """The Keka API rejected the bearer token (HTTP 401)."""


class RateLimitExceeded(SyncError):
    """The call quota for the current window is used up.

    Never escapes RateLimiter.record_call, which resolves it by pausing.
    """


class TransientFetchError(SyncError):
    """A single page request failed; the affected employee is abandoned."""


class ValidationError(SyncError):
    """A remote record is malformed and is skipped."""


class PersistenceError(SyncError):
    """A non-duplicate relational store failure. Fatal to the current run."""


class NetworkFetchError(TransientFetchError):
    """A page request never got an HTTP response (timeout or network error).

    Retried by the sync engines, one counted call per attempt.
    """
