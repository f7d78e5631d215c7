"""Error taxonomy for the mylife sync pipeline.

Every error carries the pipeline stage it was raised in and whether the
failure is transient. Per-record and per-event errors (ParseError,
HandlerError) are contained by their stage; all others abort the current
sync cycle and send the orchestrator into backoff.
"""


class MyLifeSyncError(Exception):
    """Base exception for mylife sync errors."""

    stage = "sync"
    retryable = True

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ConfigurationError(MyLifeSyncError):
    """Connector settings are missing or invalid."""

    stage = "configuration"
    retryable = False


class AuthError(MyLifeSyncError):
    """Login against the mylife cloud failed.

    Non-retryable when the credentials were rejected, retryable when the
    login endpoint could not be reached.
    """

    stage = "authenticating"


class TransportError(MyLifeSyncError):
    """The archive call failed at the network or protocol level."""

    stage = "fetching"
    retryable = True


class DecryptionError(MyLifeSyncError):
    """The archive blob could not be decrypted or decoded."""

    stage = "decrypting"
    retryable = False


class ParseError(MyLifeSyncError):
    """A single archive record could not be parsed."""

    stage = "parsing"
    retryable = False


class HandlerError(MyLifeSyncError):
    """A device event carried an embedded payload its handler cannot map."""

    stage = "dispatching"
    retryable = True


class SubmissionError(MyLifeSyncError):
    """The downstream store did not accept the treatment batch."""

    stage = "submitting"
    retryable = True


class SyncCancelledError(MyLifeSyncError):
    """The sync cycle was stopped before its next network call."""

    stage = "cancelled"
    retryable = False


class SessionRejectedError(AuthError):
    """The server rejected a session token that was still cached.

    The caller invalidates the token; the next cycle logs in again.
    """

    retryable = True
