from __future__ import annotations


class SyncError(RuntimeError):
    """Base error for everything the sync engine reports.

    Attributes
    - user_message: short text suitable for a status line.
    - retryable: True when the next scheduled attempt may succeed without
      any user action (transport hiccups, rate limits).
    """

    user_message = "Sync failed"
    retryable = False

    def __init__(self, message: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class NetworkUnreachable(SyncError):
    user_message = "Network unavailable. Will retry on the next sync."
    retryable = True


class RateLimited(SyncError):
    user_message = "Remote rate limit reached. Will retry later."
    retryable = True

    def __init__(self, message: str | None = None, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationRejected(SyncError):
    user_message = "Access token was rejected. Update your sync credentials."


class ContainerNotFound(SyncError):
    user_message = "Remote backup location not found. Check your sync settings."


class DecryptionFailed(SyncError):
    user_message = "Decryption failed. The data may be encrypted with a different token."


class EncryptionFailed(SyncError):
    user_message = "Encryption failed. Check your access token."


class VersionUnsupported(SyncError):
    user_message = "Remote data uses a newer format. Update the app to sync."


class MalformedDocument(SyncError):
    user_message = "Remote data is not a valid backup."


class LocalWriteFailed(SyncError):
    user_message = "Could not save downloaded data. Local data was left unchanged."


__all__ = [
    "SyncError",
    "NetworkUnreachable",
    "RateLimited",
    "AuthenticationRejected",
    "ContainerNotFound",
    "DecryptionFailed",
    "EncryptionFailed",
    "VersionUnsupported",
    "MalformedDocument",
    "LocalWriteFailed",
]
