from __future__ import annotations


class SyncError(Exception):
    """Base class for every failure surfaced by the sync engine."""

    retryable = False

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def user_message(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} ({type(self.cause).__name__}: {self.cause})"


class NetworkError(SyncError):
    """Timeouts, refused connections and other transport failures."""

    retryable = True


class RemoteAPIError(SyncError):
    kind = "other"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.retry_after = retry_after

    def user_message(self) -> str:
        text = super().user_message()
        if self.status_code is None:
            return text
        return f"HTTP {self.status_code}: {text}"


class AuthError(RemoteAPIError):
    kind = "unauthorized"


class NotFoundError(RemoteAPIError):
    kind = "not_found"


class SyncTokenExpiredError(RemoteAPIError):
    kind = "token_expired"


class RateLimitedError(RemoteAPIError):
    kind = "rate_limited"
    retryable = True


class ServerError(RemoteAPIError):
    kind = "server_error"
    retryable = True


class InvalidResponseError(RemoteAPIError):
    kind = "invalid_response"


class LocalStoreError(SyncError):
    """Persistence failure; surfaced immediately and never retried."""


class ConflictResolutionError(SyncError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class SyncCancelled(Exception):
    """Cooperative cancellation signal; reported as an outcome, never as an error."""

    def __init__(self, message: str = "Cancelled by request.") -> None:
        super().__init__(message)


def http_status_of(exc: BaseException) -> int | None:
    if isinstance(exc, RemoteAPIError):
        return exc.status_code
    return None
