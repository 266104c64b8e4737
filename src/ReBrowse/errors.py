"""Error taxonomy shared by every ReBrowse component.

Each error carries a stable ``code`` for programmatic handling, a
human-readable ``message`` and a ``retryable`` flag. Messages never include
raw exception text or credential material; the underlying exception is
chained with ``raise ... from`` instead.
"""

from __future__ import annotations

from typing import Any


class ReBrowseError(Exception):
    """Base class for all errors surfaced by ReBrowse."""

    code = "UNKNOWN"
    retryable = False
    default_message = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message or self.default_message
        if retryable is not None:
            self.retryable = retryable
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.status_code is not None:
            data["statusCode"] = self.status_code
        return data


# ── Authentication ──────────────────────────────────────────────────────────


class AuthFailedError(ReBrowseError):
    code = "AUTH_FAILED"
    default_message = "Authentication failed. Please check your credentials."


class TokenExpiredError(AuthFailedError):
    code = "TOKEN_EXPIRED"
    default_message = "Your access token has expired. Please sign in again."


class InvalidTokenError(AuthFailedError):
    code = "INVALID_TOKEN"
    default_message = "The access token is invalid. Please check your token and try again."


class PermissionDeniedError(ReBrowseError):
    code = "PERMISSION_DENIED"
    default_message = "You do not have permission to access this resource."


# ── Transport ───────────────────────────────────────────────────────────────


class NetworkError(ReBrowseError):
    code = "NETWORK_ERROR"
    retryable = True
    default_message = (
        "Network error. Please check your internet connection and try again."
    )


class RequestTimeoutError(NetworkError):
    code = "TIMEOUT"
    default_message = "The operation timed out. Please try again."


class ProviderError(ReBrowseError):
    """The provider answered with a server-side failure (5xx)."""

    code = "UNKNOWN"
    retryable = True
    default_message = "The repository provider is temporarily unavailable."


class RateLimitError(ReBrowseError):
    code = "RATE_LIMIT"
    retryable = True

    def __init__(
        self,
        retry_after_seconds: int,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        super().__init__(
            message
            or f"Rate limit exceeded. Retry after {self.retry_after_seconds}s.",
            status_code=status_code,
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retryAfterSeconds"] = self.retry_after_seconds
        return data


# ── Resolution ──────────────────────────────────────────────────────────────


class InvalidUrlError(ReBrowseError):
    code = "INVALID_URL"
    default_message = "The repository URL is not valid."


class RepositoryNotFoundError(ReBrowseError):
    code = "REPOSITORY_NOT_FOUND"
    default_message = (
        "Repository not found. Please check the URL and your access permissions."
    )


class BranchNotFoundError(ReBrowseError):
    code = "BRANCH_NOT_FOUND"
    default_message = "Branch not found."


class FileNotFoundInRepoError(ReBrowseError):
    code = "FILE_NOT_FOUND"
    default_message = "File not found."


class FileTooLargeError(ReBrowseError):
    code = "FILE_TOO_LARGE"

    def __init__(self, path: str, size: int, limit: int) -> None:
        self.path = path
        self.size = size
        self.limit = limit
        super().__init__(
            f"{path} is {size:,} bytes, which exceeds the {limit:,} byte limit."
        )


# ── Local storage ───────────────────────────────────────────────────────────


class CacheError(ReBrowseError):
    code = "CACHE_ERROR"
    default_message = "The local cache could not be written."


class CacheFullError(CacheError):
    code = "CACHE_FULL"
    default_message = "The local cache is full."


class StorageError(ReBrowseError):
    code = "STORAGE_ERROR"
    default_message = "Secure credential storage is unavailable."


class OfflineError(ReBrowseError):
    code = "OFFLINE"
    retryable = True
    default_message = "You are offline and this content has not been cached yet."


class FetchCancelled(ReBrowseError):
    code = "CANCELLED"
    default_message = "The request was cancelled."


class UnknownError(ReBrowseError):
    code = "UNKNOWN"


def to_error(exc: BaseException) -> ReBrowseError:
    """Return *exc* as a :class:`ReBrowseError`, wrapping unknown exceptions."""
    if isinstance(exc, ReBrowseError):
        return exc
    wrapped = UnknownError()
    wrapped.__cause__ = exc
    return wrapped
