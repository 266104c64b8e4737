"""Abstract base class for repository providers."""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, Mapping

import requests

from ReBrowse.errors import (
    AuthFailedError,
    FileTooLargeError,
    NetworkError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    ReBrowseError,
    RepositoryNotFoundError,
    RequestTimeoutError,
    UnknownError,
)
from ReBrowse.models import (
    Branch,
    FileBlob,
    ProviderType,
    RepoInfo,
    RepositoryMetadata,
    TreeItem,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], "str | None"]
ResponseHook = Callable[[Mapping[str, str]], None]

DEFAULT_RETRY_AFTER_SECONDS = 60
CHUNK_SIZE = 64 * 1024


def retry_after_seconds(headers: Mapping[str, str], now: float | None = None) -> int:
    """Seconds to wait according to ``Retry-After`` or ``X-RateLimit-Reset``."""
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return max(0, math.ceil(float(retry_after)))
        except ValueError:
            pass
    reset = headers.get("X-RateLimit-Reset")
    if reset:
        try:
            now = time.time() if now is None else now
            return max(0, math.ceil(float(reset) - now))
        except ValueError:
            pass
    return DEFAULT_RETRY_AFTER_SECONDS


def raise_for_status(
    resp: requests.Response,
    not_found: type[ReBrowseError] = RepositoryNotFoundError,
    not_found_message: str | None = None,
) -> None:
    """Map an HTTP error status to the ReBrowse error taxonomy."""
    status = resp.status_code
    if status < 400:
        return
    if status == 401:
        raise AuthFailedError(status_code=status)
    if status == 403:
        if resp.headers.get("X-RateLimit-Remaining") == "0":
            raise RateLimitError(retry_after_seconds(resp.headers), status_code=status)
        raise PermissionDeniedError(status_code=status)
    if status == 404:
        raise not_found(not_found_message, status_code=status)
    if status == 429:
        raise RateLimitError(retry_after_seconds(resp.headers), status_code=status)
    if status >= 500:
        raise ProviderError(status_code=status)
    raise UnknownError(status_code=status)


class RepoProvider(ABC):
    """Base class for Git hosting service providers.

    Credentials are never held by the provider: ``token_provider`` is asked
    for the current secret on every request.

    Args:
        token_provider: Returns the secret to send, or None for anonymous calls.
        timeout: Per-request timeout in seconds.
        response_hook: Called with the headers of every response
            (the service feeds them to the rate limiter).
        session: Optional preconfigured ``requests.Session``.
    """

    provider_type: ProviderType

    def __init__(
        self,
        token_provider: TokenProvider | None = None,
        timeout: float = 30,
        response_hook: ResponseHook | None = None,
        session: requests.Session | None = None,
    ):
        self.token_provider = token_provider
        self.timeout = timeout
        self.response_hook = response_hook
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = "ReBrowse/1.0"
        self.last_headers: dict[str, str] = {}

    @abstractmethod
    def _auth_headers(self, token: str) -> dict[str, str]:
        """Return the headers that authenticate *token*."""

    def _request(
        self,
        url: str,
        params: dict | None = None,
        headers: dict | None = None,
        not_found: type[ReBrowseError] = RepositoryNotFoundError,
        not_found_message: str | None = None,
        stream: bool = False,
    ) -> requests.Response:
        request_headers = dict(headers or {})
        token = self.token_provider() if self.token_provider else None
        if token:
            request_headers.update(self._auth_headers(token))

        try:
            resp = self.session.get(
                url,
                params=params,
                headers=request_headers,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError() from exc
        except requests.RequestException as exc:
            raise NetworkError() from exc

        self.last_headers = dict(resp.headers)
        if self.response_hook is not None:
            self.response_hook(resp.headers)
        try:
            raise_for_status(resp, not_found, not_found_message)
        except ReBrowseError:
            resp.close()
            raise
        return resp

    def _read_limited(self, resp: requests.Response, path: str, max_size: int | None) -> bytes:
        """Read a streamed body, aborting once it passes *max_size* bytes."""
        try:
            declared = resp.headers.get("Content-Length")
            if max_size is not None and declared and declared.isdigit() and int(declared) > max_size:
                raise FileTooLargeError(path, int(declared), max_size)

            chunks: list[bytes] = []
            total = 0
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    total += len(chunk)
                    if max_size is not None and total > max_size:
                        raise FileTooLargeError(path, total, max_size)
                    chunks.append(chunk)
            except requests.Timeout as exc:
                raise RequestTimeoutError() from exc
            except requests.RequestException as exc:
                raise NetworkError() from exc
            return b"".join(chunks)
        finally:
            resp.close()

    def _get_json(self, url: str, params: dict | None = None, **kwargs) -> dict:
        resp = self._request(url, params=params, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError("The provider returned an unreadable response.") from exc

    @abstractmethod
    def get_repository(self, repo: RepoInfo) -> RepositoryMetadata:
        """Return default branch and visibility of the repository."""

    @abstractmethod
    def list_branches(self, repo: RepoInfo) -> list[Branch]:
        """List all branches with their head commit SHA."""

    @abstractmethod
    def get_tree(self, repo: RepoInfo, branch: str) -> list[TreeItem]:
        """Return the full recursive listing of *branch*."""

    @abstractmethod
    def get_blob(
        self, repo: RepoInfo, branch: str, path: str, max_size: int | None = None
    ) -> FileBlob:
        """Fetch one file's bytes.

        Raises:
            FileTooLargeError: the file exceeds *max_size*, checked before or
                while downloading so oversize bodies are never buffered.
            FileNotFoundInRepoError: no file at *path* on *branch*.
        """

    @abstractmethod
    def file_exists(self, repo: RepoInfo, branch: str, path: str) -> bool:
        """Check for a file without downloading its content."""
