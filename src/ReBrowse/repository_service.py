"""Repository orchestration: connect, browse, fetch and cache.

:class:`RepositoryService` is the single entry point for the UI layer. Every
read goes cache first; the network is used on a miss, a forced refresh or
when a cached entry has been invalidated. While a provider is unreachable,
cached content is served with ``stale=True`` and never-fetched content fails
with :class:`~ReBrowse.errors.OfflineError`.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, TypeVar

from ReBrowse.cache_manager import CacheKey, CacheManager
from ReBrowse.config import Settings, get_settings
from ReBrowse.connectivity import ConnectivityMonitor
from ReBrowse.credential_store import CredentialStore, KeyringCipher
from ReBrowse.errors import (
    AuthFailedError,
    BranchNotFoundError,
    CacheError,
    FetchCancelled,
    FileNotFoundInRepoError,
    FileTooLargeError,
    InvalidTokenError,
    NetworkError,
    OfflineError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    ReBrowseError,
    RepositoryNotFoundError,
)
from ReBrowse.file_filter import decode_content, is_markdown, validate_repo_path
from ReBrowse.log import configure_logging
from ReBrowse.models import (
    AuthMethod,
    Branch,
    CacheEntry,
    CacheEntryInfo,
    CacheStats,
    ClearResult,
    ConnectResult,
    ConnectivityChange,
    ConnectivityReport,
    CredentialHandle,
    FileBlob,
    FileResult,
    OfflineCapabilities,
    PrewarmResult,
    ProviderType,
    ReachabilityState,
    RepoInfo,
    Repository,
    SwitchBranchResult,
    TreeNode,
    TreeResult,
)
from ReBrowse.oauth import (
    DEFAULT_SCOPES,
    DeviceFlow,
    DeviceFlowSession,
    DeviceFlowState,
    DeviceFlowStatus,
)
from ReBrowse.providers.azure_devops import AzureDevOpsProvider
from ReBrowse.providers.base import RepoProvider, ResponseHook, TokenProvider
from ReBrowse.providers.github import GitHubProvider
from ReBrowse.rate_limiter import RateLimiter
from ReBrowse.repository_store import RepositoryStore
from ReBrowse.single_flight import CancelToken, SingleFlight
from ReBrowse.tree_builder import build_tree, count_files, filter_tree, iter_files
from ReBrowse.url_parser import parse_repo_url, repository_id_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProviderFactory = Callable[[ProviderType, TokenProvider, ResponseHook, float], RepoProvider]

PROVIDERS: dict[ProviderType, type[RepoProvider]] = {
    ProviderType.GITHUB: GitHubProvider,
    ProviderType.AZURE: AzureDevOpsProvider,
}

# Errors a cached copy must never paper over
_ALWAYS_PROPAGATE = (
    AuthFailedError,
    PermissionDeniedError,
    RepositoryNotFoundError,
    BranchNotFoundError,
    FileNotFoundInRepoError,
    FileTooLargeError,
    FetchCancelled,
)


def default_provider_factory(
    provider_type: ProviderType,
    token_provider: TokenProvider,
    response_hook: ResponseHook,
    timeout: float,
) -> RepoProvider:
    return PROVIDERS[provider_type](
        token_provider=token_provider, timeout=timeout, response_hook=response_hook
    )


class RepositoryService:
    """Coordinates providers, cache, credentials and connectivity.

    Collaborators are passed in explicitly; use :meth:`from_settings` to
    build the production wiring.
    """

    def __init__(
        self,
        settings: Settings,
        cache: CacheManager,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        connectivity: ConnectivityMonitor,
        repositories: RepositoryStore,
        provider_factory: ProviderFactory = default_provider_factory,
        device_flow: DeviceFlow | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.cache = cache
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.connectivity = connectivity
        self.repositories = repositories
        self.provider_factory = provider_factory
        self.device_flow = device_flow
        self.clock = clock

        self._flights: SingleFlight = SingleFlight()
        self._lock = threading.Lock()
        self._providers: dict[tuple[str, AuthMethod], RepoProvider] = {}
        self._device_sessions: dict[str, tuple[DeviceFlowSession, str, RepoInfo]] = {}
        self._tree_tokens: dict[tuple[str, str], set[CancelToken]] = {}
        self._unsubscribe = connectivity.subscribe(self._on_connectivity_change)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RepositoryService":
        settings = settings or get_settings()
        configure_logging(settings.log_level)
        return cls(
            settings=settings,
            cache=CacheManager(
                settings.resolved_cache_dir,
                max_repository_bytes=settings.max_repository_cache_bytes,
                max_total_bytes=settings.max_total_cache_bytes,
            ),
            credentials=CredentialStore(
                settings.resolved_credentials_path,
                KeyringCipher(settings.keyring_service),
            ),
            rate_limiter=RateLimiter(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
                jitter=settings.retry_jitter,
            ),
            connectivity=ConnectivityMonitor(
                ttl_seconds=settings.connectivity_ttl_seconds,
                timeout_seconds=settings.connectivity_timeout_seconds,
            ),
            repositories=RepositoryStore(settings.resolved_repositories_path),
            device_flow=DeviceFlow(
                settings.github_client_id, timeout=settings.request_timeout_seconds
            ),
        )

    def close(self) -> None:
        self._unsubscribe()
        self.cache.flush()

    # ── plumbing ────────────────────────────────────────────────────────────

    def _require(self, repository_id: str) -> Repository:
        repo = self.repositories.get(repository_id)
        if repo is None:
            raise RepositoryNotFoundError("This repository is not connected.")
        return repo

    def _provider(
        self, repository_id: str, provider_type: ProviderType, auth_method: AuthMethod
    ) -> RepoProvider:
        key = (repository_id, auth_method)
        with self._lock:
            provider = self._providers.get(key)
            if provider is None:
                provider = self.provider_factory(
                    provider_type,
                    self._token_provider(repository_id, auth_method),
                    self._response_hook(provider_type),
                    self.settings.request_timeout_seconds,
                )
                self._providers[key] = provider
            return provider

    def _provider_for(self, repo: Repository) -> RepoProvider:
        return self._provider(repo.id, repo.provider, repo.auth_method)

    def _token_provider(self, repository_id: str, auth_method: AuthMethod) -> TokenProvider:
        refresher = self.device_flow.refresh_access_token if self.device_flow else None

        def token() -> str | None:
            return self.credentials.acquire(repository_id, auth_method, refresher)

        return token

    def _response_hook(self, provider_type: ProviderType) -> ResponseHook:
        def hook(headers) -> None:
            self.rate_limiter.update_from_headers(provider_type.value, headers)

        return hook

    def _drop_providers(self, repository_id: str) -> None:
        with self._lock:
            for key in [k for k in self._providers if k[0] == repository_id]:
                del self._providers[key]

    def _call(
        self,
        repository_id: str,
        provider_type: ProviderType,
        auth_method: AuthMethod,
        fn: Callable[[], T],
    ) -> T:
        """Run a provider call through the rate limiter and record its outcome."""
        try:
            result = self.rate_limiter.call(provider_type.value, fn)
        except NetworkError as exc:
            self.connectivity.mark_unreachable(provider_type, exc.code)
            raise
        except AuthFailedError as exc:
            if exc.status_code == 401 and auth_method != AuthMethod.NONE:
                deleted = self.credentials.record_auth_failure(
                    repository_id, auth_method, self.settings.auth_failure_threshold
                )
                if deleted:
                    self._drop_providers(repository_id)
            raise
        self.connectivity.mark_reachable(provider_type)
        if auth_method != AuthMethod.NONE:
            self.credentials.record_auth_success(repository_id, auth_method)
        return result

    # ── connection ──────────────────────────────────────────────────────────

    def connect(
        self,
        url: str,
        auth_method: AuthMethod | str = AuthMethod.NONE,
        initial_branch: str | None = None,
        token: str | None = None,
    ) -> ConnectResult:
        """Connect to a repository and remember it.

        Connecting the same repository again (under any URL spelling that
        normalizes the same way) returns the same repository id.

        Raises:
            InvalidUrlError: the URL is malformed or the host unsupported.
            AuthFailedError: no usable credential for ``pat``/``oauth``.
            BranchNotFoundError: ``initial_branch`` does not exist.
            RepositoryNotFoundError: the provider answered 404.
            OfflineError: offline and the repository was never connected.
        """
        info = parse_repo_url(url)
        auth_method = AuthMethod(auth_method)
        repository_id = repository_id_for(info.normalized_url)
        existing = self.repositories.get(repository_id)

        if not self.connectivity.is_online(info.provider):
            if existing is not None:
                cached = self._cached_branches(repository_id)
                return self._connect_result(existing, cached[0] if cached else [])
            raise OfflineError("You are offline. Connect while online to browse this repository.")

        stored_token = False
        if token:
            if auth_method == AuthMethod.NONE:
                raise InvalidTokenError("A token needs the 'pat' or 'oauth' auth method.")
            self.credentials.put(repository_id, info.provider, auth_method, token)
            self._drop_providers(repository_id)
            stored_token = True
        elif auth_method != AuthMethod.NONE and self.credentials.get(repository_id, auth_method) is None:
            raise AuthFailedError("No stored credential for this repository. Please sign in.")

        provider = self._provider(repository_id, info.provider, auth_method)
        try:
            metadata = self._call(
                repository_id, info.provider, auth_method, lambda: provider.get_repository(info)
            )
            branches = self._call(
                repository_id, info.provider, auth_method, lambda: provider.list_branches(info)
            )
        except AuthFailedError:
            if stored_token:
                self.credentials.delete(repository_id, auth_method)
                self._drop_providers(repository_id)
            raise

        _annotate_branches(branches, repository_id, metadata.default_branch)
        wanted = initial_branch or info.branch
        if wanted and _find_branch(branches, wanted) is None:
            raise BranchNotFoundError(f"Branch '{wanted}' not found.")

        now = self.clock()
        repository = Repository(
            id=repository_id,
            provider=info.provider,
            url=info.normalized_url,
            raw_url=info.raw_url,
            display_name=info.display_name,
            owner=info.owner,
            name=info.repo,
            project=info.project,
            default_branch=metadata.default_branch,
            current_branch=wanted or metadata.default_branch,
            auth_method=auth_method,
            last_accessed=now,
            created_at=existing.created_at if existing else now,
            is_online=True,
        )
        self.repositories.save(repository)
        self._store_branches(repository_id, branches)
        logger.info(
            "Connected %s on branch %s", repository.display_name, repository.current_branch
        )
        return self._connect_result(repository, branches)

    @staticmethod
    def _connect_result(repo: Repository, branches: list[Branch]) -> ConnectResult:
        return ConnectResult(
            repository_id=repo.id,
            display_name=repo.display_name,
            url=repo.url,
            provider=repo.provider,
            default_branch=repo.default_branch,
            current_branch=repo.current_branch,
            branches=branches,
        )

    def disconnect(
        self,
        repository_id: str,
        clear_cache: bool = False,
        revoke_credential: bool = False,
    ) -> bool:
        """Forget a repository. Cached content stays unless *clear_cache*."""
        removed = self.repositories.remove(repository_id)
        self._cancel_tree_fetches(repository_id)
        self._drop_providers(repository_id)
        if clear_cache:
            self.cache.clear(repository_id=repository_id)
        if revoke_credential:
            self.credentials.delete(repository_id)
        if removed:
            logger.info("Disconnected repository %s", repository_id)
        return removed

    def get_repository(self, repository_id: str) -> Repository:
        return self._require(repository_id)

    def list_repositories(self) -> list[Repository]:
        return self.repositories.list_repositories()

    # ── files ───────────────────────────────────────────────────────────────

    def fetch_file(
        self,
        repository_id: str,
        file_path: str,
        branch: str | None = None,
        force_refresh: bool = False,
        cancel: CancelToken | None = None,
    ) -> FileResult:
        """Return a file's content, from the cache when possible.

        Raises:
            FileNotFoundInRepoError: invalid path or no such file.
            FileTooLargeError: the file exceeds ``max_file_size_bytes``.
            OfflineError: offline and the file was never cached.
            FetchCancelled: *cancel* fired before the content arrived.
        """
        repo = self._require(repository_id)
        path = validate_repo_path(file_path)
        branch = branch or repo.current_branch
        key = CacheManager.make_key(repository_id, branch, path)
        if cancel is not None:
            cancel.raise_if_cancelled()

        entry = self.cache.peek(key)
        if entry is not None and not entry.stale and not force_refresh:
            hit = self._cached_file(key, branch, stale=False)
            if hit is not None:
                return hit

        if not self.connectivity.is_online(repo.provider):
            if entry is None:
                raise OfflineError()
            if not force_refresh:
                served = self._cached_file(key, branch, stale=True)
                if served is None:
                    raise OfflineError()
                return served

        try:
            blob, fetched_at = self._flights.do(
                f"file:{key}", lambda: self._download_file(repo, branch, path, key), cancel
            )
        except _ALWAYS_PROPAGATE:
            raise
        except ReBrowseError as exc:
            fallback = self._cached_file(key, branch, stale=True) if entry else None
            if fallback is None:
                raise
            logger.warning("Serving cached %s after %s", key, exc.code)
            return fallback

        return FileResult(
            path=path,
            content=decode_content(path, blob.content),
            size=blob.size,
            sha=blob.sha,
            is_markdown=is_markdown(path),
            cached=False,
            branch=branch,
            fetched_at=fetched_at,
        )

    def _cached_file(self, key: CacheKey, branch: str, stale: bool) -> FileResult | None:
        entry = self.cache.peek(key)
        data = self.cache.read(key) if entry else None
        if entry is None or data is None:
            return None
        return FileResult(
            path=entry.path,
            content=decode_content(entry.path, data),
            size=entry.size,
            sha=entry.sha,
            is_markdown=is_markdown(entry.path),
            cached=True,
            branch=branch,
            fetched_at=entry.fetched_at,
            stale=stale or entry.stale,
        )

    def _download_file(
        self, repo: Repository, branch: str, path: str, key: CacheKey
    ) -> tuple[FileBlob, float]:
        provider = self._provider_for(repo)
        limit = self.settings.max_file_size_bytes
        blob = self._call(
            repo.id,
            repo.provider,
            repo.auth_method,
            lambda: provider.get_blob(repo.info, branch, path, max_size=limit),
        )
        if blob.size > limit:
            raise FileTooLargeError(path, blob.size, limit)

        fetched_at = self.clock()
        try:
            fetched_at = self.cache.put(key, blob.content, sha=blob.sha, kind="file").fetched_at
        except CacheError as exc:
            logger.warning("Could not cache %s: %s", key, exc.code)
        return blob, fetched_at

    # ── trees ───────────────────────────────────────────────────────────────

    @staticmethod
    def _tree_key(repository_id: str, branch: str) -> CacheKey:
        return CacheManager.make_key(repository_id, branch, "")

    def fetch_tree(
        self,
        repository_id: str,
        branch: str | None = None,
        markdown_only: bool = False,
        max_depth: int | None = None,
        force_refresh: bool = False,
        cancel: CancelToken | None = None,
    ) -> TreeResult:
        """Return the branch's file tree, filtered for the response.

        The unfiltered tree is what gets cached, so one fetch serves every
        filter combination.
        """
        repo = self._require(repository_id)
        branch = branch or repo.current_branch
        key = self._tree_key(repository_id, branch)

        cached = self._cached_tree(key)
        if cached is not None and not force_refresh and not cached[1].stale:
            return self._tree_result(cached[0], branch, cached[1].fetched_at, markdown_only, max_depth, True)

        if not self.connectivity.is_online(repo.provider):
            if cached is None:
                raise OfflineError()
            if not force_refresh:
                return self._tree_result(cached[0], branch, cached[1].fetched_at, markdown_only, max_depth, True)

        token = CancelToken(parent=cancel)
        self._register_tree_token(repository_id, branch, token)
        try:
            nodes, fetched_at = self._flights.do(
                f"tree:{key}", lambda: self._download_tree(repo, branch, key), token
            )
        except _ALWAYS_PROPAGATE:
            raise
        except ReBrowseError as exc:
            if cached is None:
                raise
            logger.warning("Serving cached tree for %s after %s", key, exc.code)
            return self._tree_result(cached[0], branch, cached[1].fetched_at, markdown_only, max_depth, True)
        finally:
            self._unregister_tree_token(repository_id, branch, token)

        return self._tree_result(nodes, branch, fetched_at, markdown_only, max_depth, False)

    def get_cached_tree(
        self,
        repository_id: str,
        branch: str | None = None,
        markdown_only: bool = False,
        max_depth: int | None = None,
    ) -> TreeResult | None:
        """Return the cached tree without touching the network."""
        repo = self._require(repository_id)
        branch = branch or repo.current_branch
        cached = self._cached_tree(self._tree_key(repository_id, branch))
        if cached is None:
            return None
        return self._tree_result(cached[0], branch, cached[1].fetched_at, markdown_only, max_depth, True)

    def _cached_tree(self, key: CacheKey) -> tuple[list[TreeNode], CacheEntry] | None:
        entry = self.cache.peek(key)
        if entry is None:
            return None
        data = self.cache.get_json(key)
        if data is None:
            return None
        try:
            nodes = [TreeNode.from_dict(item) for item in data["tree"]]
        except (KeyError, TypeError):
            logger.warning("Cached tree %s is corrupt", key)
            return None
        return nodes, entry

    def _download_tree(
        self, repo: Repository, branch: str, key: CacheKey
    ) -> tuple[list[TreeNode], float]:
        provider = self._provider_for(repo)
        items = self._call(
            repo.id, repo.provider, repo.auth_method, lambda: provider.get_tree(repo.info, branch)
        )
        nodes = build_tree(items)

        fetched_at = self.clock()
        try:
            entry = self.cache.put_json(key, {"tree": [n.to_dict() for n in nodes]}, kind="tree")
            fetched_at = entry.fetched_at
        except CacheError as exc:
            logger.warning("Could not cache tree %s: %s", key, exc.code)
        return nodes, fetched_at

    @staticmethod
    def _tree_result(
        nodes: list[TreeNode],
        branch: str,
        fetched_at: float,
        markdown_only: bool,
        max_depth: int | None,
        from_cache: bool,
    ) -> TreeResult:
        # Counts cover the whole (filtered) branch, not just the visible depth
        counts = count_files(filter_tree(nodes, markdown_only))
        return TreeResult(
            tree=filter_tree(nodes, markdown_only, max_depth),
            file_count=counts.file_count,
            markdown_file_count=counts.markdown_file_count,
            branch=branch,
            fetched_at=fetched_at,
            from_cache=from_cache,
        )

    def _register_tree_token(self, repository_id: str, branch: str, token: CancelToken) -> None:
        with self._lock:
            self._tree_tokens.setdefault((repository_id, branch), set()).add(token)

    def _unregister_tree_token(self, repository_id: str, branch: str, token: CancelToken) -> None:
        with self._lock:
            tokens = self._tree_tokens.get((repository_id, branch))
            if tokens is not None:
                tokens.discard(token)
                if not tokens:
                    del self._tree_tokens[(repository_id, branch)]

    def _cancel_tree_fetches(self, repository_id: str, branch: str | None = None) -> None:
        with self._lock:
            tokens = [
                token
                for (repo_id, tree_branch), group in self._tree_tokens.items()
                if repo_id == repository_id and (branch is None or tree_branch == branch)
                for token in group
            ]
        for token in tokens:
            token.cancel()
        if tokens:
            logger.debug("Cancelled %d tree fetch(es) for %s", len(tokens), repository_id)

    # ── branches ────────────────────────────────────────────────────────────

    @staticmethod
    def _branches_key(repository_id: str) -> CacheKey:
        return CacheManager.make_key(repository_id, "", "")

    def _cached_branches(self, repository_id: str) -> tuple[list[Branch], CacheEntry] | None:
        key = self._branches_key(repository_id)
        entry = self.cache.peek(key)
        data = self.cache.get_json(key) if entry else None
        if entry is None or data is None:
            return None
        try:
            return [Branch.from_dict(item) for item in data], entry
        except (KeyError, TypeError):
            logger.warning("Cached branch list for %s is corrupt", repository_id)
            return None

    def _store_branches(self, repository_id: str, branches: list[Branch]) -> None:
        try:
            self.cache.put_json(
                self._branches_key(repository_id),
                [b.to_dict() for b in branches],
                kind="branches",
            )
        except CacheError as exc:
            logger.warning("Could not cache branch list: %s", exc.code)

    def _download_branches(self, repo: Repository) -> list[Branch]:
        provider = self._provider_for(repo)
        branches = self._call(
            repo.id, repo.provider, repo.auth_method, lambda: provider.list_branches(repo.info)
        )
        _annotate_branches(branches, repo.id, repo.default_branch)
        self._store_branches(repo.id, branches)
        return branches

    def list_branches(self, repository_id: str, force_refresh: bool = False) -> list[Branch]:
        """Return the branches, cached for ``branch_cache_ttl_seconds``."""
        repo = self._require(repository_id)
        cached = self._cached_branches(repository_id)
        if cached is not None and not force_refresh:
            branches, entry = cached
            age = self.clock() - entry.fetched_at
            if not entry.stale and age < self.settings.branch_cache_ttl_seconds:
                return branches

        if not self.connectivity.is_online(repo.provider):
            if cached is None:
                raise OfflineError()
            return cached[0]

        try:
            return self._flights.do(
                f"branches:{repository_id}", lambda: self._download_branches(repo)
            )
        except ReBrowseError as exc:
            if cached is None or not exc.retryable:
                raise
            logger.warning("Serving cached branch list after %s", exc.code)
            return cached[0]

    def switch_branch(
        self,
        repository_id: str,
        branch_name: str,
        preserve_file_path: str | None = None,
    ) -> SwitchBranchResult:
        """Make *branch_name* current, optionally checking a file exists there.

        ``file_exists_on_new_branch`` is None when it cannot be determined
        (offline, or the provider did not answer).
        """
        repo = self._require(repository_id)
        branches = self.list_branches(repository_id)
        match = _find_branch(branches, branch_name)
        if match is None and self.connectivity.is_online(repo.provider):
            match = _find_branch(self.list_branches(repository_id, force_refresh=True), branch_name)
        if match is None:
            raise BranchNotFoundError(f"Branch '{branch_name}' not found.")

        if repo.current_branch != branch_name:
            self._cancel_tree_fetches(repository_id, repo.current_branch)
        repo.current_branch = branch_name
        repo.last_accessed = self.clock()
        self.repositories.save(repo)

        exists = None
        if preserve_file_path:
            exists = self._file_exists(repo, branch_name, preserve_file_path)
        logger.info("Switched %s to branch %s", repo.display_name, branch_name)
        return SwitchBranchResult(
            current_branch=branch_name, sha=match.sha, file_exists_on_new_branch=exists
        )

    def _file_exists(self, repo: Repository, branch: str, file_path: str) -> bool | None:
        try:
            path = validate_repo_path(file_path)
        except FileNotFoundInRepoError:
            return False
        if self.cache.peek(CacheManager.make_key(repo.id, branch, path)) is not None:
            return True
        if not self.connectivity.is_online(repo.provider):
            return None

        provider = self._provider_for(repo)
        try:
            return self._call(
                repo.id,
                repo.provider,
                repo.auth_method,
                lambda: provider.file_exists(repo.info, branch, path),
            )
        except (NetworkError, ProviderError, RateLimitError) as exc:
            logger.warning("Could not check %s on %s: %s", path, branch, exc.code)
            return None

    # ── connectivity ────────────────────────────────────────────────────────

    def check_connectivity(
        self, provider: ProviderType | str | None = None, timeout_ms: int | None = None
    ) -> ConnectivityReport:
        return self.connectivity.check(ProviderType(provider) if provider else None, timeout_ms)

    def get_connectivity_status(self) -> ConnectivityReport:
        return self.connectivity.get_status()

    def _on_connectivity_change(self, change: ConnectivityChange) -> None:
        is_online = change.current != ReachabilityState.UNREACHABLE
        for repo in self.repositories.list_repositories():
            if repo.provider == change.provider and repo.is_online != is_online:
                repo.is_online = is_online
                self.repositories.save(repo)

    # ── cache management ────────────────────────────────────────────────────

    def cache_stats(self, repository_id: str | None = None) -> CacheStats:
        return self.cache.stats(repository_id)

    def clear_cache(
        self,
        repository_id: str | None = None,
        branch: str | None = None,
        file_path: str | None = None,
    ) -> ClearResult:
        path = validate_repo_path(file_path) if file_path else None
        return self.cache.clear(repository_id, branch, path)

    def check_cache_entry(
        self, repository_id: str, file_path: str, branch: str | None = None
    ) -> CacheEntryInfo:
        repo = self._require(repository_id)
        key = CacheManager.make_key(
            repository_id, branch or repo.current_branch, validate_repo_path(file_path)
        )
        entry = self.cache.peek(key)
        if entry is None:
            return CacheEntryInfo(is_cached=False)
        return CacheEntryInfo(
            is_cached=True,
            size=entry.size,
            fetched_at=entry.fetched_at,
            last_accessed_at=entry.last_accessed_at,
            age_seconds=max(0.0, self.clock() - entry.fetched_at),
            stale=entry.stale,
        )

    def invalidate_cache_entry(
        self, repository_id: str, file_path: str, branch: str | None = None
    ) -> bool:
        """Mark a cached file stale so the next online read refetches it."""
        repo = self._require(repository_id)
        key = CacheManager.make_key(
            repository_id, branch or repo.current_branch, validate_repo_path(file_path)
        )
        return self.cache.invalidate(key)

    def prewarm_cache(
        self,
        repository_id: str,
        branch: str | None = None,
        max_files: int | None = None,
        markdown_only: bool = True,
    ) -> PrewarmResult:
        """Fetch up to *max_files* uncached files in parallel.

        Per-file failures are collected in ``errors`` instead of raised.
        """
        started = time.monotonic()
        repo = self._require(repository_id)
        branch = branch or repo.current_branch
        limit = max_files if max_files is not None else self.settings.prewarm_max_files

        tree = self.fetch_tree(repository_id, branch, markdown_only=markdown_only)
        targets: list[str] = []
        for node in iter_files(tree.tree):
            if len(targets) >= limit:
                break
            if node.size > self.settings.max_file_size_bytes:
                continue
            entry = self.cache.peek(CacheManager.make_key(repository_id, branch, node.path))
            if entry is not None and not entry.stale:
                continue
            targets.append(node.path)

        result = PrewarmResult()
        if targets:
            workers = min(self.settings.prewarm_workers, len(targets))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rebrowse-prewarm") as pool:
                futures = {
                    pool.submit(self.fetch_file, repository_id, path, branch): path
                    for path in targets
                }
                for future in as_completed(futures):
                    path = futures[future]
                    try:
                        fetched = future.result()
                    except ReBrowseError as exc:
                        logger.warning("Prewarm of %s failed: %s", path, exc.code)
                        result.errors.append(f"{path}: {exc.message}")
                        continue
                    result.files_prewarmed += 1
                    result.bytes_cached += fetched.size
                    result.cached_paths.append(path)

        result.cached_paths.sort()
        result.duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Prewarmed %d file(s) of %s@%s", result.files_prewarmed, repo.display_name, branch
        )
        return result

    def get_offline_capabilities(self, repository_id: str) -> OfflineCapabilities:
        repo = self._require(repository_id)
        entries = self.cache.entries(repository_id)
        files = [e for e in entries if e.kind == "file"]
        return OfflineCapabilities(
            has_cached_content=bool(files),
            cached_file_count=len(files),
            cached_markdown_count=sum(1 for e in files if is_markdown(e.path)),
            cached_branches=sorted({e.branch for e in entries if e.kind in ("file", "tree")}),
            has_cached_tree=any(
                e.kind == "tree" and e.branch == repo.current_branch for e in entries
            ),
        )

    # ── credentials ─────────────────────────────────────────────────────────

    def _resolve_target(self, repository_id_or_url: str) -> tuple[str, RepoInfo, Repository | None]:
        repo = self.repositories.get(repository_id_or_url)
        if repo is not None:
            return repo.id, repo.info, repo
        info = parse_repo_url(repository_id_or_url)
        repository_id = repository_id_for(info.normalized_url)
        return repository_id, info, self.repositories.get(repository_id)

    def _adopt_auth_method(self, repo: Repository | None, auth_method: AuthMethod) -> None:
        if repo is not None and repo.auth_method != auth_method:
            repo.auth_method = auth_method
            self.repositories.save(repo)

    def authenticate_with_pat(self, repository_id_or_url: str, token: str) -> CredentialHandle:
        """Store a PAT, validating it against the provider when online.

        Raises:
            InvalidTokenError: the provider rejected the token.
        """
        repository_id, info, repo = self._resolve_target(repository_id_or_url)
        handle = self.credentials.put(repository_id, info.provider, AuthMethod.PAT, token)
        self._drop_providers(repository_id)

        if self.connectivity.is_online(info.provider):
            provider = self._provider(repository_id, info.provider, AuthMethod.PAT)
            try:
                self._call(
                    repository_id,
                    info.provider,
                    AuthMethod.PAT,
                    lambda: provider.get_repository(info),
                )
            except AuthFailedError as exc:
                self.credentials.delete(repository_id, AuthMethod.PAT)
                self._drop_providers(repository_id)
                raise InvalidTokenError() from exc

        self._adopt_auth_method(repo, AuthMethod.PAT)
        return handle

    def start_device_flow(
        self, repository_id_or_url: str, scopes: Iterable[str] = DEFAULT_SCOPES
    ) -> DeviceFlowSession:
        """Begin GitHub device sign-in; show ``user_code`` to the user."""
        if self.device_flow is None:
            raise AuthFailedError("OAuth sign-in is not configured.")
        repository_id, info, _ = self._resolve_target(repository_id_or_url)
        if info.provider != ProviderType.GITHUB:
            raise AuthFailedError(
                "Device sign-in is only available for GitHub. "
                "Use a personal access token for Azure DevOps."
            )
        session = self.device_flow.start(scopes)
        with self._lock:
            self._device_sessions[session.session_id] = (session, repository_id, info)
        return session

    def poll_device_flow(self, session_id: str) -> DeviceFlowStatus:
        """Poll a device sign-in; the token is stored, never returned."""
        with self._lock:
            pending = self._device_sessions.get(session_id)
        if pending is None or self.device_flow is None:
            raise AuthFailedError("Unknown or finished sign-in session.")
        session, repository_id, info = pending

        status = self.device_flow.poll(session)
        if status.state != DeviceFlowState.PENDING:
            with self._lock:
                self._device_sessions.pop(session_id, None)

        if status.state == DeviceFlowState.AUTHORIZED and status.token is not None:
            bundle = status.token
            self.credentials.put(
                repository_id,
                info.provider,
                AuthMethod.OAUTH,
                bundle.access_token,
                expires_at=bundle.expires_at,
                scopes=bundle.scopes,
                refresh_secret=bundle.refresh_token,
            )
            self._drop_providers(repository_id)
            self._adopt_auth_method(self.repositories.get(repository_id), AuthMethod.OAUTH)
            status = DeviceFlowStatus(state=status.state, interval=status.interval)
        return status

    def has_valid_credential(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> bool:
        return self.credentials.is_valid(repository_id, auth_method)

    def get_credential_handle(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> CredentialHandle | None:
        return self.credentials.handle(repository_id, auth_method)

    def revoke_credential(
        self, repository_id: str, auth_method: AuthMethod | None = None
    ) -> bool:
        deleted = self.credentials.delete(repository_id, auth_method)
        self._drop_providers(repository_id)
        return deleted > 0


def _annotate_branches(branches: list[Branch], repository_id: str, default_branch: str) -> None:
    for branch in branches:
        branch.repository_id = repository_id
        branch.is_default = branch.name == default_branch


def _find_branch(branches: list[Branch], name: str) -> Branch | None:
    return next((b for b in branches if b.name == name), None)
