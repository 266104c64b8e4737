"""Data classes for ReBrowse."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ProviderType(str, Enum):
    GITHUB = "github"
    AZURE = "azure"


class AuthMethod(str, Enum):
    OAUTH = "oauth"
    PAT = "pat"
    NONE = "none"


class ReachabilityState(str, Enum):
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _plain(value: Any) -> Any:
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


class Record:
    """Mixin giving dataclasses a camelCase ``to_dict`` for the UI boundary."""

    def to_dict(self) -> dict[str, Any]:
        return {
            _camel(f.name): _plain(getattr(self, f.name))
            for f in fields(self)  # type: ignore[arg-type]
        }


@dataclass
class RepoInfo(Record):
    """A parsed repository URL."""

    provider: ProviderType
    owner: str  # GitHub owner / Azure organization
    repo: str  # GitHub name / Azure repository
    branch: str | None = None
    project: str | None = None  # Azure DevOps only
    normalized_url: str = ""
    raw_url: str = ""

    @property
    def display_name(self) -> str:
        if self.provider == ProviderType.AZURE:
            return f"{self.owner}/{self.project}/{self.repo}"
        return f"{self.owner}/{self.repo}"


@dataclass
class Repository(Record):
    id: str
    provider: ProviderType
    url: str
    raw_url: str
    display_name: str
    owner: str
    name: str
    default_branch: str
    current_branch: str
    auth_method: AuthMethod
    project: str | None = None
    last_accessed: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    is_online: bool = True

    @property
    def info(self) -> RepoInfo:
        return RepoInfo(
            provider=self.provider,
            owner=self.owner,
            repo=self.name,
            branch=self.current_branch,
            project=self.project,
            normalized_url=self.url,
            raw_url=self.raw_url,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Repository":
        return cls(
            id=data["id"],
            provider=ProviderType(data["provider"]),
            url=data["url"],
            raw_url=data.get("rawUrl", data["url"]),
            display_name=data["displayName"],
            owner=data["owner"],
            name=data["name"],
            default_branch=data["defaultBranch"],
            current_branch=data["currentBranch"],
            auth_method=AuthMethod(data.get("authMethod", AuthMethod.NONE.value)),
            project=data.get("project"),
            last_accessed=data.get("lastAccessed", time.time()),
            created_at=data.get("createdAt", time.time()),
            is_online=data.get("isOnline", True),
        )


@dataclass
class Branch(Record):
    name: str
    sha: str
    is_default: bool = False
    repository_id: str = ""
    last_accessed: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Branch":
        return cls(
            name=data["name"],
            sha=data.get("sha", ""),
            is_default=data.get("isDefault", False),
            repository_id=data.get("repositoryId", ""),
            last_accessed=data.get("lastAccessed"),
        )


@dataclass
class TreeItem:
    """A single entry of a provider's flat recursive tree listing."""

    path: str
    type: str  # "blob" or "tree"
    size: int = 0
    sha: str = ""


@dataclass
class TreeNode(Record):
    path: str
    name: str
    type: str  # "file" or "directory"
    size: int = 0
    sha: str = ""
    is_markdown: bool = False
    children: list["TreeNode"] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TreeNode":
        children = data.get("children")
        return cls(
            path=data["path"],
            name=data["name"],
            type=data["type"],
            size=data.get("size", 0),
            sha=data.get("sha", ""),
            is_markdown=data.get("isMarkdown", False),
            children=[cls.from_dict(c) for c in children] if children is not None else None,
        )


@dataclass
class FileBlob:
    path: str
    content: bytes
    size: int
    sha: str = ""


@dataclass
class RepositoryMetadata:
    default_branch: str
    is_private: bool = False


@dataclass
class CacheEntry(Record):
    key: str
    repository_id: str
    branch: str
    path: str
    size: int
    disk_path: str
    sha: str = ""
    kind: str = "file"  # "file", "tree" or "branches"
    fetched_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    stale: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            repository_id=data["repositoryId"],
            branch=data["branch"],
            path=data["path"],
            size=int(data["size"]),
            disk_path=data["diskPath"],
            sha=data.get("sha", ""),
            kind=data.get("kind", "file"),
            fetched_at=float(data["fetchedAt"]),
            last_accessed_at=float(data["lastAccessedAt"]),
            stale=bool(data.get("stale", False)),
        )


@dataclass
class Credential(Record):
    """Encrypted credential as persisted. Secrets stay encrypted here."""

    repository_id: str
    provider: ProviderType
    auth_method: AuthMethod
    encrypted_secret: str = field(repr=False)
    encrypted_refresh_secret: str | None = field(default=None, repr=False)
    expires_at: float | None = None
    scopes: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    last_used: float | None = None
    auth_failures: int = 0

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        return cls(
            repository_id=data["repositoryId"],
            provider=ProviderType(data["provider"]),
            auth_method=AuthMethod(data["authMethod"]),
            encrypted_secret=data["encryptedSecret"],
            encrypted_refresh_secret=data.get("encryptedRefreshSecret"),
            expires_at=data.get("expiresAt"),
            scopes=list(data.get("scopes", [])),
            created_at=data.get("createdAt", time.time()),
            last_used=data.get("lastUsed"),
            auth_failures=data.get("authFailures", 0),
        )


@dataclass
class CredentialHandle(Record):
    """What callers outside the trusted boundary get to see of a credential."""

    repository_id: str
    auth_method: AuthMethod
    is_valid: bool
    expires_at: float | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass
class ProviderStatus(Record):
    provider: ProviderType
    state: ReachabilityState = ReachabilityState.UNKNOWN
    response_time_ms: float | None = None
    last_successful_connection: float | None = None
    error: str | None = None
    checked_at: float | None = None

    @property
    def is_reachable(self) -> bool:
        return self.state == ReachabilityState.REACHABLE

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["isReachable"] = self.is_reachable
        return data


@dataclass
class ConnectivityChange(Record):
    provider: ProviderType
    previous: ReachabilityState
    current: ReachabilityState
    was_online: bool
    is_online: bool
    reason: str
    changed_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Response records returned across the orchestration boundary
# ---------------------------------------------------------------------------


@dataclass
class ConnectResult(Record):
    repository_id: str
    display_name: str
    url: str
    provider: ProviderType
    default_branch: str
    current_branch: str
    branches: list[Branch] = field(default_factory=list)


@dataclass
class FileResult(Record):
    path: str
    content: str
    size: int
    sha: str
    is_markdown: bool
    cached: bool
    branch: str
    fetched_at: float
    stale: bool = False


@dataclass
class TreeResult(Record):
    tree: list[TreeNode]
    file_count: int
    markdown_file_count: int
    branch: str
    fetched_at: float
    from_cache: bool = False


@dataclass
class SwitchBranchResult(Record):
    current_branch: str
    sha: str
    file_exists_on_new_branch: bool | None = None


@dataclass
class ConnectivityReport(Record):
    is_online: bool
    providers: list[ProviderStatus]
    checked_at: float
    age_seconds: float = 0.0


@dataclass
class RepositoryCacheStats(Record):
    repository_id: str
    file_count: int
    total_size: int
    percentage_used: float
    oldest_entry: float | None = None
    newest_entry: float | None = None


@dataclass
class CacheStats(Record):
    repositories: list[RepositoryCacheStats]
    file_count: int
    total_size: int
    percentage_used: float
    repository_count: int
    max_repository_size: int
    max_total_size: int


@dataclass
class ClearResult(Record):
    files_cleared: int = 0
    bytes_freed: int = 0
    repositories_affected: int = 0


@dataclass
class CacheEntryInfo(Record):
    is_cached: bool
    size: int | None = None
    fetched_at: float | None = None
    last_accessed_at: float | None = None
    age_seconds: float | None = None
    stale: bool = False


@dataclass
class PrewarmResult(Record):
    files_prewarmed: int = 0
    bytes_cached: int = 0
    cached_paths: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class OfflineCapabilities(Record):
    has_cached_content: bool
    cached_file_count: int
    cached_markdown_count: int
    cached_branches: list[str] = field(default_factory=list)
    has_cached_tree: bool = False
