"""GitHub REST API provider."""

from __future__ import annotations

import base64
import logging
from urllib.parse import quote

from ReBrowse.errors import (
    BranchNotFoundError,
    FileNotFoundInRepoError,
    FileTooLargeError,
    ProviderError,
)
from ReBrowse.models import (
    Branch,
    FileBlob,
    ProviderType,
    RepoInfo,
    RepositoryMetadata,
    TreeItem,
)
from ReBrowse.providers.base import RepoProvider

logger = logging.getLogger(__name__)

BRANCHES_PER_PAGE = 100


class GitHubProvider(RepoProvider):
    """Provider for GitHub repositories using the REST API."""

    API_BASE = "https://api.github.com"
    provider_type = ProviderType.GITHUB

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.session.headers["Accept"] = "application/vnd.github+json"

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _repo_url(self, repo: RepoInfo, path: str = "") -> str:
        return f"{self.API_BASE}/repos/{repo.owner}/{repo.repo}{path}"

    def get_repository(self, repo: RepoInfo) -> RepositoryMetadata:
        data = self._get_json(
            self._repo_url(repo),
            not_found_message=(
                "Repository not found. Check the URL, or sign in for private repos."
            ),
        )
        return RepositoryMetadata(
            default_branch=data["default_branch"],
            is_private=bool(data.get("private", False)),
        )

    def list_branches(self, repo: RepoInfo) -> list[Branch]:
        branches: list[Branch] = []
        page = 1
        while True:
            data = self._get_json(
                self._repo_url(repo, "/branches"),
                params={"per_page": BRANCHES_PER_PAGE, "page": page},
            )
            for item in data:
                branches.append(
                    Branch(name=item["name"], sha=item.get("commit", {}).get("sha", ""))
                )
            if len(data) < BRANCHES_PER_PAGE:
                return branches
            page += 1

    def get_tree(self, repo: RepoInfo, branch: str) -> list[TreeItem]:
        data = self._get_json(
            self._repo_url(repo, f"/git/trees/{quote(branch, safe='')}"),
            params={"recursive": "1"},
            not_found=BranchNotFoundError,
            not_found_message=f"Branch '{branch}' not found.",
        )

        if data.get("truncated"):
            # For very large repos, walk the directories one level at a time
            logger.info("Tree for %s@%s is truncated; walking directories", repo.display_name, branch)
            return self._walk_tree(repo, branch)

        # Submodules ("commit" entries) have no content to browse
        return [
            _tree_item(item)
            for item in data.get("tree", [])
            if item["type"] in ("blob", "tree")
        ]

    def _walk_tree(self, repo: RepoInfo, branch: str) -> list[TreeItem]:
        """Handle a truncated tree by listing directories individually."""
        items: list[TreeItem] = []
        pending: list[tuple[str, str]] = [("", quote(branch, safe=""))]

        while pending:
            prefix, ref = pending.pop()
            data = self._get_json(
                self._repo_url(repo, f"/git/trees/{ref}"),
                not_found=BranchNotFoundError,
                not_found_message=f"Branch '{branch}' not found.",
            )
            for raw in data.get("tree", []):
                if raw["type"] not in ("blob", "tree"):
                    continue
                item = _tree_item(raw)
                item.path = f"{prefix}{item.path}"
                items.append(item)
                if item.type == "tree":
                    pending.append((f"{item.path}/", raw["sha"]))
        return items

    def get_blob(
        self, repo: RepoInfo, branch: str, path: str, max_size: int | None = None
    ) -> FileBlob:
        not_found_message = f"File not found: {path}"
        data = self._get_json(
            self._repo_url(repo, f"/contents/{quote(path)}"),
            params={"ref": branch},
            not_found=FileNotFoundInRepoError,
            not_found_message=not_found_message,
        )
        if not isinstance(data, dict) or data.get("type") != "file":
            raise FileNotFoundInRepoError(not_found_message)

        size = int(data.get("size", 0))
        if max_size is not None and size > max_size:
            raise FileTooLargeError(path, size, max_size)

        if data.get("encoding") == "base64" and data.get("content"):
            content = base64.b64decode(data["content"])
        elif data.get("download_url"):
            # Files over 1 MB come without inline content
            resp = self._request(
                data["download_url"],
                not_found=FileNotFoundInRepoError,
                not_found_message=not_found_message,
                stream=True,
            )
            content = self._read_limited(resp, path, max_size)
        elif size == 0:
            content = b""
        else:
            raise ProviderError(f"GitHub returned no content for {path}.")

        return FileBlob(path=path, content=content, size=len(content), sha=data.get("sha", ""))

    def file_exists(self, repo: RepoInfo, branch: str, path: str) -> bool:
        try:
            data = self._get_json(
                self._repo_url(repo, f"/contents/{quote(path)}"),
                params={"ref": branch},
                not_found=FileNotFoundInRepoError,
            )
        except FileNotFoundInRepoError:
            return False
        return isinstance(data, dict) and data.get("type") == "file"


def _tree_item(item: dict) -> TreeItem:
    return TreeItem(
        path=item["path"],
        type=item["type"],
        size=item.get("size", 0),
        sha=item.get("sha", ""),
    )
