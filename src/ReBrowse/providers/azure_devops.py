"""Azure DevOps REST API provider."""

from __future__ import annotations

import base64

from ReBrowse.errors import BranchNotFoundError, FileNotFoundInRepoError
from ReBrowse.models import (
    Branch,
    FileBlob,
    ProviderType,
    RepoInfo,
    RepositoryMetadata,
    TreeItem,
)
from ReBrowse.providers.base import RepoProvider

HEADS_PREFIX = "refs/heads/"


def strip_heads(ref: str) -> str:
    """Remove the ``refs/heads/`` prefix Azure DevOps puts on branch refs."""
    return ref.removeprefix(HEADS_PREFIX)


class AzureDevOpsProvider(RepoProvider):
    """Provider for Azure DevOps repositories using the REST API."""

    API_VERSION = "7.1"
    provider_type = ProviderType.AZURE

    def _auth_headers(self, token: str) -> dict[str, str]:
        # PATs go as the password of HTTP basic auth with an empty user
        encoded = base64.b64encode(f":{token}".encode()).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}

    def _api_base(self, repo: RepoInfo) -> str:
        return (
            f"https://dev.azure.com/{repo.owner}/{repo.project}"
            f"/_apis/git/repositories/{repo.repo}"
        )

    def _api_get(self, repo: RepoInfo, path: str, params: dict | None = None, **kwargs) -> dict:
        params = dict(params or {})
        params["api-version"] = self.API_VERSION
        return self._get_json(f"{self._api_base(repo)}{path}", params=params, **kwargs)

    @staticmethod
    def _version_params(branch: str) -> dict[str, str]:
        return {
            "versionDescriptor.version": branch,
            "versionDescriptor.versionType": "branch",
        }

    def get_repository(self, repo: RepoInfo) -> RepositoryMetadata:
        data = self._api_get(
            repo,
            "",
            not_found_message=(
                "Repository not found. Check the URL, or provide a PAT for private repos."
            ),
        )
        visibility = data.get("project", {}).get("visibility", "private")
        return RepositoryMetadata(
            default_branch=strip_heads(data.get("defaultBranch", "refs/heads/main")),
            is_private=visibility != "public",
        )

    def list_branches(self, repo: RepoInfo) -> list[Branch]:
        data = self._api_get(repo, "/refs", params={"filter": "heads/"})
        return [
            Branch(name=strip_heads(item["name"]), sha=item.get("objectId", ""))
            for item in data.get("value", [])
        ]

    def get_tree(self, repo: RepoInfo, branch: str) -> list[TreeItem]:
        params = {"recursionLevel": "Full", **self._version_params(branch)}
        data = self._api_get(
            repo,
            "/items",
            params=params,
            not_found=BranchNotFoundError,
            not_found_message=f"Branch '{branch}' not found.",
        )

        items: list[TreeItem] = []
        for item in data.get("value", []):
            path = item.get("path", "").lstrip("/")
            if not path:
                continue
            items.append(
                TreeItem(
                    path=path,
                    type="tree" if item.get("isFolder") else "blob",
                    size=item.get("size", 0),
                    sha=item.get("objectId", ""),
                )
            )
        return items

    def get_blob(
        self, repo: RepoInfo, branch: str, path: str, max_size: int | None = None
    ) -> FileBlob:
        params = {
            "path": f"/{path}",
            "includeContent": "true",
            "$format": "octetStream",
            "api-version": self.API_VERSION,
            **self._version_params(branch),
        }
        resp = self._request(
            f"{self._api_base(repo)}/items",
            params=params,
            headers={"Accept": "application/octet-stream"},
            not_found=FileNotFoundInRepoError,
            not_found_message=f"File not found: {path}",
            stream=True,
        )

        sha = resp.headers.get("ETag", "").strip('"')
        content = self._read_limited(resp, path, max_size)
        return FileBlob(path=path, content=content, size=len(content), sha=sha)

    def file_exists(self, repo: RepoInfo, branch: str, path: str) -> bool:
        try:
            data = self._api_get(
                repo,
                "/items",
                params={"path": f"/{path}", **self._version_params(branch)},
                not_found=FileNotFoundInRepoError,
            )
        except FileNotFoundInRepoError:
            return False
        return not data.get("isFolder", False)
