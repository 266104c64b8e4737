"""URL normalization, parsing and provider auto-detection."""

from __future__ import annotations

import re
import uuid
from urllib.parse import unquote, urlparse

from ReBrowse.errors import InvalidUrlError
from ReBrowse.models import ProviderType, RepoInfo

# Namespace for repository ids derived from normalized URLs.
REPOSITORY_NAMESPACE = uuid.UUID("6f1c2d0e-93a4-5b8e-a7d2-4c3f1e9b0a57")


def repository_id_for(normalized_url: str) -> str:
    """Stable repository identifier (UUIDv5) for a normalized URL."""
    return str(uuid.uuid5(REPOSITORY_NAMESPACE, normalized_url))


def parse_repo_url(url: str) -> RepoInfo:
    """Parse a repository URL and return RepoInfo.

    Supported formats:
      - https://github.com/owner/repo
      - https://github.com/owner/repo/tree/branch
      - https://github.com/owner/repo/tree/branch/with/slashes
      - https://dev.azure.com/org/project/_git/repo
      - https://dev.azure.com/org/project/_git/repo?version=GBbranch
      - https://org.visualstudio.com/project/_git/repo

    ``normalized_url`` forces HTTPS, lower-cases the host, drops the query
    string, fragment, trailing slashes and a ``.git`` suffix, and keeps only
    the repository part of the path.
    """
    url = url.strip()
    if not url:
        raise InvalidUrlError("URL is empty.")

    parsed = urlparse(url)
    if not parsed.scheme:
        raise InvalidUrlError(f"Invalid URL (no scheme): {url}")
    if parsed.scheme not in ("http", "https"):
        raise InvalidUrlError(f"Unsupported scheme: {parsed.scheme}")

    host = (parsed.hostname or "").lower()
    path = unquote(parsed.path).strip("/")

    if host in ("github.com", "www.github.com"):
        return _parse_github(path, url)
    elif host == "dev.azure.com":
        return _parse_azure_devops_new(path, parsed.query, url)
    elif host.endswith(".visualstudio.com"):
        org = host.removesuffix(".visualstudio.com")
        return _parse_azure_devops_old(org, path, parsed.query, url)
    else:
        raise InvalidUrlError(f"Unsupported host: {host or url}")


def _parse_github(path: str, raw_url: str) -> RepoInfo:
    """Parse a GitHub URL path."""
    # path: owner/repo[/tree/branch[/...]]
    parts = [p for p in path.split("/") if p]
    if len(parts) < 2:
        raise InvalidUrlError(f"GitHub URL must include owner/repo: {raw_url}")

    owner, repo = parts[0], parts[1].removesuffix(".git")
    if not repo:
        raise InvalidUrlError(f"GitHub URL must include owner/repo: {raw_url}")
    branch = None

    if len(parts) >= 4 and parts[2] == "tree":
        # Everything after /tree/ is the branch name (may contain slashes)
        branch = "/".join(parts[3:])

    return RepoInfo(
        provider=ProviderType.GITHUB,
        owner=owner,
        repo=repo,
        branch=branch,
        normalized_url=f"https://github.com/{owner}/{repo}",
        raw_url=raw_url,
    )


def _parse_azure_devops_new(path: str, query: str, raw_url: str) -> RepoInfo:
    """Parse dev.azure.com URL path: org/project/_git/repo"""
    parts = [p for p in path.split("/") if p]
    if len(parts) < 4 or parts[2] != "_git":
        raise InvalidUrlError(
            f"Azure DevOps URL must match org/project/_git/repo: {raw_url}"
        )

    org, project, repo = parts[0], parts[1], parts[3].removesuffix(".git")
    return RepoInfo(
        provider=ProviderType.AZURE,
        owner=org,
        repo=repo,
        branch=_extract_azdo_branch(query),
        project=project,
        normalized_url=f"https://dev.azure.com/{org}/{project}/_git/{repo}",
        raw_url=raw_url,
    )


def _parse_azure_devops_old(
    org: str, path: str, query: str, raw_url: str
) -> RepoInfo:
    """Parse org.visualstudio.com URL path: project/_git/repo"""
    parts = [p for p in path.split("/") if p]
    if len(parts) < 3 or parts[1] != "_git":
        raise InvalidUrlError(
            f"Azure DevOps URL must match project/_git/repo: {raw_url}"
        )

    project, repo = parts[0], parts[2].removesuffix(".git")
    # Legacy hosts resolve to the same repository as dev.azure.com
    return RepoInfo(
        provider=ProviderType.AZURE,
        owner=org,
        repo=repo,
        branch=_extract_azdo_branch(query),
        project=project,
        normalized_url=f"https://dev.azure.com/{org}/{project}/_git/{repo}",
        raw_url=raw_url,
    )


def _extract_azdo_branch(query: str) -> str | None:
    """Extract branch from Azure DevOps query string (version=GBbranch)."""
    match = re.search(r"version=GB(.+?)(?:&|$)", query)
    return unquote(match.group(1)) if match else None
