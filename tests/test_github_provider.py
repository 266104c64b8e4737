"""Tests for GitHub provider."""

import base64

import pytest
import requests
import responses

from ReBrowse.errors import (
    AuthFailedError,
    BranchNotFoundError,
    FileNotFoundInRepoError,
    FileTooLargeError,
    NetworkError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    RepositoryNotFoundError,
    RequestTimeoutError,
)
from ReBrowse.models import ProviderType, RepoInfo
from ReBrowse.providers.github import GitHubProvider

REPO_API = "https://api.github.com/repos/testowner/testrepo"


def _repo_info() -> RepoInfo:
    return RepoInfo(
        provider=ProviderType.GITHUB,
        owner="testowner",
        repo="testrepo",
        normalized_url="https://github.com/testowner/testrepo",
    )


class TestGetRepository:
    @responses.activate
    def test_returns_default_branch(self):
        responses.add(
            responses.GET,
            REPO_API,
            json={"default_branch": "main", "private": False},
            status=200,
        )
        provider = GitHubProvider()
        metadata = provider.get_repository(_repo_info())
        assert metadata.default_branch == "main"
        assert metadata.is_private is False

    @responses.activate
    def test_404_raises(self):
        responses.add(
            responses.GET,
            REPO_API,
            json={"message": "Not Found"},
            status=404,
        )
        provider = GitHubProvider()
        with pytest.raises(RepositoryNotFoundError, match="not found"):
            provider.get_repository(_repo_info())


class TestListBranches:
    @responses.activate
    def test_lists_branches_with_sha(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/branches",
            json=[
                {"name": "master", "commit": {"sha": "7fd1a60b01f91b314f59955a4e4d4e80d8edf11d"}},
                {"name": "test", "commit": {"sha": "b3cbd5bbd7e81436d2eee04537ea2b4c0cad4cdf"}},
            ],
            status=200,
        )
        provider = GitHubProvider()
        branches = provider.list_branches(_repo_info())
        assert [b.name for b in branches] == ["master", "test"]
        assert branches[0].sha == "7fd1a60b01f91b314f59955a4e4d4e80d8edf11d"

    @responses.activate
    def test_follows_pages(self):
        first_page = [{"name": f"b{i}", "commit": {"sha": "a" * 40}} for i in range(100)]
        responses.add(responses.GET, f"{REPO_API}/branches", json=first_page, status=200)
        responses.add(
            responses.GET,
            f"{REPO_API}/branches",
            json=[{"name": "last", "commit": {"sha": "b" * 40}}],
            status=200,
        )
        provider = GitHubProvider()
        branches = provider.list_branches(_repo_info())
        assert len(branches) == 101
        assert branches[-1].name == "last"
        assert "page=2" in responses.calls[1].request.url


class TestGetTree:
    @responses.activate
    def test_lists_blobs_and_trees(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/git/trees/main",
            json={
                "sha": "abc",
                "truncated": False,
                "tree": [
                    {"type": "blob", "path": "README.md", "size": 100, "sha": "r1"},
                    {"type": "blob", "path": "src/main.py", "size": 200, "sha": "m1"},
                    {"type": "tree", "path": "src", "sha": "s1"},
                    {"type": "commit", "path": "vendor/lib", "sha": "c1"},
                ],
            },
            status=200,
        )
        provider = GitHubProvider()
        items = provider.get_tree(_repo_info(), "main")
        assert [(i.path, i.type) for i in items] == [
            ("README.md", "blob"),
            ("src/main.py", "blob"),
            ("src", "tree"),
        ]
        assert items[0].size == 100
        assert "recursive=1" in responses.calls[0].request.url

    @responses.activate
    def test_missing_branch_raises(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/git/trees/nope",
            json={"message": "Not Found"},
            status=404,
        )
        provider = GitHubProvider()
        with pytest.raises(BranchNotFoundError, match="nope"):
            provider.get_tree(_repo_info(), "nope")

    @responses.activate
    def test_truncated_tree_walks_subdirs(self):
        """When the tree is truncated, the provider walks directories."""
        responses.add(
            responses.GET,
            f"{REPO_API}/git/trees/main",
            json={"sha": "root", "truncated": True, "tree": []},
            status=200,
        )
        responses.add(
            responses.GET,
            f"{REPO_API}/git/trees/main",
            json={
                "sha": "root",
                "truncated": False,
                "tree": [
                    {"type": "blob", "path": "README.md", "size": 100, "sha": "r1"},
                    {"type": "tree", "path": "src", "sha": "src-sha"},
                ],
            },
            status=200,
        )
        responses.add(
            responses.GET,
            f"{REPO_API}/git/trees/src-sha",
            json={
                "sha": "src-sha",
                "truncated": False,
                "tree": [{"type": "blob", "path": "main.py", "size": 200, "sha": "m1"}],
            },
            status=200,
        )
        provider = GitHubProvider()
        items = provider.get_tree(_repo_info(), "main")
        paths = sorted(i.path for i in items)
        assert paths == ["README.md", "src", "src/main.py"]


class TestGetBlob:
    @responses.activate
    def test_inline_base64_content(self):
        encoded = base64.b64encode(b"Hello World!\n").decode()
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/README",
            json={
                "type": "file",
                "size": 13,
                "sha": "980a0d5f19a64b4b30a87d4206aade58726b60e3",
                "encoding": "base64",
                "content": encoded,
            },
            status=200,
        )
        provider = GitHubProvider()
        blob = provider.get_blob(_repo_info(), "master", "README")
        assert blob.content == b"Hello World!\n"
        assert blob.size == 13
        assert blob.sha == "980a0d5f19a64b4b30a87d4206aade58726b60e3"
        assert "ref=master" in responses.calls[0].request.url

    @responses.activate
    def test_large_file_downloaded_from_download_url(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/big.md",
            json={
                "type": "file",
                "size": 5,
                "sha": "s",
                "encoding": "none",
                "content": "",
                "download_url": "https://raw.githubusercontent.com/testowner/testrepo/main/big.md",
            },
            status=200,
        )
        responses.add(
            responses.GET,
            "https://raw.githubusercontent.com/testowner/testrepo/main/big.md",
            body=b"# Big",
            status=200,
        )
        provider = GitHubProvider()
        blob = provider.get_blob(_repo_info(), "main", "big.md")
        assert blob.content == b"# Big"

    @responses.activate
    def test_download_stops_past_limit(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/grown.md",
            json={
                "type": "file",
                "size": 5,
                "sha": "s",
                "download_url": "https://raw.githubusercontent.com/testowner/testrepo/main/grown.md",
            },
            status=200,
        )
        responses.add(
            responses.GET,
            "https://raw.githubusercontent.com/testowner/testrepo/main/grown.md",
            body=b"x" * 20,
            status=200,
        )
        with pytest.raises(FileTooLargeError):
            GitHubProvider().get_blob(_repo_info(), "main", "grown.md", max_size=10)

    @responses.activate
    def test_too_large_checked_before_download(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/video.md",
            json={"type": "file", "size": 20_000_000, "sha": "s", "download_url": "x"},
            status=200,
        )
        provider = GitHubProvider()
        with pytest.raises(FileTooLargeError):
            provider.get_blob(_repo_info(), "main", "video.md", max_size=10 * 1024 * 1024)
        assert len(responses.calls) == 1

    @responses.activate
    def test_missing_file_raises(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/missing.md",
            json={"message": "Not Found"},
            status=404,
        )
        provider = GitHubProvider()
        with pytest.raises(FileNotFoundInRepoError, match="missing.md"):
            provider.get_blob(_repo_info(), "main", "missing.md")

    @responses.activate
    def test_directory_is_not_a_file(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/docs",
            json=[{"type": "file", "path": "docs/a.md"}],
            status=200,
        )
        provider = GitHubProvider()
        with pytest.raises(FileNotFoundInRepoError):
            provider.get_blob(_repo_info(), "main", "docs")


class TestFileExists:
    @responses.activate
    def test_exists(self):
        responses.add(
            responses.GET,
            f"{REPO_API}/contents/README.md",
            json={"type": "file", "size": 1},
            status=200,
        )
        assert GitHubProvider().file_exists(_repo_info(), "dev", "README.md") is True

    @responses.activate
    def test_missing(self):
        responses.add(responses.GET, f"{REPO_API}/contents/README.md", status=404)
        assert GitHubProvider().file_exists(_repo_info(), "dev", "README.md") is False


class TestAPIErrors:
    @responses.activate
    def test_401_raises(self):
        responses.add(
            responses.GET,
            REPO_API,
            json={"message": "Unauthorized"},
            status=401,
        )
        provider = GitHubProvider()
        with pytest.raises(AuthFailedError) as exc_info:
            provider.get_repository(_repo_info())
        assert exc_info.value.status_code == 401

    @responses.activate
    def test_403_raises(self):
        responses.add(
            responses.GET,
            REPO_API,
            json={"message": "Forbidden"},
            status=403,
        )
        provider = GitHubProvider()
        with pytest.raises(PermissionDeniedError):
            provider.get_repository(_repo_info())

    @responses.activate
    def test_5xx_is_retryable(self):
        responses.add(responses.GET, REPO_API, status=502)
        provider = GitHubProvider()
        with pytest.raises(ProviderError) as exc_info:
            provider.get_repository(_repo_info())
        assert exc_info.value.retryable is True

    @responses.activate
    def test_connection_error_is_network_error(self):
        responses.add(
            responses.GET, REPO_API, body=requests.ConnectionError("connection reset")
        )
        provider = GitHubProvider()
        with pytest.raises(NetworkError) as exc_info:
            provider.get_repository(_repo_info())
        assert "connection reset" not in exc_info.value.message

    @responses.activate
    def test_timeout(self):
        responses.add(responses.GET, REPO_API, body=requests.Timeout())
        provider = GitHubProvider()
        with pytest.raises(RequestTimeoutError):
            provider.get_repository(_repo_info())


class TestRateLimit:
    @responses.activate
    def test_403_with_exhausted_quota_is_rate_limit(self):
        responses.add(
            responses.GET,
            REPO_API,
            json={"message": "API rate limit exceeded"},
            status=403,
            headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "9999999999"},
        )
        provider = GitHubProvider()
        with pytest.raises(RateLimitError) as exc_info:
            provider.get_repository(_repo_info())
        assert exc_info.value.retry_after_seconds > 0

    @responses.activate
    def test_429_uses_retry_after(self):
        responses.add(
            responses.GET,
            REPO_API,
            status=429,
            headers={"Retry-After": "60"},
        )
        provider = GitHubProvider()
        with pytest.raises(RateLimitError) as exc_info:
            provider.get_repository(_repo_info())
        assert exc_info.value.retry_after_seconds == 60
        assert exc_info.value.to_dict()["retryAfterSeconds"] == 60

    @responses.activate
    def test_headers_reported_to_hook(self):
        seen = []
        responses.add(
            responses.GET,
            REPO_API,
            json={"default_branch": "main"},
            status=200,
            headers={"X-RateLimit-Remaining": "59"},
        )
        provider = GitHubProvider(response_hook=seen.append)
        provider.get_repository(_repo_info())
        assert seen[0]["X-RateLimit-Remaining"] == "59"
        assert provider.last_headers["X-RateLimit-Remaining"] == "59"


class TestAuthentication:
    @responses.activate
    def test_token_sets_authorization_header(self):
        responses.add(responses.GET, REPO_API, json={"default_branch": "main"}, status=200)
        provider = GitHubProvider(token_provider=lambda: "ghp_test123")
        provider.get_repository(_repo_info())
        assert responses.calls[0].request.headers["Authorization"] == "Bearer ghp_test123"

    @responses.activate
    def test_no_token_no_authorization_header(self):
        responses.add(responses.GET, REPO_API, json={"default_branch": "main"}, status=200)
        provider = GitHubProvider(token_provider=lambda: None)
        provider.get_repository(_repo_info())
        assert "Authorization" not in responses.calls[0].request.headers

    def test_token_not_stored_on_session(self):
        provider = GitHubProvider(token_provider=lambda: "ghp_test123")
        assert "Authorization" not in provider.session.headers
