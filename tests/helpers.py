"""Fakes and builders shared by the test modules."""

from typing import Dict, List, Optional, Tuple

from kwmon_cli.exceptions import FetchError
from kwmon_cli.models import Commit, FileChange


def make_commit(n: int, message: Optional[str] = None, files: Tuple[FileChange, ...] = ()) -> Commit:
    sha = f"{n:040x}"
    return Commit(
        sha=sha,
        author_name="Dev Eloper",
        message=message if message is not None else f"commit {n}: security fix",
        html_url=f"https://github.com/acme/widgets/commit/{sha}",
        changed_files=files,
    )


def history(count: int, message: Optional[str] = None) -> List[Commit]:
    """Commits 1..count, returned newest first like the API."""
    return [make_commit(n, message) for n in range(count, 0, -1)]


class FakeFetcher:
    """In-memory stand-in for GitHubFetcher."""

    def __init__(self, default_branch: str = "main") -> None:
        self.commits: Dict[Tuple[str, str], List[Commit]] = {}
        self.details: Dict[str, Commit] = {}
        self.blobs: Dict[str, object] = {}
        self.failing_repos: Dict[str, Exception] = {}
        self.default_branch: Optional[str] = default_branch
        self.calls: List[tuple] = []

    def list_recent_commits(self, owner, repo, branch, limit=10):
        self.calls.append(("list", f"{owner}/{repo}", branch, limit))
        full_name = f"{owner}/{repo}"
        if full_name in self.failing_repos:
            raise self.failing_repos[full_name]
        return list(self.commits.get((full_name, branch), []))[:limit]

    def get_commit_detail(self, owner, repo, sha):
        self.calls.append(("detail", f"{owner}/{repo}", sha))
        if sha not in self.details:
            raise FetchError(f"no detail for {sha}", status_code=404)
        return self.details[sha]

    def get_blob_content(self, owner, repo, blob_sha, max_size=None):
        self.calls.append(("blob", f"{owner}/{repo}", blob_sha))
        content = self.blobs.get(blob_sha)
        if isinstance(content, Exception):
            raise content
        if content is None:
            raise FetchError(f"no blob {blob_sha}", status_code=404)
        return content

    def resolve_default_branch(self, owner, repo):
        self.calls.append(("default_branch", f"{owner}/{repo}"))
        if self.default_branch is None:
            raise FetchError(f"{owner}/{repo} not found", status_code=404)
        return self.default_branch

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)
