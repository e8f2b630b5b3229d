# kwmon_cli/models.py
"""
Data model shared by the fetcher, scan engine and notifier.

Commits and file changes are created by the fetcher and never mutated.
Findings are transient: built per commit and handed straight to the notifier.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import urlparse

from .exceptions import RepoIdentificationError
from .matcher import unique_keywords


@dataclass(frozen=True)
class RepositoryTarget:
    """A configured repository, its branches and its keywords."""
    url: str
    owner: str
    name: str
    branches: Tuple[str, ...] = ()
    keywords: FrozenSet[str] = frozenset()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_config(cls, repo_config: Any) -> 'RepositoryTarget':
        """Build a target from a ``RepositoryConfig``. Raises RepoIdentificationError on a bad URL."""
        url = str(repo_config.url).strip()
        owner, name = parse_repository_url(url)
        return cls(
            url=url,
            owner=owner,
            name=name,
            branches=tuple(b for b in (repo_config.branches or []) if b),
            keywords=frozenset(unique_keywords(repo_config.keywords or [])),
        )


def parse_repository_url(url: str) -> Tuple[str, str]:
    """Extract ``(owner, repo)`` from a repository URL such as https://github.com/org/repo(.git).

    A URL without a scheme (``github.com/org/repo``) is read as https.
    """
    parsed = urlparse(url if '://' in url else f'https://{url}')
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise RepoIdentificationError(f"Invalid repository URL: {url}", target=url)

    segments = [s for s in parsed.path.split('/') if s]
    if len(segments) < 2:
        raise RepoIdentificationError(f"Invalid repository URL: {url}", target=url)

    owner, repo = segments[0], segments[1]
    if repo.endswith('.git'):
        repo = repo[:-len('.git')]
    if not repo:
        raise RepoIdentificationError(f"Invalid repository URL: {url}", target=url)
    return owner, repo


@dataclass(frozen=True)
class FileChange:
    """One file touched by a commit."""
    filename: str
    status: str
    blob_sha: Optional[str] = None
    size_bytes: Optional[int] = None

    @property
    def is_removed(self) -> bool:
        return self.status == 'removed'


@dataclass(frozen=True)
class Commit:
    """A commit as returned by the fetcher. ``changed_files`` is only set by commit-detail lookups."""
    sha: str
    author_name: str
    message: str
    html_url: str
    changed_files: Tuple[FileChange, ...] = ()


@dataclass
class Finding:
    """Keywords matched in one commit's message and files."""
    repository_url: str
    branch: str
    commit: Commit
    in_message: FrozenSet[str] = frozenset()
    in_files: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.in_message and not any(self.in_files.values())

    @property
    def all_keywords(self) -> FrozenSet[str]:
        found = set(self.in_message)
        for kws in self.in_files.values():
            found.update(kws)
        return frozenset(found)

    def to_alert_event(self) -> 'AlertEvent':
        return AlertEvent(
            repository_url=self.repository_url,
            branch=self.branch,
            commit_sha=self.commit.sha,
            author_name=self.commit.author_name,
            commit_message=self.commit.message,
            commit_url=self.commit.html_url,
            matched_in_message=sorted(self.in_message),
            matched_in_files=[
                {'filename': filename, 'matched_keywords': sorted(kws)}
                for filename, kws in self.in_files.items() if kws
            ],
        )


@dataclass
class AlertEvent:
    """Payload handed to the alert dispatcher."""
    repository_url: str
    branch: str
    commit_sha: str
    author_name: str
    commit_message: str
    commit_url: str
    matched_in_message: List[str] = field(default_factory=list)
    matched_in_files: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def all_keywords(self) -> List[str]:
        found = set(self.matched_in_message)
        for entry in self.matched_in_files:
            found.update(entry['matched_keywords'])
        return sorted(found)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repository_url': self.repository_url,
            'branch': self.branch,
            'commit_sha': self.commit_sha,
            'author_name': self.author_name,
            'commit_message': self.commit_message,
            'commit_url': self.commit_url,
            'matched_in_message': list(self.matched_in_message),
            'matched_in_files': [dict(entry) for entry in self.matched_in_files],
        }


@dataclass
class BranchScanResult:
    """Outcome of one scan pass over a single repository/branch."""
    repository_url: str
    branch: str
    commits_fetched: int = 0
    new_commits: int = 0
    findings_count: int = 0
    alerts_failed: int = 0
    watermark_before: Optional[str] = None
    watermark_after: Optional[str] = None
    error: Optional[str] = None

    @property
    def advanced(self) -> bool:
        return self.watermark_after is not None and self.watermark_after != self.watermark_before

    @property
    def success(self) -> bool:
        return self.error is None
