"""
kwmon-cli: Repository Keyword Monitor

A command-line tool that polls GitHub repositories for new commits, matches
configured keywords in commit messages (and optionally changed files), and
emails an alert for every matching commit.

This package provides:
- Incremental scanning with per-branch watermarks that survive restarts
- Optional file-content scanning with size and binary guards
- Email alerts over SMTP
- Continuous monitoring with a configurable interval
"""

from typing import List

# Package metadata
__version__ = "1.0.0"
__description__ = "CLI tool for watching repositories for keywords in new commits"

# --- Import Custom Exceptions ---
from .exceptions import (
    KWMONBaseError,
    ConfigError,
    ConfigValidationError,
    SecretResolutionError,
    RepoIdentificationError,
    FetchError,
    RateLimitError,
    BlobSkippedError,
    StateError,
    NotificationError,
)

# --- Import Core Components ---
from .config import ConfigManager, AppConfig
from .matcher import match_keywords
from .models import RepositoryTarget, Commit, FileChange, Finding, AlertEvent, BranchScanResult
from .fetcher import GitHubFetcher
from .state import WatermarkStore, make_key
from .scanner import ScanEngine
from .monitor import Monitor, CycleSummary
from .notifications import NotificationManager

__all__: List[str] = [
    "__version__",
    "__description__",

    # Exceptions
    "KWMONBaseError",
    "ConfigError",
    "ConfigValidationError",
    "SecretResolutionError",
    "RepoIdentificationError",
    "FetchError",
    "RateLimitError",
    "BlobSkippedError",
    "StateError",
    "NotificationError",

    # Core components
    "ConfigManager",
    "AppConfig",
    "match_keywords",
    "RepositoryTarget",
    "Commit",
    "FileChange",
    "Finding",
    "AlertEvent",
    "BranchScanResult",
    "GitHubFetcher",
    "WatermarkStore",
    "make_key",
    "ScanEngine",
    "Monitor",
    "CycleSummary",
    "NotificationManager",
]
