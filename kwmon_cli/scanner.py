# kwmon_cli/scanner.py
"""
Incremental scan engine for kwmon-cli.

One pass over a repository/branch fetches the most recent commits, walks them
newest to oldest until the stored watermark is reached, matches keywords in
each unseen commit (and optionally its changed files), dispatches a finding
per matching commit immediately, and finally advances the watermark to the
newest fetched commit.

Only the newest ``commits_per_check`` commits are fetched per pass. If more
commits landed since the previous pass, the older ones are never scanned: the
watermark jumps to the newest fetched commit and the gap is skipped.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .exceptions import FetchError, NotificationError, StateError
from .fetcher import DEFAULT_MAX_FILE_SIZE
from .matcher import match_keywords
from .models import AlertEvent, BranchScanResult, Commit, FileChange, Finding, RepositoryTarget
from .state import WatermarkStore

logger = logging.getLogger('kwmon-cli.scanner')

DEFAULT_BRANCH_LABEL = "<default>"

AlertSink = Callable[[AlertEvent], Any]


class ScanEngine:
    """Runs incremental keyword scans and owns watermark advancement."""

    def __init__(
        self,
        fetcher: Any,
        store: WatermarkStore,
        alert_sink: Optional[AlertSink] = None,
        commits_per_check: int = 10,
        scan_file_contents: bool = False,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        self.fetcher = fetcher
        self.store = store
        self.alert_sink = alert_sink
        self.commits_per_check = max(1, int(commits_per_check))
        self.scan_file_contents = scan_file_contents
        self.max_file_size = max_file_size

    @classmethod
    def from_config(cls, config: Any, fetcher: Any, store: WatermarkStore,
                    alert_sink: Optional[AlertSink] = None) -> 'ScanEngine':
        polling = config.polling
        return cls(
            fetcher=fetcher,
            store=store,
            alert_sink=alert_sink,
            commits_per_check=polling.commits_per_check,
            scan_file_contents=polling.scan_file_contents,
            max_file_size=polling.max_file_size,
        )

    # --- Repository level ---

    def scan_repository(
        self,
        target: RepositoryTarget,
        shutdown_event: Optional[threading.Event] = None,
    ) -> List[BranchScanResult]:
        """Scans every configured branch of ``target`` (or its default branch)."""
        branches = list(target.branches)
        if not branches:
            try:
                branches = [self.fetcher.resolve_default_branch(target.owner, target.name)]
                logger.debug(f"Resolved default branch for {target.full_name}: {branches[0]}")
            except FetchError as e:
                logger.error(f"❌ Could not resolve default branch for {target.url}: {e}")
                return [BranchScanResult(repository_url=target.url, branch=DEFAULT_BRANCH_LABEL, error=str(e))]

        results: List[BranchScanResult] = []
        for branch in branches:
            if shutdown_event and shutdown_event.is_set():
                logger.info(f"Shutdown signaled; skipping remaining branches of {target.full_name}.")
                break
            results.append(self.scan_branch(target, branch, shutdown_event))
        return results

    # --- Branch level ---

    def scan_branch(
        self,
        target: RepositoryTarget,
        branch: str,
        shutdown_event: Optional[threading.Event] = None,
    ) -> BranchScanResult:
        """One incremental pass over ``target``/``branch``. Never raises for fetch or dispatch failures."""
        result = BranchScanResult(repository_url=target.url, branch=branch)

        with self.store.lock_for(target.url, branch):
            try:
                commits = self.fetcher.list_recent_commits(
                    target.owner, target.name, branch, self.commits_per_check
                )
            except FetchError as e:
                logger.error(f"❌ Error fetching commits for {target.full_name}/{branch}: {e}")
                result.error = str(e)
                return result

            result.commits_fetched = len(commits)
            if not commits:
                logger.debug(f"No commits returned for {target.full_name}/{branch}")
                return result

            watermark = self.store.get(target.url, branch)
            result.watermark_before = watermark
            reached_watermark = False

            for commit in commits:
                if commit.sha == watermark:
                    reached_watermark = True
                    break
                if shutdown_event and shutdown_event.is_set():
                    logger.warning(
                        f"🛑 Shutdown signaled mid-pass on {target.full_name}/{branch}; "
                        f"watermark left at {self._short(watermark)}."
                    )
                    result.error = "Scan cancelled by shutdown signal"
                    return result

                result.new_commits += 1
                finding = self.inspect_commit(target, branch, commit)
                if finding is not None:
                    result.findings_count += 1
                    if not self._dispatch(finding):
                        result.alerts_failed += 1

            if result.new_commits == 0:
                logger.debug(f"No new commits on {target.full_name}/{branch} since {self._short(watermark)}")
                return result

            if watermark is not None and not reached_watermark:
                logger.info(
                    f"Watermark {self._short(watermark)} not within the last {len(commits)} commits of "
                    f"{target.full_name}/{branch}; older unseen commits are skipped."
                )

            newest = commits[0].sha
            self.store.set(target.url, branch, newest)
            result.watermark_after = newest
            logger.info(
                f"✅ {target.full_name}/{branch}: {result.new_commits} new commit(s), "
                f"{result.findings_count} finding(s). Watermark -> {self._short(newest)}"
            )

        try:
            self.store.save()
        except StateError as e:
            logger.error(f"❌ Watermark for {target.full_name}/{branch} advanced in memory but not saved: {e}")
        return result

    # --- Commit level ---

    def inspect_commit(self, target: RepositoryTarget, branch: str, commit: Commit) -> Optional[Finding]:
        """Matches keywords in a commit's message and, if enabled, its changed files."""
        if not target.keywords:
            return None

        finding = Finding(
            repository_url=target.url,
            branch=branch,
            commit=commit,
            in_message=frozenset(match_keywords(commit.message, target.keywords)),
        )

        if self.scan_file_contents:
            finding.in_files = self._scan_changed_files(target, commit)

        if finding.is_empty:
            return None
        logger.info(
            f"🔎 Keywords {sorted(finding.all_keywords)} found in {target.full_name}@{commit.sha[:12]} ({branch})"
        )
        return finding

    def _scan_changed_files(self, target: RepositoryTarget, commit: Commit) -> Dict[str, frozenset]:
        try:
            detail = self.fetcher.get_commit_detail(target.owner, target.name, commit.sha)
        except FetchError as e:
            logger.warning(f"⚠️ Could not load changed files for {target.full_name}@{commit.sha[:12]}: {e}")
            return {}

        matches: Dict[str, frozenset] = {}
        for change in detail.changed_files:
            if not self._is_scannable(change):
                continue
            try:
                content = self.fetcher.get_blob_content(
                    target.owner, target.name, change.blob_sha, max_size=self.max_file_size
                )
            except FetchError as e:
                logger.debug(f"Skipping {change.filename} in {commit.sha[:12]}: {e}")
                continue
            found = match_keywords(content, target.keywords)
            if found:
                matches[change.filename] = frozenset(found)
        return matches

    def _is_scannable(self, change: FileChange) -> bool:
        if change.is_removed or not change.blob_sha:
            return False
        if change.size_bytes is not None and change.size_bytes > self.max_file_size:
            logger.debug(f"Skipping {change.filename}: {change.size_bytes} bytes exceeds {self.max_file_size}")
            return False
        return True

    # --- Dispatch ---

    def _dispatch(self, finding: Finding) -> bool:
        """Hands a finding to the alert sink. Failures are logged, never raised."""
        if self.alert_sink is None:
            return True
        event = finding.to_alert_event()
        try:
            self.alert_sink(event)
            return True
        except NotificationError as e:
            logger.error(f"❌ Alert delivery failed for {event.commit_sha[:12]}: {e}")
        except Exception as e:
            logger.error(f"💥 Unexpected error dispatching alert for {event.commit_sha[:12]}: {e}", exc_info=True)
        return False

    @staticmethod
    def _short(sha: Optional[str]) -> str:
        return sha[:12] if sha else "<none>"
