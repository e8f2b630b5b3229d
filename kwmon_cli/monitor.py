# kwmon_cli/monitor.py
"""
Scheduler for kwmon-cli.

Runs one scan cycle over every configured repository immediately, then again
every ``check_interval_minutes`` until the shutdown event is set. A failing
repository never stops the others or the next cycle.
"""

import logging
import threading
import time
import concurrent.futures
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from colorama import Fore, Style

from .exceptions import RepoIdentificationError, StateError
from .models import BranchScanResult, RepositoryTarget
from .scanner import ScanEngine

logger = logging.getLogger('kwmon-cli.monitor')

MIN_SLEEP_SECONDS = 10.0


@dataclass
class CycleSummary:
    """Statistics for one pass over all configured repositories."""
    repositories_total: int = 0
    repositories_failed: int = 0
    branches_scanned: int = 0
    new_commits: int = 0
    findings: int = 0
    alerts_failed: int = 0
    duration: float = 0.0
    interrupted: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    def add_results(self, results: Sequence[BranchScanResult]) -> None:
        for res in results:
            self.branches_scanned += 1
            self.new_commits += res.new_commits
            self.findings += res.findings_count
            self.alerts_failed += res.alerts_failed

    @property
    def success(self) -> bool:
        return self.repositories_failed == 0


class Monitor:
    """Drives the scan engine across all repositories on a fixed interval."""

    def __init__(
        self,
        engine: ScanEngine,
        repositories: Sequence[Any],
        check_interval_minutes: int,
        concurrency: int = 1,
    ) -> None:
        self.engine = engine
        self.repositories = list(repositories)
        self.interval_seconds = max(60, int(check_interval_minutes) * 60)
        self.concurrency = max(1, int(concurrency))

    def _scan_one(self, repo_config: Any, shutdown_event: threading.Event) -> List[BranchScanResult]:
        target = RepositoryTarget.from_config(repo_config)
        return self.engine.scan_repository(target, shutdown_event)

    def _record(self, summary: CycleSummary, url: str, results: List[BranchScanResult]) -> None:
        summary.add_results(results)
        failed = [r for r in results if r.error]
        if failed:
            summary.repositories_failed += 1
            summary.errors[url] = "; ".join(f"{r.branch}: {r.error}" for r in failed)

    def _record_error(self, summary: CycleSummary, url: str, error: Exception) -> None:
        summary.repositories_failed += 1
        summary.errors[url] = str(error)
        if isinstance(error, RepoIdentificationError):
            logger.error(f"❌ Skipping repository '{url}': {error}")
        else:
            logger.error(f"💥 Unexpected error scanning '{url}': {error}", exc_info=error)

    def run_cycle(self, shutdown_event: Optional[threading.Event] = None) -> CycleSummary:
        """Scans every configured repository once; failures are isolated per repository."""
        shutdown_event = shutdown_event or threading.Event()
        summary = CycleSummary(repositories_total=len(self.repositories))
        start = time.time()
        logger.info(f"--- {Style.BRIGHT}{Fore.BLUE}🔄 Checking {len(self.repositories)} repositories{Style.RESET_ALL} ---")

        if self.concurrency == 1:
            for repo_config in self.repositories:
                if shutdown_event.is_set():
                    summary.interrupted = True
                    break
                try:
                    self._record(summary, repo_config.url, self._scan_one(repo_config, shutdown_event))
                except Exception as e:
                    self._record_error(summary, repo_config.url, e)
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                futures = {
                    executor.submit(self._scan_one, repo_config, shutdown_event): repo_config.url
                    for repo_config in self.repositories
                }
                for future in concurrent.futures.as_completed(futures):
                    url = futures[future]
                    try:
                        self._record(summary, url, future.result())
                    except Exception as e:
                        self._record_error(summary, url, e)
            summary.interrupted = shutdown_event.is_set()

        summary.duration = time.time() - start
        logger.info(
            f"--- Cycle Summary --- Duration: {summary.duration:.1f}s, Repos: {summary.repositories_total} "
            f"(failed: {summary.repositories_failed}), New commits: {summary.new_commits}, "
            f"Findings: {summary.findings}, Failed alerts: {summary.alerts_failed}"
        )
        return summary

    def run(self, shutdown_event: threading.Event) -> int:
        """Cycles until ``shutdown_event`` is set, then flushes watermark state."""
        logger.info(f"🔍 Monitor starting. Interval: {self.interval_seconds // 60} min, Repositories: {len(self.repositories)}")

        while not shutdown_event.is_set():
            try:
                summary = self.run_cycle(shutdown_event)
                duration = summary.duration
            except Exception as e:
                logger.exception(f"💥 Unexpected error during monitoring cycle: {e}")
                duration = 0.0

            if shutdown_event.is_set():
                logger.info("Shutdown signaled. Skipping sleep for this cycle.")
                break

            sleep_for = max(MIN_SLEEP_SECONDS, self.interval_seconds - duration)
            logger.info(f"✅ Cycle finished. Sleeping for {sleep_for:.1f} seconds...")
            if shutdown_event.wait(timeout=sleep_for):
                logger.info("Shutdown detected during sleep. Exiting monitor loop.")
                break

        return self.shutdown()

    def shutdown(self) -> int:
        """Final flush of watermark state. Returns the process exit code."""
        try:
            self.engine.store.flush()
        except StateError as e:
            logger.error(f"❌ Final watermark save failed: {e}")
            return 1
        logger.info("--- Monitoring loop has ended. ---")
        return 0
