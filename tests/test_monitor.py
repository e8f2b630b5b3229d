"""Tests for the scheduler: fault isolation, cycling and shutdown."""

import threading
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from kwmon_cli.exceptions import FetchError, StateError
from kwmon_cli.monitor import Monitor
from kwmon_cli.scanner import ScanEngine

from tests.helpers import history, make_commit


def repo(url, keywords=("security",), branches=("main",)):
    return SimpleNamespace(url=url, keywords=list(keywords), branches=list(branches))


class OneShotEvent(threading.Event):
    """Event whose first wait() sets it, so run() performs exactly one cycle."""

    def __init__(self):
        super().__init__()
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        self.set()
        return True


@pytest.fixture
def engine(fetcher, store, alerts):
    return ScanEngine(fetcher, store, alert_sink=alerts.append)


@pytest.mark.parametrize("concurrency", [1, 3])
def test_failing_repository_does_not_stop_others(engine, fetcher, store, concurrency):
    fetcher.failing_repos["acme/broken"] = FetchError("unreachable", status_code=503)
    fetcher.commits[("acme/widgets", "main")] = history(2)
    monitor = Monitor(engine, [
        repo("https://github.com/acme/broken"),
        repo("not-a-url"),
        repo("https://github.com/acme/widgets"),
    ], check_interval_minutes=5, concurrency=concurrency)

    summary = monitor.run_cycle()

    assert summary.repositories_total == 3
    assert summary.repositories_failed == 2
    assert set(summary.errors) == {"https://github.com/acme/broken", "not-a-url"}
    assert summary.findings == 2
    assert store.get("https://github.com/acme/widgets", "main") == make_commit(2).sha
    assert not summary.success


def test_unexpected_exception_is_isolated(engine, fetcher, store):
    fetcher.commits[("acme/widgets", "main")] = history(1)
    fetcher.failing_repos["acme/odd"] = RuntimeError("kaboom")
    monitor = Monitor(engine, [repo("https://github.com/acme/odd"), repo("https://github.com/acme/widgets")], 5)

    summary = monitor.run_cycle()

    assert "kaboom" in summary.errors["https://github.com/acme/odd"]
    assert store.get("https://github.com/acme/widgets", "main") == make_commit(1).sha


def test_run_scans_immediately_then_waits_interval(engine, fetcher, store):
    fetcher.commits[("acme/widgets", "main")] = history(1)
    monitor = Monitor(engine, [repo("https://github.com/acme/widgets")], check_interval_minutes=2)
    event = OneShotEvent()

    assert monitor.run(event) == 0

    assert fetcher.count("list") == 1
    assert len(event.waits) == 1
    assert 10 <= event.waits[0] <= 120
    assert store.state_file.exists()


def test_run_stops_before_scanning_when_already_shut_down(engine, fetcher):
    monitor = Monitor(engine, [repo("https://github.com/acme/widgets")], 5)
    event = threading.Event()
    event.set()

    assert monitor.run(event) == 0
    assert fetcher.count("list") == 0


def test_shutdown_flushes_unsaved_watermarks(engine, store):
    store.set("https://github.com/acme/widgets", "main", "e" * 40)
    monitor = Monitor(engine, [], 5)

    assert monitor.shutdown() == 0
    assert store.state_file.exists()
    assert not store.dirty


def test_shutdown_reports_failed_flush(engine, store):
    store.set("https://github.com/acme/widgets", "main", "e" * 40)
    monitor = Monitor(engine, [], 5)

    with patch.object(store, "save", side_effect=StateError("x", "disk full")):
        assert monitor.shutdown() == 1


def test_cycle_error_does_not_end_loop(engine):
    monitor = Monitor(engine, [], 5)
    event = OneShotEvent()

    with patch.object(monitor, "run_cycle", side_effect=RuntimeError("cycle broke")) as mock_cycle:
        assert monitor.run(event) == 0
    mock_cycle.assert_called_once()
    assert event.waits == [300]
