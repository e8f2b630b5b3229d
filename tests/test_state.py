"""Tests for the durable watermark store."""

import json
import threading

import pytest

from kwmon_cli.exceptions import StateError
from kwmon_cli.state import WatermarkStore, make_key

URL = "https://github.com/acme/widgets"


def test_make_key_joins_url_and_branch():
    assert make_key(URL, "main") == f"{URL}/main"
    assert make_key(URL + "/", "main") == f"{URL}/main"


def test_get_returns_none_for_unknown_pair(store):
    assert store.get(URL, "main") is None


def test_round_trip(store):
    store.set(URL, "main", "a" * 40)
    store.set(URL, "release/1.x", "b" * 40)
    store.save()

    reloaded = WatermarkStore(store.state_file)
    assert reloaded.load() == 2
    assert reloaded.get(URL, "main") == "a" * 40
    assert reloaded.get(URL, "release/1.x") == "b" * 40
    assert json.loads(store.state_file.read_text()) == {
        f"{URL}/main": "a" * 40,
        f"{URL}/release/1.x": "b" * 40,
    }


def test_missing_file_starts_empty(store):
    assert store.load() == 0
    assert store.entries() == {}


@pytest.mark.parametrize("payload", ["{not json", "[1, 2, 3]", '"just a string"'])
def test_corrupt_file_starts_empty(store, payload):
    store.state_file.parent.mkdir(parents=True)
    store.state_file.write_text(payload)

    assert store.load() == 0
    assert store.entries() == {}


def test_invalid_entries_are_skipped(store):
    store.state_file.parent.mkdir(parents=True)
    store.state_file.write_text(json.dumps({f"{URL}/main": "c" * 40, f"{URL}/dev": 42, f"{URL}/x": ""}))

    assert store.load() == 1
    assert store.get(URL, "main") == "c" * 40


def test_set_rejects_empty_sha(store):
    with pytest.raises(ValueError):
        store.set(URL, "main", "")


def test_load_replaces_in_memory_entries(store):
    store.set(URL, "main", "a" * 40)
    store.load()
    assert store.get(URL, "main") is None


def test_flush_writes_only_when_dirty(store):
    assert store.flush() is False
    assert not store.state_file.exists()

    store.set(URL, "main", "a" * 40)
    assert store.dirty
    assert store.flush() is True
    assert not store.dirty
    assert store.flush() is False


def test_setting_same_sha_is_not_a_change(store):
    store.set(URL, "main", "a" * 40)
    store.save()
    store.set(URL, "main", "a" * 40)
    assert not store.dirty


def test_save_failure_raises_state_error(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    store = WatermarkStore(blocker / "watermarks.json")
    store.set(URL, "main", "a" * 40)

    with pytest.raises(StateError):
        store.save()
    assert store.dirty


def test_concurrent_saves_leave_a_complete_file(store):
    def writer(branch_prefix):
        for i in range(20):
            store.set(URL, f"{branch_prefix}-{i}", f"{i:040x}")
            store.save()

    threads = [threading.Thread(target=writer, args=(p,)) for p in ("a", "b", "c")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    data = json.loads(store.state_file.read_text())
    assert len(data) == 60
    assert not list(store.state_file.parent.glob("*.tmp_*"))


def test_lock_for_is_stable_per_key(store):
    assert store.lock_for(URL, "main") is store.lock_for(URL, "main")
    assert store.lock_for(URL, "main") is not store.lock_for(URL, "dev")
