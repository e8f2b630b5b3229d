# kwmon_cli/state.py
"""
Watermark state for kwmon-cli.

Tracks, per repository/branch, the SHA of the most recently scanned commit.
The in-memory map is the source of truth during a run; it is loaded once at
startup and written back atomically after every pass that advanced a watermark
and again on shutdown.
"""

import os
import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, TypeAlias, Union

import portalocker
from portalocker import LOCK_SH, LOCK_EX, LOCK_NB, LockException, AlreadyLocked

from .exceptions import StateError

logger = logging.getLogger('kwmon-cli.state')

# --- Type Aliases for Clarity ---
WatermarkKey: TypeAlias = str  # "<repository_url>/<branch>"
WatermarkState: TypeAlias = Dict[WatermarkKey, str]  # key -> last scanned sha

DEFAULT_STATE_FILENAME = "watermarks.json"
LOCK_TIMEOUT = 1


def make_key(repository_url: str, branch: str) -> WatermarkKey:
    """Builds the durable key for a repository/branch pair."""
    return f"{repository_url.rstrip('/')}/{branch}"


def _get_lock_path(state_file_path: Path) -> Path:
    """Generates a path for a lock file corresponding to a state file."""
    return state_file_path.with_name(state_file_path.name + '.lock')


def _acquire_file_lock(state_file_path: Path, flags: int, purpose: str) -> Optional[portalocker.Lock]:
    lock = portalocker.Lock(
        str(_get_lock_path(state_file_path)),
        mode='a+',
        flags=flags | LOCK_NB,
        timeout=LOCK_TIMEOUT,
    )
    try:
        lock.acquire()
        logger.debug(f"Acquired {purpose} lock for {state_file_path}")
        return lock
    except (LockException, AlreadyLocked) as e:
        logger.warning(f"Could not lock {state_file_path} for {purpose}: {e}. Proceeding without lock.")
        return None


def _release_file_lock(lock: Optional[portalocker.Lock], state_file_path: Path) -> None:
    if lock is None:
        return
    try:
        lock.release()
        logger.debug(f"Released lock for {state_file_path}")
    except LockException as e:
        logger.error(f"Error releasing lock for {state_file_path}: {e}")


def _save_state_atomically(state_file_path: Path, data: Any) -> None:
    """Saves data to a JSON file atomically using a temporary file."""
    state_file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file_path: Optional[str] = None
    lock = _acquire_file_lock(state_file_path, LOCK_EX, 'writing')

    try:
        with tempfile.NamedTemporaryFile(
            mode='w',
            encoding='utf-8',
            delete=False,
            dir=str(state_file_path.parent),
            prefix=state_file_path.name + '.tmp_'
        ) as tf:
            tmp_file_path = tf.name
            json.dump(data, tf, indent=2, sort_keys=True)
            tf.flush()
            os.fsync(tf.fileno())

        os.replace(tmp_file_path, state_file_path)
        logger.debug(f"Atomically saved state to {state_file_path}")
    except OSError:
        if tmp_file_path and os.path.exists(tmp_file_path):
            try:
                os.remove(tmp_file_path)
            except OSError:
                pass
        raise
    finally:
        _release_file_lock(lock, state_file_path)


def _load_state_with_lock(state_file_path: Path) -> Any:
    """Loads JSON data from a file under a shared lock. Returns None when the file is absent."""
    if not state_file_path.exists():
        return None

    lock = _acquire_file_lock(state_file_path, LOCK_SH, 'reading')
    try:
        with open(state_file_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    finally:
        _release_file_lock(lock, state_file_path)


class WatermarkStore:
    """Durable mapping of (repository URL, branch) to the last scanned commit SHA."""

    def __init__(self, state_file: Union[str, Path]) -> None:
        self.state_file = Path(state_file)
        self._entries: WatermarkState = {}
        self._entries_lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._key_locks: Dict[WatermarkKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._dirty = False

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)

    @property
    def dirty(self) -> bool:
        """True when entries changed since the last successful save or load."""
        return self._dirty

    def get(self, repository_url: str, branch: str) -> Optional[str]:
        with self._entries_lock:
            return self._entries.get(make_key(repository_url, branch))

    def set(self, repository_url: str, branch: str, sha: str) -> None:
        if not sha:
            raise ValueError("Watermark SHA must be a non-empty string")
        key = make_key(repository_url, branch)
        with self._entries_lock:
            if self._entries.get(key) != sha:
                self._entries[key] = sha
                self._dirty = True

    def entries(self) -> WatermarkState:
        """Returns a copy of all current watermarks."""
        with self._entries_lock:
            return dict(self._entries)

    def lock_for(self, repository_url: str, branch: str) -> threading.Lock:
        """Per-key lock serializing the read-modify-write of one watermark."""
        key = make_key(repository_url, branch)
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def load(self) -> int:
        """Repopulates the in-memory map from disk. A missing or corrupt file yields an empty map."""
        loaded: WatermarkState = {}
        try:
            data = _load_state_with_lock(self.state_file)
            if data is None:
                logger.info(f"Watermark state file not found ('{self.state_file}'). Starting fresh.")
            elif not isinstance(data, dict):
                logger.warning(f"Invalid format in {self.state_file}. Expected object. Resetting state.")
            else:
                for key, sha in data.items():
                    if isinstance(key, str) and isinstance(sha, str) and key and sha:
                        loaded[key] = sha
                    else:
                        logger.warning(f"Skipping invalid watermark entry '{key}: {sha}' in {self.state_file}.")
                logger.info(f"📚 Loaded {len(loaded)} watermarks from {self.state_file}")
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️ Corrupt watermark state file ('{self.state_file}'). Resetting state. Error: {e}")
        except OSError as e:
            logger.error(f"❌ Error reading watermark state file '{self.state_file}': {e}. Starting fresh.")

        with self._entries_lock:
            self._entries = loaded
            self._dirty = False
        return len(loaded)

    def save(self) -> None:
        """Durably writes all current entries. Concurrent calls are serialized; the write is all-or-nothing."""
        with self._save_lock:
            with self._entries_lock:
                snapshot = dict(self._entries)
            try:
                _save_state_atomically(self.state_file, snapshot)
            except OSError as e:
                logger.error(f"Failed to save watermark state to {self.state_file}: {e}")
                raise StateError(str(self.state_file), str(e), original_error=e)
            with self._entries_lock:
                if self._entries == snapshot:
                    self._dirty = False
            logger.info(f"💾 Saved {len(snapshot)} watermarks to {self.state_file}")

    def flush(self) -> bool:
        """Saves only when there are unsaved changes. Returns True if a write happened."""
        if not self._dirty:
            logger.debug("No unsaved watermark changes to flush.")
            return False
        self.save()
        return True
