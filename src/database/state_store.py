"""
State Store - durable, lock-protected storage for active blocks.

This module provides a single JSON document shared by the daemon and the
admin CLI. It holds:
- Active block entries (temporary and permanent)
- Temporary block history per address (for permanent escalation)

The failure ledger is deliberately not stored: a restart loses in-progress
failure counts but never an active block.
"""

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from const import STATE_SCHEMA_VERSION
from models import BlockEntry
from utils.filelock import FileLock, StateIntegrityError
from utils.logger import get_logger

logger = get_logger("state_store")

T = TypeVar("T")

# (st_dev, st_ino, st_size, st_mtime_ns) of the file we last read
FileStamp = Optional[Tuple[int, int, int, int]]


def _now_iso() -> str:
    """Get current timestamp in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StateSnapshot:
    """In-memory copy of the persisted state."""

    blocks: Dict[str, BlockEntry] = field(default_factory=dict)
    history: Dict[str, List[float]] = field(default_factory=dict)
    revision: int = 0

    def copy(self) -> "StateSnapshot":
        return StateSnapshot(
            blocks={ip: BlockEntry(**vars(entry)) for ip, entry in self.blocks.items()},
            history={ip: list(times) for ip, times in self.history.items()},
            revision=self.revision,
        )


class StateStore:
    """
    Block state persisted as JSON with atomic writes.

    Every mutation holds an exclusive advisory lock on a separate lock
    file, shared with any other process using this class on the same
    paths.

    Usage:
        store = StateStore("/var/lib/bastion/blocks.json", "/var/lib/bastion/blocks.lock")
        with store.transaction() as state:
            state.blocks["203.0.113.7"] = entry
    """

    def __init__(self, path: str, lock_path: Optional[str] = None, lock_timeout: float = 10.0):
        """
        Initialize store.

        Args:
            path: State file path
            lock_path: Lock file path (defaults to <path>.lock)
            lock_timeout: Seconds to wait for the lock
        """
        self.path = Path(path)
        self.lock = FileLock(lock_path or str(self.path) + ".lock", timeout=lock_timeout)
        self._mutex = threading.RLock()
        self._cache: Optional[StateSnapshot] = None
        self._stamp: FileStamp = None

    # =========================================================================
    # File I/O
    # =========================================================================

    def _file_stamp(self) -> FileStamp:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_dev, st.st_ino, st.st_size, st.st_mtime_ns)

    def _read(self) -> StateSnapshot:
        """
        Read the state file.

        Raises:
            StateIntegrityError: If the file is unreadable or malformed
        """
        if not self.path.exists():
            return StateSnapshot()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateIntegrityError(f"Corrupt state file {self.path}: {e}")
        except OSError as e:
            raise StateIntegrityError(f"Cannot read state file {self.path}: {e}")

        if not isinstance(data, dict) or not isinstance(data.get("blocks", {}), dict):
            raise StateIntegrityError(f"Unexpected state file layout in {self.path}")

        blocks: Dict[str, BlockEntry] = {}
        for address, record in data.get("blocks", {}).items():
            try:
                entry = BlockEntry.from_dict({"address": address, **record})
            except (KeyError, TypeError, ValueError) as e:
                raise StateIntegrityError(f"Malformed block record for {address}: {e}")
            blocks[entry.address] = entry

        history: Dict[str, List[float]] = {}
        raw_history = data.get("history", {})
        if not isinstance(raw_history, dict):
            raise StateIntegrityError(f"Malformed block history in {self.path}")
        for address, times in raw_history.items():
            try:
                history[address] = [float(t) for t in times]
            except (TypeError, ValueError) as e:
                raise StateIntegrityError(f"Malformed block history for {address}: {e}")

        try:
            revision = int(data.get("revision", 0))
        except (TypeError, ValueError):
            revision = 0

        logger.debug(f"Loaded {len(blocks)} blocks from {self.path}")
        return StateSnapshot(blocks=blocks, history=history, revision=revision)

    def _write(self, snapshot: StateSnapshot) -> None:
        """
        Write state atomically: temp file in the same directory, then rename.

        A crash before the rename leaves the previous file untouched.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document: Dict[str, Any] = {
            "version": STATE_SCHEMA_VERSION,
            "revision": snapshot.revision,
            "updated_at": _now_iso(),
            "blocks": {
                address: {k: v for k, v in entry.to_dict().items() if k != "address"}
                for address, entry in sorted(snapshot.blocks.items())
            },
            "history": {address: times for address, times in sorted(snapshot.history.items()) if times},
        }

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            self._replace(tmp_name)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        logger.debug(f"Saved {len(snapshot.blocks)} blocks to {self.path}")

    def _replace(self, tmp_name: str) -> None:
        os.replace(tmp_name, self.path)

    def _refresh(self) -> StateSnapshot:
        """Return the cached state, re-reading if the file changed on disk."""
        stamp = self._file_stamp()
        if self._cache is None or stamp != self._stamp:
            if self._cache is not None:
                logger.info(f"State file {self.path} changed on disk, reloading")
            self._cache = self._read()
            self._stamp = stamp
        return self._cache

    # =========================================================================
    # Public API
    # =========================================================================

    def load(self) -> StateSnapshot:
        """
        Load current state (under the lock).

        Raises:
            StateIntegrityError: On a corrupt file or lock timeout
        """
        with self._mutex, self.lock:
            return self._refresh().copy()

    def save(self, blocks: Dict[str, BlockEntry], history: Optional[Dict[str, List[float]]] = None) -> None:
        """Replace the stored blocks (and history, if given)."""
        with self.transaction() as state:
            state.blocks = dict(blocks)
            if history is not None:
                state.history = {ip: list(times) for ip, times in history.items()}

    def with_lock(self, fn: Callable[[], T]) -> T:
        """Run fn while holding the state lock."""
        with self._mutex, self.lock:
            return fn()

    @contextmanager
    def transaction(self) -> Iterator[StateSnapshot]:
        """
        Lock, refresh from disk, yield a mutable snapshot, write on success.

        If the block raises, nothing is written and the cache is kept as
        it was on disk.

        Raises:
            StateIntegrityError: On a corrupt file or lock timeout
        """
        with self._mutex, self.lock:
            current = self._refresh()
            working = current.copy()
            yield working
            if _same_state(current, working):
                return
            working.revision = current.revision + 1
            self._write(working)
            self._cache = working.copy()
            self._stamp = self._file_stamp()

    def invalidate(self) -> None:
        """Drop the cache so the next access re-reads the file."""
        with self._mutex:
            self._cache = None
            self._stamp = None


def _same_state(a: StateSnapshot, b: StateSnapshot) -> bool:
    if a.history != b.history or a.blocks.keys() != b.blocks.keys():
        return False
    return all(vars(a.blocks[k]) == vars(b.blocks[k]) for k in a.blocks)
