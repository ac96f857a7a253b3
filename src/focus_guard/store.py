import fcntl
import json
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from focus_guard.schema import BlockSnapshot


class StorageCorruptedError(Exception):
    """The block store exists but cannot be read back as a snapshot."""

    def __init__(self, path: Path, cause: Exception):
        super().__init__(f"Block store at {path} is unreadable: {cause}")
        self.path = path


class LocalBlockStore:
    """
    Whole-document JSON persistence for the block snapshot.

    Every read-modify-write goes through `locked()`, `transaction()` or
    `update()`. Within a process the lock is re-entrant per thread; across
    processes (the CLI and the daemon each open their own store) it is an
    exclusive `fcntl.flock` on a sidecar `.lock` file. Writes go to a temp
    file and are swapped in with `os.replace`, so a crash never leaves a
    half-written document.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = threading.RLock()
        self._depth = 0
        self._lock_fd = None

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Holds the store lock, in this process and against other processes."""
        with self._lock:
            if self._depth == 0:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                self._lock_fd = open(self.lock_path, "a")
                fcntl.flock(self._lock_fd, fcntl.LOCK_EX)
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    try:
                        fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                    finally:
                        self._lock_fd.close()
                        self._lock_fd = None

    def read(self) -> BlockSnapshot:
        with self.locked():
            if not self.path.exists():
                return BlockSnapshot()
            try:
                with open(self.path) as f:
                    document = json.load(f)
                return BlockSnapshot.from_wire(document)
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                # ValidationError and JSONDecodeError are both ValueErrors.
                logger.error(f"Failed to read block store {self.path}: {e}")
                raise StorageCorruptedError(self.path, e) from e

    def write(self, snapshot: BlockSnapshot) -> None:
        with self.locked():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(snapshot.to_wire(), f, indent=4)
            os.replace(tmp_path, self.path)
            logger.debug(
                f"Block store written: {len(snapshot.block_rules)} rules, "
                f"{len(snapshot.bypasses)} bypasses, {len(snapshot.active_timers)} timers"
            )

    @contextmanager
    def transaction(self) -> Iterator[BlockSnapshot]:
        """Holds the store lock for the duration of a read-modify-write."""
        with self.locked():
            yield self.read()

    def update(self, fn: Callable[[BlockSnapshot], BlockSnapshot]) -> BlockSnapshot:
        """Applies `fn` to the current snapshot and persists the result atomically."""
        with self.locked():
            updated = fn(self.read())
            self.write(updated)
            return updated

    def clear(self) -> None:
        with self.locked():
            if self.path.exists():
                self.path.unlink()

    def mtime(self) -> float | None:
        """Modification time of the document, for cheap change detection."""
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None
