"""
Cross-process file locks.

The scheduled backup job runs in a separate process and cannot share an
in-memory mutex, so every live database file is guarded by a sibling lock
file (``<file>.lock``) created with O_CREAT | O_EXCL.

Within one process the lock is re-entrant per thread: the lock file is held
while any nesting level is active and other threads wait on an RLock first.
Lock files older than ``stale_after`` seconds are treated as left behind by
a dead process and broken. Breaking renames the file aside first and checks
it is the one judged stale, so two breakers cannot both end up holding it.
"""

import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path

from .errors import LockTimeout

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_thread_locks: dict[str, threading.RLock] = {}
_depths: dict[str, int] = {}
_tokens: dict[str, str] = {}


def _thread_lock_for(key: str) -> threading.RLock:
    with _registry_lock:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _thread_locks[key] = lock
        return lock


def lock_path_for(target: Path) -> Path:
    """Path of the lock file guarding a target file."""
    target = Path(target)
    return target.with_name(target.name + ".lock")


class FileLock:
    """
    Exclusive lock over a single file, shared between threads and processes.

    Usage:
        with FileLock(path, timeout=5):
            ...
    """

    def __init__(
        self,
        target: Path | str,
        timeout: float = 10.0,
        stale_after: float = 300.0,
        poll_interval: float = 0.02,
    ):
        self.target = Path(target)
        self.lock_path = lock_path_for(self.target)
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._key = str(self.lock_path.resolve())

    def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            LockTimeout: If the lock is not free within ``timeout`` seconds
        """
        deadline = time.monotonic() + self.timeout
        thread_lock = _thread_lock_for(self._key)
        if not thread_lock.acquire(timeout=max(self.timeout, 0)):
            raise LockTimeout(
                f"Timed out waiting for in-process lock on {self.target}",
                path=str(self.target),
            )

        try:
            depth = _depths.get(self._key, 0)
            if depth == 0:
                self._acquire_file(deadline)
            with _registry_lock:
                _depths[self._key] = depth + 1
        except BaseException:
            thread_lock.release()
            raise

    def release(self) -> None:
        """Release one nesting level; the lock file goes with the last one."""
        thread_lock = _thread_lock_for(self._key)
        with _registry_lock:
            depth = _depths.get(self._key, 0) - 1
            if depth <= 0:
                _depths.pop(self._key, None)
                token = _tokens.pop(self._key, None)
            else:
                _depths[self._key] = depth

        if depth <= 0:
            self._remove_own_file(token)
        thread_lock.release()

    def _remove_own_file(self, token: str | None) -> None:
        try:
            current = self.lock_path.read_text()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.lock_path} vanished before release")
            return
        if token is not None and current != token:
            logger.error(f"Lock file {self.lock_path} was taken over; leaving it in place")
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.lock_path} vanished before release")

    def _acquire_file(self, deadline: float) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                observed = self._stale_observation()
                if observed is not None and self._break_stale(observed):
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeout(
                        f"Timed out waiting for lock file {self.lock_path}",
                        path=str(self.target),
                    ) from None
                time.sleep(self.poll_interval)
                continue

            token = json.dumps(
                {"pid": os.getpid(), "acquired_at": time.time(), "nonce": uuid.uuid4().hex}
            )
            with os.fdopen(fd, "w") as f:
                f.write(token)
            with _registry_lock:
                _tokens[self._key] = token
            return

    def _stale_observation(self) -> tuple[int, str] | None:
        """(inode, content) of the lock file if it is old enough to break."""
        try:
            st = self.lock_path.stat()
            content = self.lock_path.read_text()
        except FileNotFoundError:
            # Released meanwhile; retried after the poll interval
            return None
        if time.time() - st.st_mtime < self.stale_after:
            return None
        return st.st_ino, content

    def _break_stale(self, observed: tuple[int, str]) -> bool:
        """
        Remove the lock file judged stale, and only that one.

        The file is first renamed to a private name and compared with what
        was judged stale. If another breaker has already replaced it with a
        fresh lock in the meantime, that lock is linked back into place.

        Returns:
            True if the caller should retry the create right away
        """
        inode, content = observed
        aside = self.lock_path.with_name(f"{self.lock_path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True

        try:
            taken_ino = aside.stat().st_ino
            taken = aside.read_text()
        except OSError:
            taken_ino, taken = None, None

        if taken_ino == inode and taken == content:
            logger.warning(f"Broke stale lock {self.lock_path}")
            aside.unlink(missing_ok=True)
            return True

        # Someone else's fresh lock; put it back unless a new one appeared
        try:
            os.link(aside, self.lock_path)
        except FileExistsError:
            logger.error(f"Could not reinstate lock {self.lock_path}; another holder took it")
        finally:
            aside.unlink(missing_ok=True)
        return False

    @property
    def is_held(self) -> bool:
        """True if this process currently holds the lock."""
        return _depths.get(self._key, 0) > 0

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
