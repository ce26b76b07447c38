"""
Polling watcher for the document files.

A background thread stats each watched path every poll_interval seconds.
When a file's (mtime_ns, size) signature moves, its content digest is
compared to the last one seen; real changes (re)arm a debounce timer, and
once the files have been quiet for stability_threshold seconds the callback
runs once with every path changed during the burst.
"""

import logging
import os
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from ..fileio import file_digest

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[list[Path]], None]
IgnorePredicate = Callable[[Path, str | None], bool]


class DocumentWatcher:
    """Debounced change detection for a fixed set of files."""

    def __init__(
        self,
        paths: Iterable[Path],
        on_change: ChangeCallback,
        stability_threshold: float = 0.3,
        poll_interval: float = 0.1,
        ignore: IgnorePredicate | None = None,
    ):
        """
        Args:
            paths: Files to watch (need not exist yet)
            on_change: Called with the sorted changed paths after each burst
            stability_threshold: Quiet period in seconds before on_change fires
            poll_interval: Seconds between stat passes
            ignore: Predicate (path, digest) -> True for changes to drop,
                e.g. the sync engine's own writes
        """
        self.paths = [Path(p) for p in paths]
        self.on_change = on_change
        self.stability_threshold = stability_threshold
        self.poll_interval = poll_interval
        self.ignore = ignore

        self._signatures: dict[Path, tuple[int, int] | None] = {}
        self._digests: dict[Path, str | None] = {}
        self._changed: set[Path] = set()
        self._state_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

        self._prime()

    def _prime(self) -> None:
        for path in self.paths:
            self._signatures[path] = self._signature(path)
            self._digests[path] = file_digest(path)

    @staticmethod
    def _signature(path: Path) -> tuple[int, int] | None:
        try:
            st = os.stat(path)
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    @property
    def pending(self) -> list[Path]:
        """Paths changed in the current, not yet flushed burst."""
        with self._state_lock:
            return sorted(self._changed)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> list[Path]:
        """
        Run one stat pass.

        Returns:
            Paths newly detected as changed in this pass
        """
        detected = []
        for path in self.paths:
            signature = self._signature(path)
            if signature == self._signatures.get(path):
                continue
            self._signatures[path] = signature

            digest = file_digest(path) if signature is not None else None
            if digest == self._digests.get(path):
                continue
            self._digests[path] = digest

            if self.ignore is not None and self.ignore(path, digest):
                logger.debug(f"Ignoring own write to {path.name}")
                continue
            detected.append(path)

        if detected:
            with self._state_lock:
                self._changed.update(detected)
            self._arm_timer()
        return detected

    def _arm_timer(self) -> None:
        with self._state_lock:
            if self._timer is not None:
                self._timer.cancel()
            if self._shutdown.is_set():
                self._timer = None
                return
            self._timer = threading.Timer(self.stability_threshold, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> list[Path]:
        """
        Deliver the pending burst now.

        Returns:
            The paths passed to on_change (empty if nothing was pending)
        """
        with self._state_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            changed = sorted(self._changed)
            self._changed.clear()

        if not changed:
            return []

        logger.info(f"Document change detected: {', '.join(p.name for p in changed)}")
        try:
            self.on_change(changed)
        except Exception as e:
            logger.error(f"Change handler failed: {e}", exc_info=True)
        return changed

    def _run(self) -> None:
        logger.info(f"Watching {len(self.paths)} document files")
        while not self._shutdown.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Watcher poll failed: {e}", exc_info=True)
            self._shutdown.wait(self.poll_interval)

    def start(self) -> None:
        """Start the polling thread (no-op if already running)."""
        if self.is_running:
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._run, name="document-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling, cancel a pending debounce and join the thread."""
        self._shutdown.set()
        with self._state_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Watcher thread did not stop within timeout")
            self._thread = None
        logger.info("Document watcher stopped")

    def __enter__(self) -> "DocumentWatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
