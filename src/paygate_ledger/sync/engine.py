"""
Sync engine between the ledger store and the JSON document files.

Two directions:
- project: store -> documents. Runs after every mutation; each document is a
  complete re-rendering of its table, written via temp file + rename under
  the file's cross-process lock.
- ingest: documents -> store. Runs at bootstrap, after a restore and when the
  watcher sees an external edit; each parseable file replaces its table.

Both directions hold the engine's exclusive lock so only one runs at a time
in this process, and each table is read only once its document's file lock
is held. Failures are collected in the SyncReport and passed to the
on_failure hook after every file lock is released; they are never raised.
"""

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import FileAccessError, ParseError, SchemaError, StoreError, SyncConflict
from ..fileio import read_text, text_digest, write_atomic
from ..locking import FileLock
from ..monitor.files import DatabaseFile, DocumentKind, FileRegistry, parse_json, render_json
from ..state_store.repositories import (
    AddressRepository,
    MerchantTransactionRepository,
    ProcessorTransactionRepository,
)
from ..state_store.sqlite_store import AddressRecord, MerchantRecord, ProcessorRecord

logger = logging.getLogger(__name__)

FailureHook = Callable[[str, str], None]

# Documents derived from ledger tables; the address index map is not.
PROJECTED_KINDS = (DocumentKind.KEYS, DocumentKind.MERCHANT, DocumentKind.PROCESSOR)


@dataclass
class SyncReport:
    """Result of one projection or ingest pass."""

    direction: str
    written: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    ingested: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        parts = [f"{self.direction}:"]
        if self.written:
            parts.append(f"{len(self.written)} written")
        if self.unchanged:
            parts.append(f"{len(self.unchanged)} unchanged")
        if self.ingested:
            parts.append(f"{sum(self.ingested.values())} records ingested")
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped")
        if self.errors:
            parts.append(f"{len(self.errors)} errors")
        return " ".join(parts)


class SyncEngine:
    """
    Keeps the document projection in agreement with the ledger store.

    The engine remembers the digest of every document it writes so the
    watcher can tell its own writes from external edits.
    """

    def __init__(
        self,
        addresses: AddressRepository,
        merchants: MerchantTransactionRepository,
        processors: ProcessorTransactionRepository,
        files: FileRegistry,
        lock_timeout: float = 10.0,
        stale_lock_seconds: float = 300.0,
        io_attempts: int = 3,
        io_wait: float = 0.05,
        on_failure: FailureHook | None = None,
    ):
        self.addresses = addresses
        self.merchants = merchants
        self.processors = processors
        self.files = files
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self.io_attempts = io_attempts
        self.io_wait = io_wait
        self.on_failure = on_failure

        self._lock = threading.RLock()
        self._own_writes: dict[str, str] = {}
        self._own_writes_lock = threading.Lock()

    # Locking

    @contextmanager
    def exclusive(self, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the engine's re-entrant sync lock.

        Raises:
            SyncConflict: If another projection/ingest holds it past the timeout
        """
        wait = self.lock_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise SyncConflict(f"Sync lock not acquired within {wait:.1f}s")
        try:
            yield
        finally:
            self._lock.release()

    def file_lock(self, file: DatabaseFile) -> FileLock:
        """Cross-process lock over one document, with the engine's timeouts."""
        return FileLock(file.path, timeout=self.lock_timeout, stale_after=self.stale_lock_seconds)

    # Own-write tracking

    def is_own_write(self, path: Path, digest: str | None) -> bool:
        """True if ``digest`` is what the engine last wrote to ``path``."""
        if digest is None:
            return False
        with self._own_writes_lock:
            return self._own_writes.get(str(Path(path).resolve())) == digest

    def _remember_write(self, path: Path, digest: str) -> None:
        with self._own_writes_lock:
            self._own_writes[str(Path(path).resolve())] = digest

    @staticmethod
    def _fail(report: SyncReport, name: str, detail: str) -> None:
        report.errors[name] = detail
        logger.error(f"Sync {report.direction} failed for {name}: {detail}")

    def _notify(self, report: SyncReport) -> None:
        # Called with no document lock held by this pass
        if self.on_failure is None:
            return
        for name, detail in report.errors.items():
            try:
                self.on_failure(name, detail)
            except Exception as e:
                logger.warning(f"Sync failure hook raised: {e}")

    # Rendering

    @staticmethod
    def render_keys(base: dict[str, Any], addresses: Iterable[AddressRecord]) -> dict[str, Any]:
        """Replace only the activeAddresses subtree of a keys document."""
        document = dict(base)
        document["activeAddresses"] = {r.address: r.to_document() for r in addresses}
        return document

    @staticmethod
    def render_merchant(records: Iterable[MerchantRecord]) -> list[dict[str, Any]]:
        return [r.to_document() for r in records]

    @staticmethod
    def render_processor(records: Iterable[ProcessorRecord]) -> dict[str, Any]:
        return {"payments": [r.to_document() for r in records]}

    def render_documents(self, keys_base: dict[str, Any] | None = None) -> dict[str, str]:
        """
        Render every projected document from the store, in memory.

        Args:
            keys_base: Non-transactional keys content to carry over
                (defaults to the registry default)

        Returns:
            Mapping of registry name to document text
        """
        rendered = {}
        keys_file = self.files.by_kind(DocumentKind.KEYS)
        if keys_file is not None:
            base = keys_base if keys_base is not None else keys_file.default_content
            rendered[keys_file.name] = render_json(self.render_keys(base, self.addresses.get_all()))
        merchant_file = self.files.by_kind(DocumentKind.MERCHANT)
        if merchant_file is not None:
            rendered[merchant_file.name] = render_json(
                self.render_merchant(self.merchants.get_all())
            )
        processor_file = self.files.by_kind(DocumentKind.PROCESSOR)
        if processor_file is not None:
            rendered[processor_file.name] = render_json(
                self.render_processor(self.processors.get_all())
            )
        return rendered

    # Projection

    def project_store_to_documents(self) -> SyncReport:
        """Re-render every projected document from the store."""
        report = SyncReport(direction="project")
        try:
            with self.exclusive():
                keys_file = self.files.by_kind(DocumentKind.KEYS)
                if keys_file is not None:
                    self._project_keys(keys_file, report)

                merchant_file = self.files.by_kind(DocumentKind.MERCHANT)
                if merchant_file is not None:
                    self._write_document(
                        merchant_file,
                        lambda: self.render_merchant(self.merchants.get_all()),
                        report,
                    )

                processor_file = self.files.by_kind(DocumentKind.PROCESSOR)
                if processor_file is not None:
                    self._write_document(
                        processor_file,
                        lambda: self.render_processor(self.processors.get_all()),
                        report,
                    )
        except SyncConflict as e:
            self._fail(report, "sync", str(e))

        self._notify(report)
        logger.debug(report.summary())
        return report

    def _project_keys(self, file: DatabaseFile, report: SyncReport) -> None:
        try:
            with self.file_lock(file):
                try:
                    base = parse_json(read_text(file.path, self.io_attempts, self.io_wait))
                except FileNotFoundError:
                    base = dict(file.default_content)
                except ParseError as e:
                    self._fail(
                        report, file.name, f"refusing to overwrite unparseable keys file: {e}"
                    )
                    return
                if not isinstance(base, dict):
                    self._fail(
                        report, file.name, "refusing to overwrite keys file that is not an object"
                    )
                    return
                self._write_document(
                    file, lambda: self.render_keys(base, self.addresses.get_all()), report
                )
        except FileAccessError as e:
            self._fail(report, file.name, str(e))

    def _write_document(
        self, file: DatabaseFile, render: Callable[[], Any], report: SyncReport
    ) -> None:
        """Render and write one document; the store is read under the file lock."""
        try:
            with self.file_lock(file):
                try:
                    text = render_json(render())
                except StoreError as e:
                    self._fail(report, file.name, f"store read failed: {e}")
                    return
                digest = text_digest(text)
                try:
                    current = read_text(file.path, self.io_attempts, self.io_wait)
                except FileNotFoundError:
                    current = None
                if current is not None and text_digest(current) == digest:
                    self._remember_write(file.path, digest)
                    report.unchanged.append(file.name)
                    return
                # Record first so the watcher never sees an unclaimed write
                self._remember_write(file.path, digest)
                write_atomic(file.path, text, self.io_attempts, self.io_wait)
        except FileAccessError as e:
            self._fail(report, file.name, str(e))
            return
        report.written.append(file.name)

    # Ingest

    def ingest_documents_to_store(self, names: Iterable[str] | None = None) -> SyncReport:
        """
        Load document files into the store, replacing each table wholesale.

        Args:
            names: Registry names to ingest (default: all projected documents)
        """
        report = SyncReport(direction="ingest")
        wanted = set(names) if names is not None else None
        try:
            with self.exclusive():
                for file in self.files:
                    if file.kind not in PROJECTED_KINDS:
                        continue
                    if wanted is not None and file.name not in wanted:
                        continue
                    self._ingest_file(file, report)
        except SyncConflict as e:
            self._fail(report, "sync", str(e))

        self._notify(report)
        logger.info(report.summary())
        return report

    def _ingest_file(self, file: DatabaseFile, report: SyncReport) -> None:
        try:
            with self.file_lock(file):
                text = read_text(file.path, self.io_attempts, self.io_wait)
        except FileNotFoundError:
            report.skipped.append(file.name)
            return
        except FileAccessError as e:
            self._fail(report, file.name, str(e))
            return

        try:
            data = file.load(text)
            if file.kind == DocumentKind.KEYS:
                count = self.addresses.replace_all(
                    [
                        AddressRecord.from_document(address, entry)
                        for address, entry in data["activeAddresses"].items()
                    ]
                )
            elif file.kind == DocumentKind.MERCHANT:
                count = self.merchants.replace_all(
                    [MerchantRecord.from_document(entry) for entry in data]
                )
            else:
                count = self.processors.replace_all(
                    [ProcessorRecord.from_document(entry) for entry in data["payments"]]
                )
        except (ParseError, SchemaError, StoreError) as e:
            self._fail(report, file.name, str(e))
            return

        report.ingested[file.name] = count
