"""
Composition root.

Builds every ledger component exactly once from a Config and wires the
callbacks between the sync side and the monitor side. Request handlers get
the DataManager and DatabaseOperations from here instead of constructing
their own.
"""

import logging
from pathlib import Path

from .backup.manager import BackupManager
from .backup.retention import RetentionPolicy
from .config import Config
from .monitor.files import FileRegistry, default_registry
from .monitor.integrity import IntegrityMonitor
from .monitor.startup import StartupReport, StartupValidator
from .services.data_manager import DataManager
from .services.operations import DatabaseOperations
from .services.scheduler import BackupScheduler
from .state_store.repositories import (
    AddressRepository,
    MerchantTransactionRepository,
    ProcessorTransactionRepository,
)
from .state_store.sqlite_store import LedgerStore
from .sync.engine import PROJECTED_KINDS, SyncEngine, SyncReport
from .sync.watcher import DocumentWatcher

logger = logging.getLogger(__name__)


class LedgerRuntime:
    """All ledger components for one process."""

    def __init__(
        self,
        config: Config,
        store: LedgerStore,
        files: FileRegistry,
        engine: SyncEngine,
        backups: BackupManager,
        monitor: IntegrityMonitor,
        data: DataManager,
        operations: DatabaseOperations,
        watcher: DocumentWatcher | None = None,
        scheduler: BackupScheduler | None = None,
    ):
        self.config = config
        self.store = store
        self.files = files
        self.engine = engine
        self.backups = backups
        self.monitor = monitor
        self.data = data
        self.operations = operations
        self.watcher = watcher
        self.scheduler = scheduler
        self.startup_report: StartupReport | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        watch: bool | None = None,
        schedule: bool | None = None,
    ) -> "LedgerRuntime":
        """
        Build the object graph.

        Args:
            config: Application configuration
            watch: Override config.watcher.enabled
            schedule: Override config.backup.schedule_enabled
        """
        io = config.io
        files = default_registry(config.data_dir)
        store = LedgerStore(config.state_db_path, timeout=io.store_timeout_seconds)
        addresses = AddressRepository(store)
        merchants = MerchantTransactionRepository(store)
        processors = ProcessorTransactionRepository(store)

        backups = BackupManager(
            files,
            config.backup.backup_dir,
            config.backup.corruption_backup_dir,
            lock_timeout=io.lock_timeout_seconds,
            stale_lock_seconds=io.stale_lock_seconds,
            io_attempts=io.max_retries,
            io_wait=io.retry_wait_seconds,
        )
        monitor = IntegrityMonitor(
            files,
            backups,
            cache_ttl=config.health_cache_ttl_seconds,
            lock_timeout=io.lock_timeout_seconds,
            io_attempts=io.max_retries,
            io_wait=io.retry_wait_seconds,
        )
        engine = SyncEngine(
            addresses,
            merchants,
            processors,
            files,
            lock_timeout=io.lock_timeout_seconds,
            stale_lock_seconds=io.stale_lock_seconds,
            io_attempts=io.max_retries,
            io_wait=io.retry_wait_seconds,
            on_failure=monitor.record_sync_failure,
        )
        data = DataManager(addresses, merchants, processors, engine)
        operations = DatabaseOperations(
            monitor,
            backups,
            engine,
            policy=RetentionPolicy.from_config(config.retention),
            dry_run_default=config.retention.dry_run,
        )

        runtime = cls(config, store, files, engine, backups, monitor, data, operations)

        if config.watcher.enabled if watch is None else watch:
            runtime.watcher = DocumentWatcher(
                [f.path for f in files if f.kind in PROJECTED_KINDS],
                runtime._on_documents_changed,
                stability_threshold=config.watcher.stability_threshold_ms / 1000,
                poll_interval=config.watcher.poll_interval_ms / 1000,
                ignore=engine.is_own_write,
            )
        if config.backup.schedule_enabled if schedule is None else schedule:
            runtime.scheduler = BackupScheduler(
                operations, interval_seconds=config.backup.interval_hours * 3600
            )
        return runtime

    def bootstrap(self) -> SyncReport:
        """Seed an empty store from the documents, otherwise re-project."""
        if self.store.is_empty():
            logger.info("Ledger store is empty, ingesting documents")
            report = self.engine.ingest_documents_to_store()
            if report.success:
                # Normalise the documents to their canonical form
                self.engine.project_store_to_documents()
            return report
        return self.engine.project_store_to_documents()

    def start(self) -> StartupReport:
        """Validate documents, bring store and documents in line, start threads."""
        self.startup_report = StartupValidator(self.monitor, self.backups).run()
        if not self.startup_report.success:
            logger.critical("Startup validation failed; documents may need a restore")

        self.bootstrap()

        if self.watcher is not None:
            self.watcher.start()
        if self.scheduler is not None:
            self.scheduler.start()
        return self.startup_report

    def _on_documents_changed(self, paths: list[Path]) -> None:
        """Watcher callback: pull external edits into the store."""
        names = []
        for path in paths:
            file = self.files.for_path(path)
            if file is not None:
                names.append(file.name)
        if not names:
            return

        report = self.engine.ingest_documents_to_store(names)
        if not report.success:
            # Snapshot the broken edit before the projection overwrites it
            self.monitor.check_health(force=True)
        self.engine.project_store_to_documents()
        self.monitor.invalidate()

    def shutdown(self) -> None:
        """Stop background threads."""
        if self.watcher is not None:
            self.watcher.stop()
        if self.scheduler is not None:
            self.scheduler.stop()
        logger.info("Ledger runtime stopped")

    def __enter__(self) -> "LedgerRuntime":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
