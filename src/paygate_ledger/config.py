"""
Configuration management (SSOT).

All configuration keys for the ledger are defined here; no other module
should invent config keys or defaults.

Key invariants:
- Document files live under data_dir; the SQLite ledger lives at state_db_path
- Scheduled/manual backups and corruption snapshots use separate directories
- Every file and store operation has a bounded retry/timeout budget
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class BackupConfig:
    """Backup directory and schedule settings."""

    backup_dir: Path = field(default_factory=lambda: Path("database_backups"))
    # Snapshots taken when a file is found corrupted/empty/missing
    corruption_backup_dir: Path = field(default_factory=lambda: Path("corruption_backups"))
    # In-process scheduled backups (the cron job is the usual trigger)
    schedule_enabled: bool = False
    interval_hours: float = 24.0


@dataclass
class RetentionConfig:
    """Tiered backup retention settings."""

    daily_retention_days: int = 7
    weekly_retention_weeks: int = 4
    monthly_retention_months: int = 12
    # Report deletions without performing them
    dry_run: bool = False


@dataclass
class WatcherConfig:
    """Document file watcher settings.

    Changes are coalesced until the files have been quiet for
    stability_threshold_ms, then ingested once per burst.
    """

    enabled: bool = True
    stability_threshold_ms: int = 300
    poll_interval_ms: int = 100


@dataclass
class IOConfig:
    """Retry and timeout budget for file and store operations."""

    max_retries: int = 3
    retry_wait_seconds: float = 0.05
    lock_timeout_seconds: float = 10.0
    # Lock files older than this are considered abandoned by a dead process
    stale_lock_seconds: float = 300.0
    store_timeout_seconds: float = 5.0


@dataclass
class Config:
    """Application configuration (SSOT)."""

    data_dir: Path = field(default_factory=lambda: Path("data"))
    state_db_path: Path = field(default_factory=lambda: Path("data/ledger.db"))
    backup: BackupConfig = field(default_factory=BackupConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    io: IOConfig = field(default_factory=IOConfig)
    health_cache_ttl_seconds: float = 60.0

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.retention.daily_retention_days < 0:
            errors.append("retention.daily_retention_days must be >= 0")
        if self.retention.weekly_retention_weeks < 0:
            errors.append("retention.weekly_retention_weeks must be >= 0")
        if self.retention.monthly_retention_months < 0:
            errors.append("retention.monthly_retention_months must be >= 0")

        if self.watcher.stability_threshold_ms <= 0:
            errors.append("watcher.stability_threshold_ms must be > 0")
        if self.watcher.poll_interval_ms <= 0:
            errors.append("watcher.poll_interval_ms must be > 0")

        if self.io.max_retries < 1:
            errors.append("io.max_retries must be >= 1")
        if self.io.lock_timeout_seconds <= 0:
            errors.append("io.lock_timeout_seconds must be > 0")

        if self.backup.interval_hours <= 0:
            errors.append("backup.interval_hours must be > 0")

        if Path(self.backup.backup_dir) == Path(self.backup.corruption_backup_dir):
            errors.append("backup.backup_dir and backup.corruption_backup_dir must differ")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if value:
        try:
            return int(value)
        except ValueError:
            pass  # Keep default
    return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "")
    if value:
        try:
            return float(value)
        except ValueError:
            pass
    return default


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from a YAML file.

    A missing file yields defaults. Environment variables override values:
    - DATA_DIR, STATE_DB_PATH
    - BACKUP_DIR, CORRUPTION_BACKUP_DIR
    - BACKUP_SCHEDULE_ENABLED (true/false), BACKUP_INTERVAL_HOURS
    - DAILY_RETENTION_DAYS, WEEKLY_RETENTION_WEEKS, MONTHLY_RETENTION_MONTHS
    - DRY_RUN (true/false)
    - WATCHER_ENABLED (true/false), WATCH_STABILITY_MS, WATCH_POLL_MS
    - IO_MAX_RETRIES, LOCK_TIMEOUT_SECONDS
    """
    if config_path is not None and config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    data_dir = Path(os.environ.get("DATA_DIR", data.get("data_dir", "data")))
    state_db = Path(
        os.environ.get("STATE_DB_PATH", data.get("state_db_path", str(data_dir / "ledger.db")))
    )

    # Backup config
    backup_data = data.get("backup", {})
    backup = BackupConfig(
        backup_dir=Path(
            os.environ.get("BACKUP_DIR", backup_data.get("backup_dir", "database_backups"))
        ),
        corruption_backup_dir=Path(
            os.environ.get(
                "CORRUPTION_BACKUP_DIR",
                backup_data.get("corruption_backup_dir", "corruption_backups"),
            )
        ),
        schedule_enabled=_env_bool(
            "BACKUP_SCHEDULE_ENABLED", backup_data.get("schedule_enabled", False)
        ),
        interval_hours=_env_float("BACKUP_INTERVAL_HOURS", backup_data.get("interval_hours", 24.0)),
    )

    # Retention config
    retention_data = data.get("retention", {})
    retention = RetentionConfig(
        daily_retention_days=_env_int(
            "DAILY_RETENTION_DAYS", retention_data.get("daily_retention_days", 7)
        ),
        weekly_retention_weeks=_env_int(
            "WEEKLY_RETENTION_WEEKS", retention_data.get("weekly_retention_weeks", 4)
        ),
        monthly_retention_months=_env_int(
            "MONTHLY_RETENTION_MONTHS", retention_data.get("monthly_retention_months", 12)
        ),
        dry_run=_env_bool("DRY_RUN", retention_data.get("dry_run", False)),
    )

    # Watcher config
    watcher_data = data.get("watcher", {})
    watcher = WatcherConfig(
        enabled=_env_bool("WATCHER_ENABLED", watcher_data.get("enabled", True)),
        stability_threshold_ms=_env_int(
            "WATCH_STABILITY_MS", watcher_data.get("stability_threshold_ms", 300)
        ),
        poll_interval_ms=_env_int("WATCH_POLL_MS", watcher_data.get("poll_interval_ms", 100)),
    )

    # IO budget
    io_data = data.get("io", {})
    io = IOConfig(
        max_retries=_env_int("IO_MAX_RETRIES", io_data.get("max_retries", 3)),
        retry_wait_seconds=io_data.get("retry_wait_seconds", 0.05),
        lock_timeout_seconds=_env_float(
            "LOCK_TIMEOUT_SECONDS", io_data.get("lock_timeout_seconds", 10.0)
        ),
        stale_lock_seconds=io_data.get("stale_lock_seconds", 300.0),
        store_timeout_seconds=io_data.get("store_timeout_seconds", 5.0),
    )

    return Config(
        data_dir=data_dir,
        state_db_path=state_db,
        backup=backup,
        retention=retention,
        watcher=watcher,
        io=io,
        health_cache_ttl_seconds=data.get("health_cache_ttl_seconds", 60.0),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Payment gateway ledger configuration
#
# Document files (keys.json, merchant_transactions.json, ...) live in data_dir.
# The SQLite ledger is the source of truth; documents are re-projected from it.

data_dir: "data"
state_db_path: "data/ledger.db"

backup:
  backup_dir: "database_backups"              # scheduled/manual/initial backups
  corruption_backup_dir: "corruption_backups" # snapshots of broken files
  schedule_enabled: false                     # in-process scheduler (cron is preferred)
  interval_hours: 24

retention:
  daily_retention_days: 7        # keep everything younger than this
  weekly_retention_weeks: 4      # keep one Monday-morning backup per week
  monthly_retention_months: 12   # keep one 1st-of-month backup per month
  dry_run: false                 # report deletions without deleting

watcher:
  enabled: true
  stability_threshold_ms: 300    # coalesce bursts of writes
  poll_interval_ms: 100

io:
  max_retries: 3
  retry_wait_seconds: 0.05
  lock_timeout_seconds: 10
  stale_lock_seconds: 300
  store_timeout_seconds: 5

health_cache_ttl_seconds: 60
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
