"""
Error taxonomy for the ledger.

Repository errors propagate to callers. Sync, monitor and backup errors are
captured into reports and health status instead of being raised.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""

    pass


class FileAccessError(LedgerError):
    """A file is missing, locked or not accessible."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class LockTimeout(FileAccessError):
    """A file lock could not be acquired within the allowed time."""

    pass


class ParseError(LedgerError):
    """Content is not valid JSON. Treated as corruption."""

    pass


class SchemaError(LedgerError):
    """Content parses but does not have the required shape. Treated as corruption."""

    pass


class SyncConflict(LedgerError):
    """A competing projection or ingest is holding the sync lock."""

    pass


class StoreError(LedgerError):
    """SQLite IO or constraint failure.

    ``transient`` is set for lock/busy conditions that are worth retrying.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class RetentionParseError(LedgerError):
    """A backup filename could not be parsed back into a timestamp."""

    pass
